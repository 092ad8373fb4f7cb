from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field

from warden.core.errors import EmptyActorError, GrantAlreadyRevokedError
from warden.core.timeutil import utcnow
from warden.domain.resource import Resource


class GrantStatus(StrEnum):
    active = "active"
    inactive = "inactive"


class GrantSource(StrEnum):
    appeal = "appeal"
    imported = "import"


class Grant(BaseModel):
    """Materialized, revocable access issued after an appeal is approved."""

    id: str = ""
    status: str = GrantStatus.active
    status_in_provider: str = GrantStatus.active
    account_id: str
    account_type: str
    resource_id: str
    resource: Resource | None = None
    role: str
    permissions: list[str] = Field(default_factory=list)
    is_permanent: bool = False
    expiration_date: datetime | None = None
    appeal_id: str | None = None
    source: str = GrantSource.appeal
    revoked_by: str | None = None
    revoked_at: datetime | None = None
    revoke_reason: str | None = None
    created_by: str = ""
    owner: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == GrantStatus.active

    def permissions_key(self) -> str:
        return ";".join(sorted(self.permissions))

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.is_permanent or self.expiration_date is None:
            return False
        return self.expiration_date < (now or utcnow())

    def revoke(self, actor: str, reason: str, now: datetime | None = None) -> None:
        """Mark the grant inactive. The only transition away from ``active``."""
        if not actor:
            raise EmptyActorError()
        if self.status == GrantStatus.inactive:
            raise GrantAlreadyRevokedError(details={"grant_id": self.id})

        revoked_at = now or utcnow()
        self.status = GrantStatus.inactive
        self.status_in_provider = GrantStatus.inactive
        self.revoked_by = actor
        self.revoke_reason = reason
        self.revoked_at = revoked_at
        self.updated_at = revoked_at


class GrantCreation(BaseModel):
    """Preconditions for turning an appeal into a grant."""

    appeal_status: Literal["active", "approved"]
    account_id: str = Field(min_length=1)
    account_type: str = Field(min_length=1)
    resource_id: str = Field(min_length=1)


class ListGrantsFilter(BaseModel):
    statuses: list[str] | None = None
    account_ids: list[str] | None = None
    account_types: list[str] | None = None
    resource_ids: list[str] | None = None
    roles: list[str] | None = None
    provider_types: list[str] | None = None
    provider_urns: list[str] | None = None
    resource_types: list[str] | None = None
    resource_urns: list[str] | None = None
    created_by: str | None = None
    owner: str | None = None
    expiration_date_lt: datetime | None = None
    expiration_date_gt: datetime | None = None
    is_permanent: bool | None = None

    def matches(self, grant: Grant) -> bool:
        resource = grant.resource or Resource(id=grant.resource_id)
        checks = [
            (self.statuses, grant.status),
            (self.account_ids, grant.account_id),
            (self.account_types, grant.account_type),
            (self.resource_ids, grant.resource_id),
            (self.roles, grant.role),
            (self.provider_types, resource.provider_type),
            (self.provider_urns, resource.provider_urn),
            (self.resource_types, resource.type),
            (self.resource_urns, resource.urn),
        ]
        for allowed, value in checks:
            if allowed and value not in allowed:
                return False
        if self.created_by and grant.created_by != self.created_by:
            return False
        if self.owner and grant.owner != self.owner:
            return False
        if self.is_permanent is not None and grant.is_permanent != self.is_permanent:
            return False
        if self.expiration_date_lt is not None:
            if grant.expiration_date is None or not grant.expiration_date < self.expiration_date_lt:
                return False
        if self.expiration_date_gt is not None:
            if grant.expiration_date is None or not grant.expiration_date > self.expiration_date_gt:
                return False
        return True


class RevokeGrantsFilter(BaseModel):
    account_ids: list[str] | None = None
    provider_types: list[str] | None = None
    provider_urns: list[str] | None = None
    resource_types: list[str] | None = None
    resource_urns: list[str] | None = None

    def to_list_filter(self) -> ListGrantsFilter:
        return ListGrantsFilter(
            statuses=[GrantStatus.active],
            account_ids=self.account_ids,
            provider_types=self.provider_types,
            provider_urns=self.provider_urns,
            resource_types=self.resource_types,
            resource_urns=self.resource_urns,
        )
