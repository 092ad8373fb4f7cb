from __future__ import annotations

from typing import Any, Protocol, Sequence

from warden.domain.appeal import Appeal, ListAppealsFilter
from warden.domain.grant import Grant, ListGrantsFilter
from warden.domain.notification import Notification
from warden.domain.policy import IAMConfig, Policy
from warden.domain.resource import Resource, ResourceIdentifier


class ProviderService(Protocol):
    """Contract for the system that actually holds the access.

    Both calls are idempotent from the core's perspective: revoking an
    already-revoked grant must not fail.
    """

    async def grant_access(self, grant: Grant) -> None:
        ...

    async def revoke_access(self, grant: Grant) -> None:
        ...


class GrantRepository(Protocol):
    async def list(self, filter: ListGrantsFilter) -> list[Grant]:
        ...

    async def get_by_id(self, id: str) -> Grant:
        """Raises GrantNotFoundError."""
        ...

    async def update(self, grant: Grant) -> None:
        ...

    async def bulk_insert(self, grants: Sequence[Grant]) -> None:
        ...

    async def bulk_upsert(self, grants: Sequence[Grant]) -> None:
        ...


class AppealRepository(Protocol):
    async def find(self, filter: ListAppealsFilter) -> list[Appeal]:
        ...

    async def get_by_id(self, id: str) -> Appeal:
        """Raises AppealNotFoundError."""
        ...

    async def update(self, appeal: Appeal) -> None:
        ...

    async def bulk_upsert(self, appeals: Sequence[Appeal]) -> None:
        ...


class PolicyRepository(Protocol):
    async def create(self, policy: Policy) -> None:
        ...

    async def find(self) -> list[Policy]:
        ...

    async def get_one(self, id: str, version: int | None = None) -> Policy | None:
        """Latest version when ``version`` is None; None when absent."""
        ...


class ResourceService(Protocol):
    async def get(self, identifier: ResourceIdentifier) -> Resource:
        """Raises ResourceNotFoundError."""
        ...


class Notifier(Protocol):
    async def notify(self, notifications: Sequence[Notification]) -> list[Exception]:
        """Best effort; returns the delivery errors instead of raising."""
        ...


class AuditLogger(Protocol):
    async def log(self, action: str, data: Any) -> None:
        ...


class IdentityManager(Protocol):
    """Looks up users in the identity system a policy's ``iam`` block names."""

    async def get_user(self, config: IAMConfig, email: str) -> dict[str, Any]:
        """Raises on lookup failure."""
        ...
