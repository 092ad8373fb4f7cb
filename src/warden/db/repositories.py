"""
SQLAlchemy-backed repositories.

Writes are flushed, not committed; the session owner decides the
transaction boundary. Timestamps read back from databases that drop the
offset (SQLite) are treated as UTC.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from warden.core.errors import AppealNotFoundError, GrantNotFoundError, PolicyDuplicateError
from warden.core.timeutil import utcnow
from warden.db import models as db_models
from warden.domain.appeal import Appeal, AppealOptions, Approval, ListAppealsFilter
from warden.domain.grant import Grant, ListGrantsFilter
from warden.domain.policy import Policy
from warden.domain.resource import Resource

logger = structlog.get_logger()


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json") if model is not None else None


def _grant_row(grant: Grant) -> db_models.GrantModel:
    return db_models.GrantModel(
        id=grant.id,
        status=grant.status,
        status_in_provider=grant.status_in_provider,
        account_id=grant.account_id,
        account_type=grant.account_type,
        resource_id=grant.resource_id,
        resource=_dump(grant.resource),
        role=grant.role,
        permissions=list(grant.permissions),
        is_permanent=grant.is_permanent,
        expiration_date=grant.expiration_date,
        appeal_id=grant.appeal_id,
        source=grant.source,
        revoked_by=grant.revoked_by,
        revoked_at=grant.revoked_at,
        revoke_reason=grant.revoke_reason,
        created_by=grant.created_by,
        owner=grant.owner,
        created_at=grant.created_at,
        updated_at=grant.updated_at,
    )


def _grant_from_row(row: db_models.GrantModel) -> Grant:
    return Grant(
        id=row.id,
        status=row.status,
        status_in_provider=row.status_in_provider,
        account_id=row.account_id,
        account_type=row.account_type,
        resource_id=row.resource_id,
        resource=Resource.model_validate(row.resource) if row.resource else None,
        role=row.role,
        permissions=list(row.permissions or []),
        is_permanent=row.is_permanent,
        expiration_date=_as_utc(row.expiration_date),
        appeal_id=row.appeal_id,
        source=row.source,
        revoked_by=row.revoked_by,
        revoked_at=_as_utc(row.revoked_at),
        revoke_reason=row.revoke_reason,
        created_by=row.created_by,
        owner=row.owner,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _appeal_row(appeal: Appeal) -> db_models.AppealModel:
    return db_models.AppealModel(
        id=appeal.id,
        resource_id=appeal.resource_id,
        resource=_dump(appeal.resource),
        policy_id=appeal.policy_id,
        policy_version=appeal.policy_version,
        status=appeal.status,
        account_id=appeal.account_id,
        account_type=appeal.account_type,
        created_by=appeal.created_by,
        role=appeal.role,
        permissions=list(appeal.permissions),
        options=_dump(appeal.options),
        details=dict(appeal.details),
        creator=appeal.creator,
        labels=dict(appeal.labels),
        approvals=[approval.model_dump(mode="json") for approval in appeal.approvals],
        revoked_by=appeal.revoked_by,
        revoked_at=appeal.revoked_at,
        revoke_reason=appeal.revoke_reason,
        created_at=appeal.created_at,
        updated_at=appeal.updated_at,
    )


def _appeal_from_row(row: db_models.AppealModel) -> Appeal:
    return Appeal(
        id=row.id,
        resource_id=row.resource_id,
        resource=Resource.model_validate(row.resource) if row.resource else None,
        policy_id=row.policy_id,
        policy_version=row.policy_version,
        status=row.status,
        account_id=row.account_id,
        account_type=row.account_type,
        created_by=row.created_by,
        role=row.role,
        permissions=list(row.permissions or []),
        options=AppealOptions.model_validate(row.options) if row.options else None,
        details=dict(row.details or {}),
        creator=row.creator,
        labels=dict(row.labels or {}),
        approvals=[Approval.model_validate(item) for item in row.approvals or []],
        revoked_by=row.revoked_by,
        revoked_at=_as_utc(row.revoked_at),
        revoke_reason=row.revoke_reason,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


@dataclass(slots=True)
class GrantRepository:
    """Grant persistence.

    Calls are serialized on one session so that concurrent revocation
    workers can share the repository.
    """

    session: AsyncSession
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def list(self, filter: ListGrantsFilter) -> list[Grant]:
        stmt = select(db_models.GrantModel)
        if filter.statuses:
            stmt = stmt.where(db_models.GrantModel.status.in_(filter.statuses))
        if filter.account_ids:
            stmt = stmt.where(db_models.GrantModel.account_id.in_(filter.account_ids))
        if filter.resource_ids:
            stmt = stmt.where(db_models.GrantModel.resource_id.in_(filter.resource_ids))
        if filter.roles:
            stmt = stmt.where(db_models.GrantModel.role.in_(filter.roles))
        if filter.is_permanent is not None:
            stmt = stmt.where(db_models.GrantModel.is_permanent == filter.is_permanent)
        stmt = stmt.order_by(db_models.GrantModel.created_at)

        async with self._lock:
            result = await self.session.execute(stmt)
            grants = [_grant_from_row(row) for row in result.scalars()]
        # Resource and expiration predicates are applied on the decoded grants.
        return [grant for grant in grants if filter.matches(grant)]

    async def get_by_id(self, id: str) -> Grant:
        async with self._lock:
            row = await self.session.get(db_models.GrantModel, id)
            if row is None:
                raise GrantNotFoundError(details={"grant_id": id})
            return _grant_from_row(row)

    async def update(self, grant: Grant) -> None:
        async with self._lock:
            if await self.session.get(db_models.GrantModel, grant.id) is None:
                raise GrantNotFoundError(details={"grant_id": grant.id})
            await self.session.merge(_grant_row(grant))
            await self.session.flush()

    async def bulk_insert(self, grants: Sequence[Grant]) -> None:
        async with self._lock:
            for grant in grants:
                if not grant.id:
                    grant.id = str(uuid.uuid4())
                self.session.add(_grant_row(grant))
            await self.session.flush()

    async def bulk_upsert(self, grants: Sequence[Grant]) -> None:
        async with self._lock:
            for grant in grants:
                if not grant.id:
                    grant.id = str(uuid.uuid4())
                await self.session.merge(_grant_row(grant))
            await self.session.flush()


@dataclass(slots=True)
class AppealRepository:
    session: AsyncSession

    async def find(self, filter: ListAppealsFilter) -> list[Appeal]:
        stmt = select(db_models.AppealModel)
        if filter.account_id:
            stmt = stmt.where(db_models.AppealModel.account_id == filter.account_id)
        if filter.account_ids:
            stmt = stmt.where(db_models.AppealModel.account_id.in_(filter.account_ids))
        if filter.resource_id:
            stmt = stmt.where(db_models.AppealModel.resource_id == filter.resource_id)
        if filter.role:
            stmt = stmt.where(db_models.AppealModel.role == filter.role)
        stmt = stmt.order_by(db_models.AppealModel.created_at)

        result = await self.session.execute(stmt)
        appeals = [_appeal_from_row(row) for row in result.scalars()]
        return [appeal for appeal in appeals if filter.matches(appeal)]

    async def get_by_id(self, id: str) -> Appeal:
        row = await self.session.get(db_models.AppealModel, id)
        if row is None:
            raise AppealNotFoundError(details={"appeal_id": id})
        return _appeal_from_row(row)

    async def update(self, appeal: Appeal) -> None:
        if await self.session.get(db_models.AppealModel, appeal.id) is None:
            raise AppealNotFoundError(details={"appeal_id": appeal.id})
        await self.session.merge(_appeal_row(appeal))
        await self.session.flush()

    async def bulk_upsert(self, appeals: Sequence[Appeal]) -> None:
        for appeal in appeals:
            if not appeal.id:
                appeal.id = str(uuid.uuid4())
            await self.session.merge(_appeal_row(appeal))
        await self.session.flush()


@dataclass(slots=True)
class PolicyRepository:
    session: AsyncSession

    async def create(self, policy: Policy) -> None:
        if await self.session.get(db_models.PolicyModel, (policy.id, policy.version)) is not None:
            raise PolicyDuplicateError(details={"policy_id": policy.id, "version": policy.version})
        self.session.add(
            db_models.PolicyModel(
                id=policy.id,
                version=policy.version,
                description=policy.description,
                document=policy.model_dump(mode="json", by_alias=True),
                created_at=policy.created_at,
            )
        )
        await self.session.flush()

    async def find(self) -> list[Policy]:
        result = await self.session.execute(
            select(db_models.PolicyModel).order_by(db_models.PolicyModel.id, db_models.PolicyModel.version)
        )
        latest: dict[str, Policy] = {}
        for row in result.scalars():
            latest[row.id] = Policy.model_validate(row.document)
        return list(latest.values())

    async def get_one(self, id: str, version: int | None = None) -> Policy | None:
        stmt = select(db_models.PolicyModel).where(db_models.PolicyModel.id == id)
        if version:
            stmt = stmt.where(db_models.PolicyModel.version == version)
        else:
            stmt = stmt.order_by(db_models.PolicyModel.version.desc()).limit(1)
        result = await self.session.execute(stmt)
        row = result.scalars().first()
        if row is None:
            return None
        return Policy.model_validate(row.document)


@dataclass(slots=True)
class AuditRepository:
    """Stores audit entries; satisfies the ``AuditLogger`` contract."""

    session: AsyncSession
    actor: str | None = None

    async def log(self, action: str, data: Any) -> None:
        self.session.add(
            db_models.AuditLogModel(timestamp=utcnow(), action=action, actor=self.actor, data=data)
        )
        await self.session.flush()
        logger.debug("audit_entry_stored", action=action)

    async def list(self, action: str | None = None) -> list[db_models.AuditLogModel]:
        stmt = select(db_models.AuditLogModel).order_by(db_models.AuditLogModel.id)
        if action:
            stmt = stmt.where(db_models.AuditLogModel.action == action)
        result = await self.session.execute(stmt)
        return list(result.scalars())
