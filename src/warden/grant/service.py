"""
Grant lifecycle.

A grant is created from an active appeal, stays ``active`` until it is
revoked, and never goes back. A revocation updates the stored record first
and then removes the access in the provider; when the provider call fails
the stored record is restored from a snapshot taken before the update.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

import structlog
from pydantic import ValidationError

from warden.audit.recorder import AuditRecorder
from warden.config import Settings, get_settings
from warden.core.errors import (
    EmptyIDParamError,
    EmptyOwnerError,
    GrantRevokeFailedError,
    GrantRollbackFailedError,
    GrantValidationError,
    InvalidInputError,
    PersistenceError,
    WardenError,
)
from warden.core.timeutil import utcnow
from warden.domain.appeal import Appeal
from warden.domain.grant import (
    Grant,
    GrantCreation,
    GrantSource,
    GrantStatus,
    ListGrantsFilter,
    RevokeGrantsFilter,
)
from warden.domain.notification import Notification, NotificationMessage, NotificationType
from warden.grant.revocation import BulkRevokeResult, RevocationEngine, group_by_resource
from warden.notifications import send_notifications
from warden.providers.base import AuditLogger, GrantRepository, Notifier, ProviderService

logger = structlog.get_logger()

AUDIT_KEY_GRANT_REVOKE = "grant.revoke"
AUDIT_KEY_GRANT_UPDATE = "grant.update"
AUDIT_KEY_GRANT_BULK_REVOKE = "grant.bulkRevoke"


@dataclass
class ExpiredRevokeSummary:
    succeeded_ids: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class GrantService:
    def __init__(
        self,
        repository: GrantRepository,
        provider: ProviderService,
        notifier: Notifier | None = None,
        audit_logger: AuditLogger | None = None,
        *,
        settings: Settings | None = None,
        engine: RevocationEngine | None = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.notifier = notifier
        self.audit = AuditRecorder(audit_logger)
        self.settings = settings or get_settings()
        self.engine = engine or RevocationEngine(
            provider,
            repository,
            batch_size=self.settings.revoke_batch_size,
            interval=self.settings.revoke_interval_seconds,
            max_workers=self.settings.revoke_max_workers,
        )

    async def list(self, filter: ListGrantsFilter | None = None) -> list[Grant]:
        return await self.repository.list(filter or ListGrantsFilter())

    async def get_by_id(self, id: str) -> Grant:
        if not id:
            raise EmptyIDParamError()
        return await self.repository.get_by_id(id)

    async def update(self, payload: Grant) -> Grant:
        """Change the owner of an existing grant. Other fields are ignored."""
        grant = await self.get_by_id(payload.id)
        if not payload.owner:
            raise EmptyOwnerError()

        previous_owner = grant.owner
        grant.owner = payload.owner
        grant.updated_at = utcnow()
        await self._persist(grant)
        logger.info("grant_updated", grant_id=grant.id, previous_owner=previous_owner, owner=grant.owner)

        await self.audit.record(
            AUDIT_KEY_GRANT_UPDATE,
            {"grant_id": grant.id, "previous_owner": previous_owner, "owner": grant.owner},
        )
        if previous_owner != grant.owner:
            variables = {
                "grant_id": grant.id,
                "resource_name": grant.resource.display_name() if grant.resource else grant.resource_id,
                "role": grant.role,
                "previous_owner": previous_owner,
                "new_owner": grant.owner,
            }
            notifications = [
                Notification(
                    user=user,
                    message=NotificationMessage(type=NotificationType.grant_owner_changed, variables=variables),
                )
                for user in (previous_owner, grant.owner)
                if user
            ]
            await send_notifications(self.notifier, notifications, grant_id=grant.id)
        return grant

    async def prepare(self, appeal: Appeal) -> Grant:
        """Build (without persisting) the grant an active appeal entitles to."""
        try:
            GrantCreation(
                appeal_status=str(appeal.status),
                account_id=appeal.account_id,
                account_type=appeal.account_type,
                resource_id=appeal.resource_id,
            )
        except ValidationError as exc:
            raise GrantValidationError(
                f"validating appeal: {exc.errors(include_url=False)}",
                details={"appeal_id": appeal.id},
            ) from exc

        now = utcnow()
        expiration = appeal.options.resolve_expiration(now) if appeal.options else None
        owner = appeal.created_by or appeal.account_id
        return Grant(
            id=str(uuid4()),
            status=GrantStatus.active,
            status_in_provider=GrantStatus.active,
            account_id=appeal.account_id,
            account_type=appeal.account_type,
            resource_id=appeal.resource_id,
            resource=appeal.resource,
            role=appeal.role,
            permissions=list(appeal.permissions),
            is_permanent=expiration is None,
            expiration_date=expiration,
            appeal_id=appeal.id,
            source=GrantSource.appeal,
            created_by=appeal.created_by,
            owner=owner,
            created_at=now,
            updated_at=now,
        )

    async def revoke(
        self,
        id: str,
        actor: str,
        reason: str,
        *,
        skip_notifications: bool = False,
        skip_revoke_in_provider: bool = False,
    ) -> Grant:
        grant = await self.get_by_id(id)
        snapshot = grant.model_copy(deep=True)
        log = logger.bind(grant_id=id, actor=actor)

        grant.revoke(actor, reason)
        await self._persist(grant)

        if not skip_revoke_in_provider:
            try:
                await self.provider.revoke_access(grant)
            except Exception as provider_exc:
                log.error("provider_revoke_failed", error=str(provider_exc))
                try:
                    await self.repository.update(snapshot)
                except Exception as rollback_exc:
                    log.error("grant_rollback_failed", error=str(rollback_exc))
                    raise GrantRollbackFailedError(
                        details={
                            "grant_id": id,
                            "provider_error": str(provider_exc),
                            "rollback_error": str(rollback_exc),
                        }
                    ) from rollback_exc
                raise GrantRevokeFailedError(
                    f"removing grant in provider: {provider_exc}",
                    details={"grant_id": id},
                ) from provider_exc

        log.info("grant_revoked", reason=reason)

        if not skip_notifications:
            notification = Notification(
                user=grant.owner or grant.created_by or grant.account_id,
                message=NotificationMessage(
                    type=NotificationType.access_revoked,
                    variables={
                        "resource_name": grant.resource.display_name() if grant.resource else grant.resource_id,
                        "role": grant.role,
                        "account_type": grant.account_type,
                        "account_id": grant.account_id,
                        "requestor": grant.owner,
                    },
                ),
            )
            await send_notifications(self.notifier, [notification], grant_id=id)

        await self.audit.record(AUDIT_KEY_GRANT_REVOKE, {"grant_id": id, "reason": reason, "actor": actor})
        return grant

    async def bulk_revoke(
        self,
        filter: RevokeGrantsFilter,
        actor: str,
        reason: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> BulkRevokeResult:
        """Revoke every active grant matching ``filter``.

        Returns one outcome per matched grant. Failed or cancelled grants are
        returned unchanged and stay active.
        """
        if not filter.account_ids:
            raise InvalidInputError("account_ids is required", details={"field": "account_ids"})

        grants = await self.list(filter.to_list_filter())
        if not grants:
            return BulkRevokeResult()

        groups = group_by_resource(grants)
        result = await self.engine.run(groups, actor, reason, cancel_event=cancel_event)

        await self.audit.record(
            AUDIT_KEY_GRANT_BULK_REVOKE,
            {
                "account_ids": filter.account_ids,
                "actor": actor,
                "reason": reason,
                "total": result.total,
                "succeeded_ids": result.succeeded_ids,
                "failed_ids": result.failed_ids,
            },
        )
        return result

    async def revoke_expired(self, now: datetime | None = None) -> ExpiredRevokeSummary:
        """Revoke active, non-permanent grants whose expiration has passed."""
        now = now or utcnow()
        expired = await self.list(
            ListGrantsFilter(
                statuses=[GrantStatus.active],
                is_permanent=False,
                expiration_date_lt=now,
            )
        )
        summary = ExpiredRevokeSummary()
        actor = self.settings.system_actor_name
        reason = self.settings.expired_grant_revoke_reason
        for grant in expired:
            try:
                await self.revoke(grant.id, actor, reason)
            except WardenError as exc:
                logger.error("expired_grant_revoke_failed", grant_id=grant.id, error=str(exc))
                summary.failed[grant.id] = str(exc)
                continue
            summary.succeeded_ids.append(grant.id)

        logger.info(
            "expired_grants_revoked",
            revoked=len(summary.succeeded_ids),
            failed=len(summary.failed),
        )
        return summary

    async def _persist(self, grant: Grant) -> None:
        try:
            await self.repository.update(grant)
        except WardenError:
            raise
        except Exception as exc:
            raise PersistenceError(
                f"updating grant record in db: {exc}",
                details={"grant_id": grant.id},
            ) from exc
