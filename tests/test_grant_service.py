"""Tests for the grant lifecycle: revoke, rollback, update and bulk revoke."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from warden.core.errors import (
    EmptyIDParamError,
    EmptyOwnerError,
    ErrorKind,
    GrantAlreadyRevokedError,
    GrantNotFoundError,
    GrantRevokeFailedError,
    GrantRollbackFailedError,
    GrantValidationError,
    InvalidInputError,
    PersistenceError,
)
from warden.core.timeutil import utcnow
from warden.domain.appeal import Appeal, AppealOptions, AppealStatus
from warden.domain.grant import GrantStatus, RevokeGrantsFilter
from warden.domain.notification import NotificationType
from warden.grant.service import GrantService
from warden.storage.memory import InMemoryAuditLogger, InMemoryGrantRepository, RecordingNotifier


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit():
    return InMemoryAuditLogger()


@pytest.fixture
def build(provider, notifier, audit, settings):
    def _build(grants=(), provider=provider, repository=None):
        repository = repository or InMemoryGrantRepository(grants)
        service = GrantService(repository, provider, notifier, audit, settings=settings)
        return service, repository

    return _build


class FlakyRepository(InMemoryGrantRepository):
    """Fails ``update`` calls whose 1-based position is in ``fail_calls``."""

    def __init__(self, grants, fail_calls):
        super().__init__(grants)
        self.fail_calls = set(fail_calls)
        self.update_calls = 0

    async def update(self, grant):
        self.update_calls += 1
        if self.update_calls in self.fail_calls:
            raise RuntimeError("database unavailable")
        await super().update(grant)


class TestGetById:
    @pytest.mark.asyncio
    async def test_empty_id_does_not_touch_repository(self, make_provider):
        repository = MagicMock()
        repository.get_by_id = AsyncMock()
        service = GrantService(repository, make_provider(), engine=MagicMock(), settings=MagicMock())

        with pytest.raises(EmptyIDParamError):
            await service.get_by_id("")
        with pytest.raises(EmptyIDParamError):
            await service.revoke("", "admin@example.com", "reason")

        repository.get_by_id.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_grant(self, build):
        service, _ = build()
        with pytest.raises(GrantNotFoundError) as exc_info:
            await service.get_by_id("missing")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_updates_store_and_provider(self, build, provider, notifier, audit, make_grant):
        service, repository = build([make_grant("g-1")])

        grant = await service.revoke("g-1", "admin@example.com", "left the team")

        assert grant.status == GrantStatus.inactive
        stored = await repository.get_by_id("g-1")
        assert stored.status == GrantStatus.inactive
        assert stored.revoked_by == "admin@example.com"
        assert [g.id for g in provider.revoked] == ["g-1"]
        assert notifier.sent[0].message.type == NotificationType.access_revoked
        assert notifier.sent[0].user == "user@example.com"
        assert "grant.revoke" in audit.actions()

    @pytest.mark.asyncio
    async def test_skip_revoke_in_provider(self, build, provider, notifier, make_grant):
        service, repository = build([make_grant("g-1")])

        await service.revoke(
            "g-1", "admin@example.com", "cleanup", skip_revoke_in_provider=True, skip_notifications=True
        )

        assert provider.revoked == []
        assert notifier.sent == []
        assert (await repository.get_by_id("g-1")).status == GrantStatus.inactive

    @pytest.mark.asyncio
    async def test_provider_failure_restores_previous_state(self, build, make_grant, make_provider):
        original = make_grant("g-1")
        service, repository = build([original], provider=make_provider(fail_on={"g-1"}))

        with pytest.raises(GrantRevokeFailedError) as exc_info:
            await service.revoke("g-1", "admin@example.com", "reason")

        stored = await repository.get_by_id("g-1")
        assert stored == original
        assert exc_info.value.kind == ErrorKind.UPSTREAM_FAILURE
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_rollback_failure_is_reported(self, build, make_grant, make_provider):
        repository = FlakyRepository([make_grant("g-1")], fail_calls={2})
        service, _ = build(provider=make_provider(fail_on={"g-1"}), repository=repository)

        with pytest.raises(GrantRollbackFailedError) as exc_info:
            await service.revoke("g-1", "admin@example.com", "reason")

        error = exc_info.value
        assert error.kind == ErrorKind.PERSISTENCE_FAILURE
        assert "provider unavailable" in error.details["provider_error"]
        assert "database unavailable" in error.details["rollback_error"]
        assert (await repository.get_by_id("g-1")).status == GrantStatus.inactive

    @pytest.mark.asyncio
    async def test_persistence_failure_skips_provider(self, build, provider, make_grant):
        repository = FlakyRepository([make_grant("g-1")], fail_calls={1})
        service, _ = build(repository=repository)

        with pytest.raises(PersistenceError):
            await service.revoke("g-1", "admin@example.com", "reason")

        assert provider.revoked == []

    @pytest.mark.asyncio
    async def test_revoking_inactive_grant(self, build, provider, make_grant):
        service, _ = build([make_grant("g-1", status=GrantStatus.inactive)])

        with pytest.raises(GrantAlreadyRevokedError):
            await service.revoke("g-1", "admin@example.com", "again")

        assert provider.revoked == []

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_revoke(self, provider, notifier, settings, make_grant):
        audit_logger = MagicMock()
        audit_logger.log = AsyncMock(side_effect=RuntimeError("audit store down"))
        service = GrantService(
            InMemoryGrantRepository([make_grant("g-1")]), provider, notifier, audit_logger, settings=settings
        )

        grant = await service.revoke("g-1", "admin@example.com", "reason")

        assert grant.status == GrantStatus.inactive
        audit_logger.log.assert_awaited_once()


class TestUpdate:
    @pytest.mark.asyncio
    async def test_owner_change_notifies_both_owners(self, build, notifier, audit, make_grant):
        service, repository = build([make_grant("g-1", owner="old@example.com")])

        payload = make_grant("g-1", owner="new@example.com", role="admin")
        updated = await service.update(payload)

        assert updated.owner == "new@example.com"
        assert updated.role == "viewer"
        assert (await repository.get_by_id("g-1")).owner == "new@example.com"
        assert sorted(n.user for n in notifier.sent) == ["new@example.com", "old@example.com"]
        assert all(n.message.type == NotificationType.grant_owner_changed for n in notifier.sent)
        assert "grant.update" in audit.actions()

    @pytest.mark.asyncio
    async def test_empty_owner(self, build, make_grant):
        service, _ = build([make_grant("g-1")])
        with pytest.raises(EmptyOwnerError):
            await service.update(make_grant("g-1", owner=""))


class TestPrepare:
    @pytest.mark.asyncio
    async def test_prepare_from_active_appeal(self, build, resource):
        service, _ = build()
        appeal = Appeal(
            id="appeal-1",
            resource_id=resource.id,
            resource=resource,
            account_id="user@example.com",
            role="viewer",
            permissions=["roles/viewer"],
            created_by="requester@example.com",
            status=AppealStatus.active,
            options=AppealOptions(duration="1h"),
        )

        before = utcnow()
        grant = await service.prepare(appeal)

        assert grant.status == GrantStatus.active
        assert grant.appeal_id == "appeal-1"
        assert grant.permissions == ["roles/viewer"]
        assert grant.owner == "requester@example.com"
        assert not grant.is_permanent
        assert before + timedelta(hours=1) <= grant.expiration_date <= utcnow() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_prepare_without_expiration_is_permanent(self, build, resource):
        service, _ = build()
        appeal = Appeal(resource_id=resource.id, account_id="user@example.com", role="viewer", status="approved")

        grant = await service.prepare(appeal)

        assert grant.is_permanent
        assert grant.expiration_date is None

    @pytest.mark.asyncio
    async def test_prepare_rejects_pending_appeal(self, build):
        service, _ = build()
        appeal = Appeal(resource_id="res-1", account_id="user@example.com", role="viewer")

        with pytest.raises(GrantValidationError):
            await service.prepare(appeal)


class TestBulkRevoke:
    @pytest.mark.asyncio
    async def test_requires_account_ids(self, make_provider):
        repository = MagicMock()
        repository.list = AsyncMock()
        service = GrantService(repository, make_provider(), engine=MagicMock(), settings=MagicMock())

        with pytest.raises(InvalidInputError):
            await service.bulk_revoke(RevokeGrantsFilter(account_ids=[]), "admin@example.com", "offboarding")

        repository.list.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_matching_grants(self, build):
        service, _ = build()
        result = await service.bulk_revoke(
            RevokeGrantsFilter(account_ids=["nobody@example.com"]), "admin@example.com", "offboarding"
        )
        assert result.total == 0

    @pytest.mark.asyncio
    async def test_revokes_every_grant_across_resources(self, build, provider, audit, make_grant):
        grants = [
            make_grant(f"g-{resource_index}-{n}", resource_id=f"res-{resource_index}")
            for resource_index in range(3)
            for n in range(4)
        ]
        grants.append(make_grant("g-other", account_id="other@example.com"))
        service, repository = build(grants)

        result = await service.bulk_revoke(
            RevokeGrantsFilter(account_ids=["user@example.com"]), "admin@example.com", "offboarding"
        )

        assert result.total == 12
        assert result.success_count == 12
        assert result.failure_count == 0
        assert len(provider.revoked) == 12
        assert (await repository.get_by_id("g-other")).status == GrantStatus.active
        assert (await repository.get_by_id("g-1-2")).status == GrantStatus.inactive
        assert "grant.bulkRevoke" in audit.actions()

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_failed_grants_active(self, build, make_grant, make_provider):
        grants = [make_grant(f"g-{n}", resource_id=f"res-{n % 2}") for n in range(6)]
        service, repository = build(grants, provider=make_provider(fail_on={"g-1", "g-4"}))

        result = await service.bulk_revoke(
            RevokeGrantsFilter(account_ids=["user@example.com"]), "admin@example.com", "offboarding"
        )

        assert result.total == 6
        assert sorted(result.failed_ids) == ["g-1", "g-4"]
        assert len(result.succeeded_ids) + len(result.failed_ids) == 6
        failed = {g.id: g for g in result.grants if g.id in result.failed_ids}
        assert all(g.status == GrantStatus.active for g in failed.values())
        assert (await repository.get_by_id("g-4")).status == GrantStatus.active

    @pytest.mark.asyncio
    async def test_cancelled_before_start_leaves_grants_active(self, build, provider, make_grant):
        grants = [make_grant(f"g-{n}", resource_id=f"res-{n}") for n in range(3)]
        service, repository = build(grants)
        cancel = asyncio.Event()
        cancel.set()

        result = await service.bulk_revoke(
            RevokeGrantsFilter(account_ids=["user@example.com"]),
            "admin@example.com",
            "offboarding",
            cancel_event=cancel,
        )

        assert result.total == 3
        assert sorted(result.cancelled_ids) == ["g-0", "g-1", "g-2"]
        assert provider.revoked == []
        assert all(g.status == GrantStatus.active for g in result.grants)


class TestRevokeExpired:
    @pytest.mark.asyncio
    async def test_revokes_only_expired_grants(self, build, provider, make_grant):
        now = utcnow()
        grants = [
            make_grant("expired", expiration_date=now - timedelta(hours=1)),
            make_grant("valid", expiration_date=now + timedelta(hours=1)),
            make_grant("permanent", is_permanent=True, expiration_date=None),
        ]
        service, repository = build(grants)

        summary = await service.revoke_expired(now)

        assert summary.succeeded_ids == ["expired"]
        assert summary.failed == {}
        stored = await repository.get_by_id("expired")
        assert stored.revoked_by == "system"
        assert stored.revoke_reason == "Automatically revoked"
        assert (await repository.get_by_id("valid")).status == GrantStatus.active

    @pytest.mark.asyncio
    async def test_failures_do_not_abort_run(self, build, make_grant, make_provider):
        now = utcnow()
        grants = [make_grant(f"g-{n}", expiration_date=now - timedelta(minutes=n + 1)) for n in range(3)]
        service, _ = build(grants, provider=make_provider(fail_on={"g-1"}))

        summary = await service.revoke_expired(now)

        assert sorted(summary.succeeded_ids) == ["g-0", "g-2"]
        assert list(summary.failed) == ["g-1"]
