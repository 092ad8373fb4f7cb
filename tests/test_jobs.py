"""Tests for background job handling.

Covers the expired-grant and bulk revocation jobs, partial batch failure
reporting, and the in-memory queue.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from warden.core.timeutil import utcnow
from warden.domain.grant import GrantStatus, ListGrantsFilter
from warden.grant.revocation import BulkRevokeResult, RevocationOutcome
from warden.grant.service import GrantService
from warden.jobs import (
    JOB_BULK_REVOKE_GRANTS,
    JOB_REVOKE_EXPIRED_GRANTS,
    InMemoryJobQueue,
    JobMessage,
    UnknownJobTypeError,
    handle_jobs,
    process_job,
    run_jobs,
)
from warden.storage.memory import InMemoryGrantRepository


@pytest.fixture
def repository(make_grant):
    now = utcnow()
    return InMemoryGrantRepository(
        [
            make_grant("expired", expiration_date=now - timedelta(minutes=5)),
            make_grant("current", expiration_date=now + timedelta(days=1)),
            make_grant("other", account_id="other@example.com"),
        ]
    )


@pytest.fixture
def grant_service(repository, provider, settings):
    return GrantService(repository, provider, settings=settings)


@pytest.fixture
def mock_grant_service(settings):
    service = MagicMock(spec=GrantService)
    service.settings = settings
    service.bulk_revoke = AsyncMock()
    service.revoke_expired = AsyncMock()
    return service


class TestProcessJob:
    @pytest.mark.asyncio
    async def test_revoke_expired(self, grant_service, repository):
        message = JobMessage(job_id="job-1", job_type=JOB_REVOKE_EXPIRED_GRANTS)

        outcome = await process_job(message, grant_service)

        assert outcome == {"revoked": ["expired"], "failed": []}
        expired = await repository.get_by_id("expired")
        assert expired.status == GrantStatus.inactive
        assert expired.revoked_by == "system"
        assert expired.revoke_reason == "Automatically revoked"

    @pytest.mark.asyncio
    async def test_bulk_revoke(self, grant_service, repository):
        message = JobMessage(
            job_id="job-2",
            job_type=JOB_BULK_REVOKE_GRANTS,
            payload={
                "filter": {"account_ids": ["user@example.com"]},
                "actor": "admin@example.com",
                "reason": "offboarding",
            },
        )

        outcome = await process_job(message, grant_service)

        assert sorted(outcome["revoked"]) == ["current", "expired"]
        assert outcome["failed"] == []
        active = await repository.list(ListGrantsFilter(statuses=[GrantStatus.active]))
        assert [g.id for g in active] == ["other"]

    @pytest.mark.asyncio
    async def test_bulk_revoke_actor_falls_back_to_requester(self, mock_grant_service, make_grant):
        grant = make_grant("grant-1")
        mock_grant_service.bulk_revoke.return_value = BulkRevokeResult(
            [RevocationOutcome(grant=grant, revoked=False, error="provider unavailable")]
        )
        message = JobMessage(
            job_id="job-3",
            job_type=JOB_BULK_REVOKE_GRANTS,
            payload={"filter": {"account_ids": ["user@example.com"]}, "reason": "offboarding"},
            requested_by="security@example.com",
        )

        outcome = await process_job(message, mock_grant_service)

        assert outcome == {"revoked": [], "failed": ["grant-1"]}
        kwargs = mock_grant_service.bulk_revoke.call_args.kwargs
        assert kwargs["actor"] == "security@example.com"
        assert kwargs["reason"] == "offboarding"

    @pytest.mark.asyncio
    async def test_unknown_job_type(self, grant_service):
        with pytest.raises(UnknownJobTypeError):
            await process_job(JobMessage(job_id="job-4", job_type="grant.unknown"), grant_service)


class TestHandleJobs:
    @pytest.mark.asyncio
    async def test_partial_batch_failure(self, grant_service):
        messages = [
            JobMessage(job_id="job-1", job_type=JOB_REVOKE_EXPIRED_GRANTS),
            JobMessage(job_id="job-2", job_type="grant.unknown"),
            JobMessage(job_id="job-3", job_type=JOB_BULK_REVOKE_GRANTS, payload={"filter": {}}),
        ]

        response = await handle_jobs(messages, grant_service)

        # job-3 has no account ids, which bulk revocation rejects.
        assert response["batchItemFailures"] == [{"itemIdentifier": "job-2"}, {"itemIdentifier": "job-3"}]
        assert response["results"]["job-1"] == {"revoked": ["expired"], "failed": []}

    @pytest.mark.asyncio
    async def test_empty_batch(self, grant_service):
        assert await handle_jobs([], grant_service) == {"batchItemFailures": [], "results": {}}

    @pytest.mark.asyncio
    async def test_service_error_does_not_stop_batch(self, mock_grant_service):
        mock_grant_service.revoke_expired.side_effect = RuntimeError("database unavailable")
        mock_grant_service.bulk_revoke.return_value = BulkRevokeResult()
        messages = [
            JobMessage(job_id="job-1", job_type=JOB_REVOKE_EXPIRED_GRANTS),
            JobMessage(
                job_id="job-2",
                job_type=JOB_BULK_REVOKE_GRANTS,
                payload={"filter": {"account_ids": ["user@example.com"]}},
            ),
        ]

        response = await handle_jobs(messages, mock_grant_service)

        assert response["batchItemFailures"] == [{"itemIdentifier": "job-1"}]
        assert response["results"] == {"job-2": {"revoked": [], "failed": []}}
        assert mock_grant_service.bulk_revoke.call_args.kwargs["actor"] == "system"


class TestJobMessage:
    def test_message_body(self):
        message = JobMessage(
            job_id="job-1",
            job_type=JOB_BULK_REVOKE_GRANTS,
            payload={"filter": {"account_ids": ["user@example.com"]}},
            requested_by="admin@example.com",
        )

        assert JobMessage.from_message_body(message.to_message_body()) == message

    def test_body_omits_missing_requester(self):
        body = JobMessage(job_id="job-1", job_type=JOB_REVOKE_EXPIRED_GRANTS).to_message_body()
        assert "requested_by" not in body


class TestInMemoryJobQueue:
    @pytest.mark.asyncio
    async def test_enqueue_and_dequeue(self):
        queue = InMemoryJobQueue()

        job_id = await queue.enqueue(JobMessage(job_id="job-1", job_type=JOB_REVOKE_EXPIRED_GRANTS))

        assert job_id == "job-1"
        assert queue.size() == 1
        message = await queue.dequeue()
        assert message.job_id == "job-1"
        assert queue.size() == 0

    @pytest.mark.asyncio
    async def test_drain_feeds_handler(self, grant_service):
        queue = InMemoryJobQueue()
        await queue.enqueue(JobMessage(job_id="job-1", job_type=JOB_REVOKE_EXPIRED_GRANTS))
        await queue.enqueue(JobMessage(job_id="job-2", job_type=JOB_REVOKE_EXPIRED_GRANTS))

        response = await handle_jobs(queue.drain(), grant_service)

        assert queue.size() == 0
        assert response["batchItemFailures"] == []
        assert response["results"]["job-2"] == {"revoked": [], "failed": []}


class TestRunJobs:
    def test_decodes_bodies_and_configures_logging(self, grant_service):
        bodies = [
            JobMessage(job_id="job-1", job_type=JOB_REVOKE_EXPIRED_GRANTS).to_message_body(),
            JobMessage(job_id="job-2", job_type="grant.unknown").to_message_body(),
        ]

        with patch("warden.jobs.handler.configure_logging") as mock_configure:
            response = run_jobs(bodies, grant_service)

        mock_configure.assert_called_once_with("INFO", json_output=True)
        assert response["batchItemFailures"] == [{"itemIdentifier": "job-2"}]
        assert response["results"]["job-1"] == {"revoked": ["expired"], "failed": []}
