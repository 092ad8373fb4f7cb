"""
Background job handling.

Each message is processed independently; a failing message is reported
back by id and never stops the rest of the batch.
"""

from __future__ import annotations

import asyncio
from typing import Any, Sequence

import structlog

from warden.domain.grant import RevokeGrantsFilter
from warden.grant.service import GrantService
from warden.jobs.models import JOB_BULK_REVOKE_GRANTS, JOB_REVOKE_EXPIRED_GRANTS, JobMessage
from warden.logging import bind_context, bind_request_context, clear_request_context, configure_logging

logger = structlog.get_logger()


class UnknownJobTypeError(ValueError):
    """Raised for a message whose job type has no handler."""


async def process_job(message: JobMessage, grant_service: GrantService) -> dict[str, Any]:
    log = bind_context(job_id=message.job_id, job_type=message.job_type)
    log.info("job_started")

    if message.job_type == JOB_REVOKE_EXPIRED_GRANTS:
        summary = await grant_service.revoke_expired()
        outcome = {"revoked": summary.succeeded_ids, "failed": sorted(summary.failed)}
    elif message.job_type == JOB_BULK_REVOKE_GRANTS:
        body = message.payload
        result = await grant_service.bulk_revoke(
            RevokeGrantsFilter.model_validate(body.get("filter", {})),
            actor=body.get("actor") or message.requested_by or grant_service.settings.system_actor_name,
            reason=body.get("reason", ""),
        )
        outcome = {"revoked": result.succeeded_ids, "failed": result.failed_ids}
    else:
        raise UnknownJobTypeError(message.job_type)

    log.info("job_succeeded", revoked=len(outcome["revoked"]), failed=len(outcome["failed"]))
    return outcome


async def handle_jobs(messages: Sequence[JobMessage], grant_service: GrantService) -> dict[str, Any]:
    """
    Process a batch of job messages with partial failure support.
    Returns the ids of failed messages as batchItemFailures.
    """
    failed_job_ids = []
    results: dict[str, Any] = {}

    for message in messages:
        bind_request_context(job_id=message.job_id, requested_by=message.requested_by)
        try:
            results[message.job_id] = await process_job(message, grant_service)
        except Exception as exc:
            logger.error(
                "job_processing_failed",
                job_id=message.job_id,
                job_type=message.job_type,
                error=str(exc),
            )
            failed_job_ids.append(message.job_id)
        finally:
            clear_request_context()

    return {
        "batchItemFailures": [{"itemIdentifier": job_id} for job_id in failed_job_ids],
        "results": results,
    }


def run_jobs(bodies: Sequence[str], grant_service: GrantService) -> dict[str, Any]:
    """Entry point for a worker process: decode raw message bodies and handle them."""
    configure_logging(grant_service.settings.log_level, json_output=grant_service.settings.log_json)
    messages = [JobMessage.from_message_body(body) for body in bodies]
    logger.info("jobs_received", count=len(messages))
    return asyncio.run(handle_jobs(messages, grant_service))
