"""
Concurrent bulk revocation.

Grants are partitioned by resource before fan-out; each worker pulls a
whole resource group from a shared queue and revokes its grants
sequentially, so one resource is never revoked concurrently. Provider
calls are throttled by a token bucket scoped to a single run.

Every input grant yields exactly one outcome: revoked, failed (the
original, still-active grant) or cancelled (untouched).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Sequence

import structlog

from warden.domain.grant import Grant
from warden.providers.base import GrantRepository, ProviderService

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 10
DEFAULT_INTERVAL_SECONDS = 1.0
DEFAULT_MAX_WORKERS = 16


class TokenBucket:
    """Allows at most ``capacity`` acquisitions per ``refill_interval`` seconds.

    Starts full and is refilled to capacity each time an interval has
    elapsed. Waiters are served in arrival order.
    """

    def __init__(
        self,
        capacity: int,
        refill_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")
        self.capacity = capacity
        self.refill_interval = refill_interval
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> int:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        elapsed = self._clock() - self._last_refill
        if elapsed >= self.refill_interval:
            periods = int(elapsed // self.refill_interval)
            self._last_refill += periods * self.refill_interval
            self._tokens = self.capacity

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens > 0:
                    self._tokens -= 1
                    return
                wait = self._last_refill + self.refill_interval - self._clock()
                await self._sleep(max(wait, 0.0))


@dataclass(slots=True)
class RevocationOutcome:
    grant: Grant
    revoked: bool
    cancelled: bool = False
    error: str | None = None


@dataclass
class BulkRevokeResult:
    """Per-grant outcomes of a bulk revocation, in completion order."""

    outcomes: list[RevocationOutcome] = field(default_factory=list)

    @property
    def grants(self) -> list[Grant]:
        return [outcome.grant for outcome in self.outcomes]

    @property
    def succeeded_ids(self) -> list[str]:
        return [o.grant.id for o in self.outcomes if o.revoked]

    @property
    def failed_ids(self) -> list[str]:
        return [o.grant.id for o in self.outcomes if not o.revoked and not o.cancelled]

    @property
    def cancelled_ids(self) -> list[str]:
        return [o.grant.id for o in self.outcomes if o.cancelled]

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def success_count(self) -> int:
        return len(self.succeeded_ids)

    @property
    def failure_count(self) -> int:
        return len(self.failed_ids)


def group_by_resource(grants: Sequence[Grant]) -> dict[str, list[Grant]]:
    groups: dict[str, list[Grant]] = {}
    for grant in grants:
        groups.setdefault(grant.resource_id, []).append(grant)
    return groups


class RevocationEngine:
    def __init__(
        self,
        provider: ProviderService,
        repository: GrantRepository,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.provider = provider
        self.repository = repository
        self.batch_size = batch_size
        self.interval = interval
        self.max_workers = max_workers

    async def run(
        self,
        groups: Mapping[str, Sequence[Grant]],
        actor: str,
        reason: str,
        cancel_event: asyncio.Event | None = None,
    ) -> BulkRevokeResult:
        total = sum(len(grants) for grants in groups.values())
        if total == 0:
            return BulkRevokeResult()

        limiter = TokenBucket(self.batch_size, self.interval)
        queue: asyncio.Queue[tuple[str, Sequence[Grant]]] = asyncio.Queue()
        for item in groups.items():
            queue.put_nowait(item)

        outcomes: list[RevocationOutcome] = []
        worker_count = min(self.max_workers, len(groups))
        logger.info(
            "bulk_revoke_started",
            grants=total,
            resources=len(groups),
            workers=worker_count,
            batch_size=self.batch_size,
        )

        workers = [
            asyncio.create_task(
                self._worker(queue, outcomes, limiter, actor, reason, cancel_event),
                name=f"revoke-worker-{index}",
            )
            for index in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        result = BulkRevokeResult(outcomes)
        logger.info(
            "bulk_revoke_finished",
            grants=total,
            succeeded=result.success_count,
            failed=result.failure_count,
            cancelled=len(result.cancelled_ids),
            succeeded_ids=result.succeeded_ids,
            failed_ids=result.failed_ids,
        )
        return result

    async def _worker(
        self,
        queue: asyncio.Queue[tuple[str, Sequence[Grant]]],
        outcomes: list[RevocationOutcome],
        limiter: TokenBucket,
        actor: str,
        reason: str,
        cancel_event: asyncio.Event | None,
    ) -> None:
        while True:
            try:
                resource_id, grants = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            for grant in grants:
                if cancel_event is not None and cancel_event.is_set():
                    outcomes.append(RevocationOutcome(grant=grant, revoked=False, cancelled=True, error="cancelled"))
                    continue
                await limiter.acquire()
                outcomes.append(await self._revoke_one(grant, actor, reason))
            queue.task_done()
            logger.debug("resource_grants_processed", resource_id=resource_id, grants=len(grants))

    async def _revoke_one(self, grant: Grant, actor: str, reason: str) -> RevocationOutcome:
        log = logger.bind(grant_id=grant.id, resource_id=grant.resource_id)
        revoked = grant.model_copy(deep=True)
        try:
            revoked.revoke(actor, reason)
        except Exception as exc:
            log.error("grant_revoke_rejected", error=str(exc))
            return RevocationOutcome(grant=grant, revoked=False, error=str(exc))

        try:
            await self.provider.revoke_access(grant)
        except Exception as exc:
            log.error("provider_revoke_failed", error=str(exc))
            return RevocationOutcome(grant=grant, revoked=False, error=str(exc))

        try:
            await self.repository.update(revoked)
        except Exception as exc:
            log.error("grant_update_failed", error=str(exc))
            return RevocationOutcome(grant=grant, revoked=False, error=str(exc))

        log.info("grant_revoked", actor=actor)
        return RevocationOutcome(grant=revoked, revoked=True)
