"""
In-memory adapters for local development and tests.

Every repository stores deep copies and hands out deep copies, so callers
never share mutable state with the store.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Sequence

from warden.audit.models import AuditEntry
from warden.core.errors import (
    AppealNotFoundError,
    GrantNotFoundError,
    PolicyDuplicateError,
    ResourceNotFoundError,
)
from warden.core.timeutil import utcnow
from warden.domain.appeal import Appeal, ListAppealsFilter
from warden.domain.grant import Grant, ListGrantsFilter
from warden.domain.notification import Notification
from warden.domain.policy import Policy
from warden.domain.resource import Resource, ResourceIdentifier


class InMemoryGrantRepository:
    def __init__(self, grants: Sequence[Grant] = ()) -> None:
        self._grants: dict[str, Grant] = {}
        self._lock = asyncio.Lock()
        for grant in grants:
            self._store(grant)

    def _store(self, grant: Grant) -> None:
        if not grant.id:
            grant.id = str(uuid.uuid4())
        self._grants[grant.id] = grant.model_copy(deep=True)

    async def list(self, filter: ListGrantsFilter) -> list[Grant]:
        async with self._lock:
            return [g.model_copy(deep=True) for g in self._grants.values() if filter.matches(g)]

    async def get_by_id(self, id: str) -> Grant:
        async with self._lock:
            grant = self._grants.get(id)
            if grant is None:
                raise GrantNotFoundError(details={"grant_id": id})
            return grant.model_copy(deep=True)

    async def update(self, grant: Grant) -> None:
        async with self._lock:
            if grant.id not in self._grants:
                raise GrantNotFoundError(details={"grant_id": grant.id})
            self._store(grant)

    async def bulk_insert(self, grants: Sequence[Grant]) -> None:
        async with self._lock:
            for grant in grants:
                self._store(grant)

    async def bulk_upsert(self, grants: Sequence[Grant]) -> None:
        async with self._lock:
            for grant in grants:
                self._store(grant)


class InMemoryAppealRepository:
    def __init__(self, appeals: Sequence[Appeal] = ()) -> None:
        self._appeals: dict[str, Appeal] = {}
        self._lock = asyncio.Lock()
        for appeal in appeals:
            self._store(appeal)

    def _store(self, appeal: Appeal) -> None:
        if not appeal.id:
            appeal.id = str(uuid.uuid4())
        self._appeals[appeal.id] = appeal.model_copy(deep=True)

    async def find(self, filter: ListAppealsFilter) -> list[Appeal]:
        async with self._lock:
            return [a.model_copy(deep=True) for a in self._appeals.values() if filter.matches(a)]

    async def get_by_id(self, id: str) -> Appeal:
        async with self._lock:
            appeal = self._appeals.get(id)
            if appeal is None:
                raise AppealNotFoundError(details={"appeal_id": id})
            return appeal.model_copy(deep=True)

    async def update(self, appeal: Appeal) -> None:
        async with self._lock:
            if appeal.id not in self._appeals:
                raise AppealNotFoundError(details={"appeal_id": appeal.id})
            self._store(appeal)

    async def bulk_upsert(self, appeals: Sequence[Appeal]) -> None:
        async with self._lock:
            for appeal in appeals:
                self._store(appeal)


class InMemoryPolicyRepository:
    def __init__(self, policies: Sequence[Policy] = ()) -> None:
        self._policies: dict[tuple[str, int], Policy] = {}
        for policy in policies:
            self._policies[(policy.id, policy.version)] = policy

    async def create(self, policy: Policy) -> None:
        if (policy.id, policy.version) in self._policies:
            raise PolicyDuplicateError(details={"policy_id": policy.id, "version": policy.version})
        self._policies[(policy.id, policy.version)] = policy

    async def find(self) -> list[Policy]:
        latest: dict[str, Policy] = {}
        for policy in self._policies.values():
            if policy.id not in latest or policy.version > latest[policy.id].version:
                latest[policy.id] = policy
        return sorted(latest.values(), key=lambda p: p.id)

    async def get_one(self, id: str, version: int | None = None) -> Policy | None:
        if version:
            return self._policies.get((id, version))
        versions = [p for (pid, _), p in self._policies.items() if pid == id]
        if not versions:
            return None
        return max(versions, key=lambda p: p.version)


class InMemoryResourceService:
    def __init__(self, resources: Sequence[Resource] = ()) -> None:
        self._resources = list(resources)

    def add(self, resource: Resource) -> None:
        self._resources.append(resource)

    async def get(self, identifier: ResourceIdentifier) -> Resource:
        for resource in self._resources:
            if identifier.matches(resource):
                return resource.model_copy(deep=True)
        raise ResourceNotFoundError(details=identifier.model_dump(exclude_none=True))


class InMemoryAuditLogger:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def log(self, action: str, data: Any) -> None:
        self.entries.append(
            AuditEntry(
                id=str(uuid.uuid4()),
                timestamp=utcnow(),
                action=action,
                actor=None,
                data=data if isinstance(data, dict) else {"items": data},
            )
        )

    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]


class RecordingNotifier:
    """Collects notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def notify(self, notifications: Sequence[Notification]) -> list[Exception]:
        self.sent.extend(notifications)
        return []
