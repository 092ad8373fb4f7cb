"""
Versioned policy management.

A policy version is immutable once stored; updating a policy stores a new
version with ``version = latest + 1``. In-flight appeals keep the version
they were created with.
"""

from __future__ import annotations

import structlog

from warden.audit.recorder import AuditRecorder
from warden.core.errors import PolicyDuplicateError, PolicyNotFoundError, PolicyVersionNotFoundError
from warden.core.timeutil import utcnow
from warden.domain.policy import Policy
from warden.providers.base import AuditLogger, PolicyRepository

logger = structlog.get_logger()

AUDIT_KEY_POLICY_CREATE = "policy.create"
AUDIT_KEY_POLICY_UPDATE = "policy.update"


class PolicyService:
    def __init__(self, repository: PolicyRepository, audit_logger: AuditLogger | None = None) -> None:
        self.repository = repository
        self.audit = AuditRecorder(audit_logger)

    async def create(self, policy: Policy) -> Policy:
        """Store the first version of a new policy.

        Raises:
            PolicyDuplicateError: a policy with the same id exists; use
                ``update`` to add a version
        """
        if await self.repository.get_one(policy.id) is not None:
            raise PolicyDuplicateError(details={"policy_id": policy.id})
        policy.validate_expressions()
        stored = policy.model_copy(update={"version": 1, "created_at": utcnow()})
        await self.repository.create(stored)
        logger.info("policy_created", policy_id=stored.id, version=stored.version)
        await self.audit.record(AUDIT_KEY_POLICY_CREATE, {"policy_id": stored.id, "version": stored.version})
        return stored

    async def update(self, policy: Policy) -> Policy:
        """Supersede the latest version of ``policy.id`` with a new one."""
        latest = await self.repository.get_one(policy.id)
        if latest is None:
            raise PolicyNotFoundError(details={"policy_id": policy.id})
        policy.validate_expressions()
        stored = policy.model_copy(update={"version": latest.version + 1, "created_at": utcnow()})
        await self.repository.create(stored)
        logger.info("policy_updated", policy_id=stored.id, version=stored.version)
        await self.audit.record(AUDIT_KEY_POLICY_UPDATE, {"policy_id": stored.id, "version": stored.version})
        return stored

    async def apply(self, policy: Policy) -> Policy:
        """Create the policy, or add a version when it already exists."""
        if await self.repository.get_one(policy.id) is None:
            return await self.create(policy)
        return await self.update(policy)

    async def find(self) -> list[Policy]:
        return await self.repository.find()

    async def get_one(self, id: str, version: int | None = None) -> Policy:
        policy = await self.repository.get_one(id, version)
        if policy is not None:
            return policy
        if version is not None and await self.repository.get_one(id) is not None:
            raise PolicyVersionNotFoundError(details={"policy_id": id, "version": version})
        raise PolicyNotFoundError(details={"policy_id": id})
