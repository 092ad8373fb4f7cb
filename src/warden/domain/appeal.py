from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, EmailStr, Field

from warden.core.errors import (
    AppealStatusApprovedError,
    AppealStatusCanceledError,
    AppealStatusRejectedError,
    AppealStatusTerminatedError,
    AppealStatusUnrecognizedError,
    ApprovalDependencyIsBlockedError,
    ApprovalDependencyIsPendingError,
    ApprovalStatusApprovedError,
    ApprovalStatusBlockedError,
    ApprovalStatusRejectedError,
    ApprovalStatusSkippedError,
    ApprovalStatusUnrecognizedError,
    InvalidStateTransitionError,
)
from warden.core.timeutil import parse_duration, utcnow
from warden.domain.resource import Resource

DEFAULT_ACCOUNT_TYPE = "user"

# Older records spell the terminal success status "approved".
LEGACY_APPROVED_STATUS = "approved"


class AppealStatus(StrEnum):
    """Appeal lifecycle states."""

    pending = "pending"
    active = "active"
    rejected = "rejected"
    terminated = "terminated"
    canceled = "canceled"


class ApprovalStatus(StrEnum):
    pending = "pending"
    blocked = "blocked"
    approved = "approved"
    rejected = "rejected"
    skipped = "skipped"


class AppealActionName(StrEnum):
    approve = "approve"
    reject = "reject"


def normalize_appeal_status(status: str) -> str:
    if status == LEGACY_APPROVED_STATUS:
        return AppealStatus.active
    return status


def is_appeal_approved(status: str) -> bool:
    return normalize_appeal_status(status) == AppealStatus.active


def check_appeal_pending(status: str) -> None:
    """Raise the matching error unless the appeal can still be acted on."""
    status = normalize_appeal_status(status)
    if status == AppealStatus.pending:
        return
    errors = {
        AppealStatus.canceled: AppealStatusCanceledError,
        AppealStatus.active: AppealStatusApprovedError,
        AppealStatus.rejected: AppealStatusRejectedError,
        AppealStatus.terminated: AppealStatusTerminatedError,
    }
    raise errors.get(status, AppealStatusUnrecognizedError)()


def check_previous_approval_status(status: str) -> None:
    if status in (ApprovalStatus.approved, ApprovalStatus.skipped):
        return
    errors = {
        ApprovalStatus.blocked: ApprovalDependencyIsBlockedError,
        ApprovalStatus.pending: ApprovalDependencyIsPendingError,
        ApprovalStatus.rejected: AppealStatusRejectedError,
    }
    raise errors.get(status, ApprovalStatusUnrecognizedError)()


def check_approval_status(status: str) -> None:
    """Raise unless the approval is pending (the only state that accepts an action)."""
    if status == ApprovalStatus.pending:
        return
    errors = {
        ApprovalStatus.blocked: ApprovalStatusBlockedError,
        ApprovalStatus.approved: ApprovalStatusApprovedError,
        ApprovalStatus.rejected: ApprovalStatusRejectedError,
        ApprovalStatus.skipped: ApprovalStatusSkippedError,
    }
    raise errors.get(status, ApprovalStatusUnrecognizedError)()


class AppealOptions(BaseModel):
    expiration_date: datetime | None = None
    duration: str | None = None

    def validate_duration(self) -> None:
        if self.duration:
            parse_duration(self.duration)

    def resolve_expiration(self, now: datetime | None = None) -> datetime | None:
        """Absolute expiration, or None for permanent access."""
        if self.duration:
            delta = parse_duration(self.duration)
            if delta == timedelta():
                return None
            return (now or utcnow()) + delta
        return self.expiration_date


class Approval(BaseModel):
    """One step instance of an appeal's approval chain."""

    id: str = ""
    name: str
    index: int = 0
    appeal_id: str = ""
    status: str = ApprovalStatus.blocked
    actor: str | None = None
    reason: str = ""
    approvers: list[str] = Field(default_factory=list)
    policy_id: str = ""
    policy_version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_manual(self) -> bool:
        return len(self.approvers) > 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (ApprovalStatus.approved, ApprovalStatus.rejected, ApprovalStatus.skipped)

    def _set(self, status: ApprovalStatus) -> None:
        self.status = status
        self.updated_at = utcnow()

    def approve(self) -> None:
        self._set(ApprovalStatus.approved)

    def reject(self) -> None:
        self._set(ApprovalStatus.rejected)

    def skip(self) -> None:
        self._set(ApprovalStatus.skipped)

    def unblock(self) -> None:
        if self.status == ApprovalStatus.blocked:
            self._set(ApprovalStatus.pending)


class Appeal(BaseModel):
    """A request for a role on a resource, subject to policy approval."""

    id: str = ""
    resource_id: str
    resource: Resource | None = None
    policy_id: str = ""
    policy_version: int | None = None
    status: str = AppealStatus.pending
    account_id: str
    account_type: str = DEFAULT_ACCOUNT_TYPE
    created_by: str = ""
    role: str
    permissions: list[str] = Field(default_factory=list)
    options: AppealOptions | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    creator: dict[str, Any] | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    approvals: list[Approval] = Field(default_factory=list)
    revoked_by: str | None = None
    revoked_at: datetime | None = None
    revoke_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def set_defaults(self, default_account_type: str = DEFAULT_ACCOUNT_TYPE) -> None:
        self.status = AppealStatus.pending
        if not self.account_type:
            self.account_type = default_account_type

    def pin_policy(self, policy_id: str, version: int) -> None:
        self.policy_id = policy_id
        self.policy_version = version
        for approval in self.approvals:
            approval.policy_id = policy_id
            approval.policy_version = version

    def get_approval(self, id_or_name: str) -> Approval | None:
        for approval in self.approvals:
            if approval.id == id_or_name or approval.name == id_or_name:
                return approval
        return None

    def next_pending_approval(self) -> Approval | None:
        for approval in self.approvals:
            if approval.status == ApprovalStatus.pending and approval.is_manual:
                return approval
        return None

    def is_pending(self) -> bool:
        return self.status == AppealStatus.pending

    def _transition(self, status: AppealStatus) -> None:
        self.status = status
        self.updated_at = utcnow()

    def activate(self) -> None:
        check_appeal_pending(self.status)
        self._transition(AppealStatus.active)

    def reject(self) -> None:
        check_appeal_pending(self.status)
        self._transition(AppealStatus.rejected)

    def cancel(self) -> None:
        check_appeal_pending(self.status)
        self._transition(AppealStatus.canceled)

    def terminate(self, actor: str | None = None, reason: str | None = None) -> None:
        if not is_appeal_approved(self.status):
            raise InvalidStateTransitionError(
                "only active appeals can be terminated",
                details={"appeal_id": self.id, "status": self.status},
            )
        self._transition(AppealStatus.terminated)
        self.revoked_by = actor
        self.revoked_at = self.updated_at
        self.revoke_reason = reason

    def to_context(self) -> dict[str, Any]:
        """Variables for policy expressions."""
        return {"appeal": self.model_dump(mode="json")}


class ApprovalAction(BaseModel):
    appeal_id: str = Field(min_length=1)
    approval_name: str = Field(min_length=1)
    actor: EmailStr
    action: str = Field(min_length=1)
    reason: str = ""


class ListAppealsFilter(BaseModel):
    statuses: list[str] | None = None
    account_id: str | None = None
    account_ids: list[str] | None = None
    resource_id: str | None = None
    role: str | None = None
    created_by: str | None = None

    def matches(self, appeal: Appeal) -> bool:
        if self.statuses and normalize_appeal_status(appeal.status) not in {
            normalize_appeal_status(s) for s in self.statuses
        }:
            return False
        if self.account_id and appeal.account_id != self.account_id:
            return False
        if self.account_ids and appeal.account_id not in self.account_ids:
            return False
        if self.resource_id and appeal.resource_id != self.resource_id:
            return False
        if self.role and appeal.role != self.role:
            return False
        if self.created_by and appeal.created_by != self.created_by:
            return False
        return True
