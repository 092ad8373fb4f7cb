"""
Unified error taxonomy for Warden.

Every error raised by the core is a ``WardenError`` carrying an
``ErrorKind`` so that outer layers (API handlers, job runners) can map it
without knowing the concrete class.

Kinds:
- NOT_FOUND: grant/appeal/approval/approver absent
- INVALID_INPUT: empty required id, malformed filter
- INVALID_STATE_TRANSITION: acting on a terminal appeal, out-of-order steps
- FORBIDDEN: actor not an authorized approver
- UPSTREAM_FAILURE: provider call failed
- PERSISTENCE_FAILURE: repository call failed
- CONFIGURATION: policy/expression errors, never retried
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Abstract error kinds exposed to callers."""

    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    FORBIDDEN = "forbidden"
    UPSTREAM_FAILURE = "upstream_failure"
    PERSISTENCE_FAILURE = "persistence_failure"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class WardenError(Exception):
    """Base exception for Warden errors with kind support."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_message: str = "warden error"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(WardenError):
    kind = ErrorKind.NOT_FOUND


class InvalidInputError(WardenError):
    kind = ErrorKind.INVALID_INPUT


class InvalidStateTransitionError(WardenError):
    kind = ErrorKind.INVALID_STATE_TRANSITION


class ForbiddenError(WardenError):
    kind = ErrorKind.FORBIDDEN


class ProviderError(WardenError):
    """Raised when an external provider fails."""

    kind = ErrorKind.UPSTREAM_FAILURE


class PersistenceError(WardenError):
    """Raised when a repository call fails."""

    kind = ErrorKind.PERSISTENCE_FAILURE


class ConfigurationError(WardenError):
    """Raised for policy and expression configuration errors."""

    kind = ErrorKind.CONFIGURATION


# Not found


class AppealNotFoundError(NotFoundError):
    default_message = "appeal not found"


class ApprovalNotFoundError(NotFoundError):
    default_message = "approval not found"


class ApproverNotFoundError(NotFoundError):
    default_message = "approver not found"


class GrantNotFoundError(NotFoundError):
    default_message = "grant not found"


class ResourceNotFoundError(NotFoundError):
    default_message = "resource not found"


# Invalid input


class EmptyIDParamError(InvalidInputError):
    default_message = "id can't be empty"


class AppealIDEmptyError(InvalidInputError):
    default_message = "appeal id is required"


class ApprovalIDEmptyError(InvalidInputError):
    default_message = "approval id/name is required"


class EmptyOwnerError(InvalidInputError):
    default_message = "owner can't be empty"


class EmptyActorError(InvalidInputError):
    default_message = "actor shouldn't be empty"


class ActionInvalidValueError(InvalidInputError):
    default_message = "invalid action value"


class ApproverEmailError(InvalidInputError):
    default_message = "approver is not a valid email"


class InvalidDurationError(InvalidInputError):
    default_message = "invalid appeal duration"


class ResourceIsDeletedError(InvalidInputError):
    default_message = "resource is deleted"


class AppealDuplicateError(InvalidInputError):
    default_message = "appeal with the same resource and role already exists"


class PolicyDuplicateError(InvalidInputError):
    default_message = "policy with the same id already exists"


# Invalid state transitions


class AppealStatusCanceledError(InvalidStateTransitionError):
    default_message = "appeal already canceled"


class AppealStatusApprovedError(InvalidStateTransitionError):
    default_message = "appeal already approved"


class AppealStatusRejectedError(InvalidStateTransitionError):
    default_message = "appeal already rejected"


class AppealStatusTerminatedError(InvalidStateTransitionError):
    default_message = "appeal already terminated"


class AppealStatusUnrecognizedError(InvalidStateTransitionError):
    default_message = "unrecognized appeal status"


class ApprovalDependencyIsBlockedError(InvalidStateTransitionError):
    default_message = "found previous approval step that is still in blocked"


class ApprovalDependencyIsPendingError(InvalidStateTransitionError):
    default_message = "found previous approval step that is still in pending"


class ApprovalStatusBlockedError(InvalidStateTransitionError):
    default_message = "approval is blocked"


class ApprovalStatusApprovedError(InvalidStateTransitionError):
    default_message = "approval already approved"


class ApprovalStatusRejectedError(InvalidStateTransitionError):
    default_message = "approval already rejected"


class ApprovalStatusSkippedError(InvalidStateTransitionError):
    default_message = "approval already skipped"


class ApprovalStatusUnrecognizedError(InvalidStateTransitionError):
    default_message = "unrecognized approval status"


class UnableToAddApproverError(InvalidStateTransitionError):
    default_message = "unable to add a new approver"


class UnableToDeleteApproverError(InvalidStateTransitionError):
    default_message = "unable to remove approver"


class GrantAlreadyRevokedError(InvalidStateTransitionError):
    default_message = "grant is already inactive"


class GrantValidationError(InvalidStateTransitionError):
    default_message = "appeal is not eligible for a grant"


# Forbidden


class ActionForbiddenError(ForbiddenError):
    default_message = "user is not allowed to make action on this approval step"


# Configuration


class PolicyNotFoundError(ConfigurationError):
    default_message = "unable to find approval policy for specified id"


class PolicyVersionNotFoundError(ConfigurationError):
    default_message = "unable to find approval policy for specified version"


class ExpressionError(ConfigurationError):
    default_message = "invalid expression"


class InvalidConditionFieldError(ConfigurationError):
    default_message = "unable to parse condition's field"


class ApproverInvalidTypeError(ConfigurationError):
    default_message = "invalid approver type, expected an email string or array of email string"


# Upstream / persistence


class GrantRevokeFailedError(ProviderError):
    """Provider revoke failed; the grant was rolled back and is consistent."""

    default_message = "removing grant in provider failed"


class GrantAccessFailedError(ProviderError):
    default_message = "granting access in provider failed"


class CreatorDetailsError(ProviderError):
    default_message = "retrieving creator details failed"


class GrantRollbackFailedError(PersistenceError):
    """Provider revoke failed and restoring the grant status failed too.

    The stored grant may say ``inactive`` while the provider still holds the
    access; operator reconciliation is required.
    """

    default_message = "failed to rollback grant status"


def describe(error: WardenError) -> dict[str, Any]:
    """Structured representation used by logs and outer layers."""
    return {
        "error_type": type(error).__name__,
        "kind": str(error.kind),
        "message": error.message,
        **error.details,
    }
