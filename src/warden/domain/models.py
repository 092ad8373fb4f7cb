"""Domain models re-exported from one place."""

from warden.domain.appeal import (
    Appeal,
    AppealActionName,
    AppealOptions,
    AppealStatus,
    Approval,
    ApprovalAction,
    ApprovalStatus,
    ListAppealsFilter,
)
from warden.domain.grant import (
    Grant,
    GrantCreation,
    GrantSource,
    GrantStatus,
    ListGrantsFilter,
    RevokeGrantsFilter,
)
from warden.domain.notification import Notification, NotificationMessage, NotificationType
from warden.domain.policy import (
    AdditionalAppeal,
    Condition,
    IAMConfig,
    MatchCondition,
    Policy,
    PolicyConfig,
    Requirement,
    RequirementTrigger,
    Step,
    StepStrategy,
)
from warden.domain.resource import Resource, ResourceIdentifier

__all__ = [
    "AdditionalAppeal",
    "Appeal",
    "AppealActionName",
    "AppealOptions",
    "AppealStatus",
    "Approval",
    "ApprovalAction",
    "ApprovalStatus",
    "Condition",
    "Grant",
    "GrantCreation",
    "GrantSource",
    "GrantStatus",
    "IAMConfig",
    "ListAppealsFilter",
    "ListGrantsFilter",
    "MatchCondition",
    "Notification",
    "NotificationMessage",
    "NotificationType",
    "Policy",
    "PolicyConfig",
    "Requirement",
    "RequirementTrigger",
    "Resource",
    "ResourceIdentifier",
    "RevokeGrantsFilter",
    "Step",
    "StepStrategy",
]
