from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NotificationType(StrEnum):
    appeal_approved = "AppealApproved"
    appeal_rejected = "AppealRejected"
    access_revoked = "AccessRevoked"
    approver_notification = "ApproverNotification"
    grant_owner_changed = "GrantOwnerChanged"


class NotificationMessage(BaseModel):
    type: NotificationType
    variables: dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    user: str
    labels: dict[str, str] = Field(default_factory=dict)
    message: NotificationMessage
