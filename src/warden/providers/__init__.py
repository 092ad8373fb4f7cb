"""Collaborator contracts consumed by the core."""

from warden.providers.base import (
    AppealRepository,
    AuditLogger,
    GrantRepository,
    Notifier,
    PolicyRepository,
    ProviderService,
    ResourceService,
)

__all__ = [
    "AppealRepository",
    "AuditLogger",
    "GrantRepository",
    "Notifier",
    "PolicyRepository",
    "ProviderService",
    "ResourceService",
]
