"""
Audit domain models.

Immutable records of actions taken on appeals, grants and policies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class AuditEntry:
    """Record of one audited action."""

    id: str
    timestamp: datetime
    action: str  # "appeal.approve" | "grant.revoke" | ...
    actor: str | None
    data: dict[str, Any]
    extra_data: dict[str, Any] = field(default_factory=dict)
