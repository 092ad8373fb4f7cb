"""
Audit recorder.

Wraps an ``AuditLogger`` with fail-open semantics: audit errors are logged
via structlog but never fail the operation being audited.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel

from warden.providers.base import AuditLogger

logger = structlog.get_logger()


def _to_payload(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, (list, tuple)):
        return [_to_payload(item) for item in data]
    if isinstance(data, dict):
        return {key: _to_payload(value) for key, value in data.items()}
    return data


class AuditRecorder:
    """Records audit events with fail-open semantics."""

    def __init__(self, audit_logger: AuditLogger | None) -> None:
        self.audit_logger = audit_logger

    async def record(self, action: str, data: Any) -> bool:
        """Returns False when the entry could not be written."""
        if self.audit_logger is None:
            return False
        try:
            await self.audit_logger.log(action, _to_payload(data))
        except Exception:
            logger.warning("audit_record_failed", action=action, exc_info=True)
            return False
        return True
