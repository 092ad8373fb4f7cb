from __future__ import annotations

from typing import Any, Sequence

import structlog

from warden.domain.notification import Notification
from warden.providers.base import Notifier

logger = structlog.get_logger()


async def send_notifications(
    notifier: Notifier | None,
    notifications: Sequence[Notification],
    **log_context: Any,
) -> int:
    """Best-effort delivery. Returns the number of failed notifications."""
    if notifier is None or not notifications:
        return 0
    try:
        errors = await notifier.notify(list(notifications))
    except Exception as exc:
        logger.error("failed_to_send_notifications", error=str(exc), count=len(notifications), **log_context)
        return len(notifications)
    for error in errors or []:
        logger.error("failed_to_send_notification", error=str(error), **log_context)
    return len(errors or [])
