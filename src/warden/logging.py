"""
Structured logging for warden services and jobs.

Every module logs through ``structlog.get_logger()`` with snake_case event
names (``appeal_created``, ``grant_revoked``). Workers call
``configure_logging`` once at start-up; tests leave it alone and configure
structlog in ``conftest.py``.
"""

import logging
from typing import Any

import structlog


def configure_logging(level: int | str = logging.INFO, *, json_output: bool = True) -> None:
    """Route structlog through the standard library at ``level``.

    JSON lines go to log shippers; ``json_output=False`` renders the same
    events for a terminal.
    """
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")


def bind_context(**kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Logger carrying ``kwargs`` (grant_id, appeal_id, actor) on each event."""
    return structlog.get_logger().bind(**kwargs)


def bind_request_context(**kwargs: Any) -> None:
    """Attach ``kwargs`` to every event logged by the current task, e.g. a job id."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
