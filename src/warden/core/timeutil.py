from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from warden.core.errors import InvalidDurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_FULL = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|h|m|s))+$")
_UNITS = {
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
    "ms": timedelta(milliseconds=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(text: str) -> timedelta:
    """Parse a Go-style duration such as ``"24h"``, ``"1h30m"`` or ``"0h"``."""
    value = (text or "").strip()
    if not _DURATION_FULL.match(value):
        raise InvalidDurationError(f"invalid duration {text!r}", details={"duration": text})
    total = timedelta()
    for amount, unit in _DURATION_PART.findall(value):
        total += float(amount) * _UNITS[unit]
    return total
