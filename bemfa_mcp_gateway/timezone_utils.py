"""
UTC time helpers used for notification and heartbeat timestamps.
"""

import time
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Get current UTC time with timezone information."""
    return datetime.now(timezone.utc)


def utc_isoformat(dt: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision.

    Naive datetimes are treated as UTC. The result uses a ``Z`` suffix,
    e.g. ``2024-01-01T12:00:00.000Z``.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def epoch_millis() -> int:
    """Milliseconds since the Unix epoch."""
    return int(time.time() * 1000)
