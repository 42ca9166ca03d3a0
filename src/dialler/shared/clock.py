"""
Time helpers.

All timestamps are stored and compared in UTC. SQLite drops tzinfo on the
way back out, so values read from the store are normalised before arithmetic.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_between(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end, never negative."""
    delta = ensure_utc(end) - ensure_utc(start)  # type: ignore[operator]
    return max(0, int(delta.total_seconds()))
