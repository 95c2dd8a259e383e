"""Datetime utilities for timezone-aware UTC timestamps.

SQLite hands DateTime columns back without tzinfo, so values read from the
database are normalized with ensure_utc() before any arithmetic.

Usage:
    from atelier.utils.datetime_utils import utc_now, ensure_utc

    timestamp = utc_now()
    elapsed = minutes_between(ensure_utc(progress.started_at), timestamp)
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime.

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (as returned by SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def minutes_between(start: Optional[datetime], end: Optional[datetime]) -> float:
    """Return the minutes elapsed from start to end, never negative."""
    if start is None or end is None:
        return 0.0
    delta = ensure_utc(end) - ensure_utc(start)
    return max(delta.total_seconds() / 60.0, 0.0)
