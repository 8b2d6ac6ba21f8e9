# coding: utf-8
"""
UTC helpers for ledger timestamps
"""
from datetime import datetime, timedelta, UTC
from typing import Optional

ONE_DAY = timedelta(days=1)


def utc_now() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a timestamp to aware UTC

    Naive values (SQLite drops tzinfo on read) are taken as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def ensure_not_future(value: datetime, now: Optional[datetime] = None) -> datetime:
    """
    Normalize an as-of instant to UTC, rejecting one after now

    Raises:
        ValueError: If value is later than now
    """
    value = ensure_utc(value)
    now = ensure_utc(now) if now else utc_now()
    if value > now:
        raise ValueError(f"as-of time {value.isoformat()} is in the future")
    return value


def whole_days_between(start: datetime, end: datetime) -> int:
    """Number of complete days from start to end; 0 if end is not after start."""
    delta = ensure_utc(end) - ensure_utc(start)
    if delta <= timedelta(0):
        return 0
    return delta // ONE_DAY


def next_day_start(value: datetime) -> datetime:
    """Midnight UTC of the day after value."""
    value = ensure_utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=UTC) + ONE_DAY
