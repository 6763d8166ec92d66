from __future__ import annotations
from datetime import datetime, timezone as dt_tz


def utcnow() -> datetime:
    return datetime.now(dt_tz.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive values are taken to already be UTC wall-clock time, which is what
    drivers without timezone support (SQLite) hand back for our columns.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=dt_tz.utc)
    return value.astimezone(dt_tz.utc)


def window_contains(start: datetime, end: datetime, now: datetime) -> bool:
    """Half-open check: start <= now < end."""
    return as_utc(start) <= as_utc(now) < as_utc(end)


def runtime_state(start: datetime, end: datetime, now: datetime) -> str:
    now = as_utc(now)
    if now < as_utc(start):
        return "upcoming"
    if now < as_utc(end):
        return "active"
    return "ended"
