"""
UTC time helpers for ListLoop.

Services take a `clock` callable so that period buckets, lookback
windows and schedules can be pinned in tests. All persisted timestamps
are UTC.
"""

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize to aware UTC; naive values are taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_weekly_run(now: datetime, weekday: int, hour: int) -> datetime:
    """Next occurrence of `weekday` (Monday=0) at `hour`:00 UTC strictly after `now`."""
    now = as_utc(now)
    days_ahead = (weekday - now.weekday()) % 7
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0) + timedelta(days=days_ahead)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


def next_daily_run(now: datetime, hour: int) -> datetime:
    """Next `hour`:00 UTC strictly after `now`."""
    now = as_utc(now)
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


__all__ = ["utc_now", "as_utc", "next_weekly_run", "next_daily_run"]
