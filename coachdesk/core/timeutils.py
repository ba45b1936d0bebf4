"""Datetime helpers.

Datetimes are stored naive in UTC. Anything that needs a calendar date or a
wall-clock time works in an explicit ``ZoneInfo`` taken from the user's
profile, never from the process's local clock.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from coachdesk.core import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are assumed to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or config.DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(config.DEFAULT_TIMEZONE)


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def local_datetime(day: date, clock: time, tz: ZoneInfo) -> datetime:
    """Wall-clock ``clock`` on ``day`` in ``tz``, as an aware UTC datetime."""
    return datetime.combine(day, clock, tzinfo=tz).astimezone(timezone.utc)


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Aware UTC ``[start, end)`` of the calendar day as seen in ``tz``."""
    start = local_datetime(day, time(0, 0), tz)
    end = local_datetime(day + timedelta(days=1), time(0, 0), tz)
    return start, end


def day_of_week(day: date) -> int:
    """0 = Sunday … 6 = Saturday."""
    return (day.weekday() + 1) % 7


def parse_clock(value: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS``."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def format_clock(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def month_start(value: datetime, tz: ZoneInfo) -> date:
    return as_utc(value).astimezone(tz).date().replace(day=1)


def storage_now() -> datetime:
    return to_storage(utcnow())
