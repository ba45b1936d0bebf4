"""
Bookable slot computation for one coach on one date.

Inputs are plain rows (ORM objects or anything with the same attributes):

- templates: ``start_time``, ``end_time``, ``max_concurrent_clients``
  (optionally ``availability_type``)
- overrides: ``availability_type``, ``start_time``, ``end_time``,
  ``is_blocked``, ``max_concurrent_clients``
- bookings: ``starts_at``, ``ends_at``, ``booking_type``; only confirmed
  bookings should be passed in

Nothing here touches the database, so the same inputs always give the
same output.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo

from coachdesk.core.timeutils import as_utc, day_of_week, format_clock, local_datetime, local_day_bounds

SLOT_STEP_MINUTES = 30
DEFAULT_DURATION_MINUTES = 60
DEFAULT_OVERRIDE_CAPACITY = 2

FAVORITE_MIN_BOOKINGS = 2
FAVORITE_LIMIT = 5


@dataclass(frozen=True)
class AvailableSlot:
    starts_at: datetime
    ends_at: datetime
    available_capacity: int
    is_favorite: bool = False


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and end > other_start


def is_whole_day_block(override) -> bool:
    return bool(override.is_blocked) and override.start_time is None


def _window(day: date, start: time, end: time | None, tz: ZoneInfo) -> tuple[datetime, datetime]:
    window_start = local_datetime(day, start, tz)
    if end is None:
        return window_start, local_day_bounds(day, tz)[1]
    return window_start, local_datetime(day, end, tz)


def _blocked_ranges(target_date: date, overrides: Iterable, tz: ZoneInfo) -> list[tuple[datetime, datetime]]:
    return [
        _window(target_date, override.start_time, override.end_time, tz)
        for override in overrides
        if override.is_blocked and override.start_time is not None
    ]


def _candidate_starts(window_start: datetime, window_end: datetime, duration: timedelta):
    step = timedelta(minutes=SLOT_STEP_MINUTES)
    current = window_start
    while current + duration <= window_end:
        yield current
        current += step


def compute_slots(
    target_date: date,
    booking_type: str,
    templates: Sequence,
    overrides: Sequence,
    bookings: Sequence,
    tz: ZoneInfo,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
    favorite_times: Iterable[dict] = (),
) -> list[AvailableSlot]:
    """Return the free slots for ``booking_type`` on ``target_date``, sorted by start.

    Blocked overrides of any type count against every type, since the coach
    is a single resource. Bookings of another type exclude a slot outright;
    bookings of the same type consume one unit of capacity each.
    """
    if any(is_whole_day_block(override) for override in overrides):
        return []

    duration = timedelta(minutes=duration_minutes)
    blocked = _blocked_ranges(target_date, overrides, tz)

    intervals = [(as_utc(b.starts_at), as_utc(b.ends_at), b.booking_type) for b in bookings]
    same_type = [(start, end) for start, end, kind in intervals if kind == booking_type]
    other_type = [(start, end) for start, end, kind in intervals if kind != booking_type]

    slots: dict[datetime, AvailableSlot] = {}

    def fill(window_start: datetime, window_end: datetime, capacity: int) -> None:
        for slot_start in _candidate_starts(window_start, window_end, duration):
            if slot_start in slots:
                continue
            slot_end = slot_start + duration

            if any(overlaps(slot_start, slot_end, start, end) for start, end in blocked):
                continue
            if any(overlaps(slot_start, slot_end, start, end) for start, end in other_type):
                continue

            taken = sum(1 for start, end in same_type if overlaps(slot_start, slot_end, start, end))
            remaining = capacity - taken
            if remaining > 0:
                slots[slot_start] = AvailableSlot(slot_start, slot_end, remaining)

    for template in templates:
        if getattr(template, "availability_type", booking_type) != booking_type:
            continue
        fill(*_window(target_date, template.start_time, template.end_time, tz), template.max_concurrent_clients)

    for override in overrides:
        if override.is_blocked or override.start_time is None:
            continue
        if override.availability_type != booking_type:
            continue
        fill(
            *_window(target_date, override.start_time, override.end_time, tz),
            override.max_concurrent_clients or DEFAULT_OVERRIDE_CAPACITY,
        )

    weekday = day_of_week(target_date)
    favorites = {(item.get("day"), item.get("time")) for item in favorite_times}

    result = []
    for slot_start in sorted(slots):
        slot = slots[slot_start]
        local_clock = format_clock(slot_start.astimezone(tz).time())
        if (weekday, local_clock) in favorites:
            slot = AvailableSlot(slot.starts_at, slot.ends_at, slot.available_capacity, True)
        result.append(slot)
    return result


def calculate_favorite_times(starts: Iterable[datetime], tz: ZoneInfo) -> list[dict]:
    """Top recurring ``(day, HH:MM)`` buckets among past booking start times.

    Buckets need at least two bookings; the five busiest are kept, busiest first.
    """
    counts: Counter = Counter()
    for start in starts:
        local = as_utc(start).astimezone(tz)
        counts[(day_of_week(local.date()), format_clock(local.time()))] += 1

    ranked = sorted(
        ((bucket, count) for bucket, count in counts.items() if count >= FAVORITE_MIN_BOOKINGS),
        key=lambda item: -item[1],
    )
    return [{"day": day, "time": clock} for (day, clock), _count in ranked[:FAVORITE_LIMIT]]

