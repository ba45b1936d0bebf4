"""Loads a coach's availability rows for one date and runs the slot computation."""

from datetime import date

from sqlalchemy import or_
from sqlalchemy.orm import Session

from coachdesk.core.timeutils import day_of_week, local_day_bounds, resolve_timezone, to_storage
from coachdesk.models.availability import AvailabilityOverride, AvailabilityTemplate
from coachdesk.models.booking import STATUS_CONFIRMED, Booking, ClientBookingStats
from coachdesk.models.user import User
from coachdesk.services.slots import DEFAULT_DURATION_MINUTES, AvailableSlot, compute_slots


def load_templates(db: Session, coach_id: int, booking_type: str, target_date: date) -> list[AvailabilityTemplate]:
    return db.query(AvailabilityTemplate).filter(
        AvailabilityTemplate.coach_id == coach_id,
        AvailabilityTemplate.availability_type == booking_type,
        AvailabilityTemplate.day_of_week == day_of_week(target_date),
    ).order_by(AvailabilityTemplate.start_time.asc(), AvailabilityTemplate.id.asc()).all()


def load_overrides(db: Session, coach_id: int, booking_type: str, target_date: date) -> list[AvailabilityOverride]:
    """Same-type overrides plus blocks of any type for the date."""
    return db.query(AvailabilityOverride).filter(
        AvailabilityOverride.coach_id == coach_id,
        AvailabilityOverride.override_date == target_date,
        or_(
            AvailabilityOverride.availability_type == booking_type,
            AvailabilityOverride.is_blocked.is_(True),
        ),
    ).order_by(AvailabilityOverride.id.asc()).all()


def load_confirmed_bookings(db: Session, coach: User, target_date: date, exclude_id: int | None = None) -> list[Booking]:
    """Confirmed bookings of any type overlapping the coach's local day."""
    day_start, day_end = local_day_bounds(target_date, resolve_timezone(coach.timezone))
    query = db.query(Booking).filter(
        Booking.coach_id == coach.id,
        Booking.status == STATUS_CONFIRMED,
        Booking.starts_at < to_storage(day_end),
        Booking.ends_at > to_storage(day_start),
    )
    if exclude_id is not None:
        query = query.filter(Booking.id != exclude_id)
    return query.all()


def load_favorite_times(db: Session, client_id: int | None, coach_id: int) -> list[dict]:
    if client_id is None:
        return []
    stats = db.query(ClientBookingStats).filter(
        ClientBookingStats.client_id == client_id,
        ClientBookingStats.coach_id == coach_id,
    ).first()
    return list(stats.favorite_times or []) if stats else []


def find_available_slots(
    db: Session,
    coach: User,
    target_date: date,
    booking_type: str,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
    client_id: int | None = None,
    exclude_booking_id: int | None = None,
) -> list[AvailableSlot]:
    return compute_slots(
        target_date=target_date,
        booking_type=booking_type,
        templates=load_templates(db, coach.id, booking_type, target_date),
        overrides=load_overrides(db, coach.id, booking_type, target_date),
        bookings=load_confirmed_bookings(db, coach, target_date, exclude_booking_id),
        tz=resolve_timezone(coach.timezone),
        duration_minutes=duration_minutes,
        favorite_times=load_favorite_times(db, client_id, coach.id),
    )
