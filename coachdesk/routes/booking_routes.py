from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import field_validator, model_validator
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import get_current_coach, get_current_user
from coachdesk.core import config
from coachdesk.core.errors import database_error
from coachdesk.core.schemas import CamelModel, UtcDatetime
from coachdesk.core.timeutils import as_utc, month_start, resolve_timezone, storage_now, to_storage, utcnow
from coachdesk.database import get_db
from coachdesk.models.availability import AVAILABILITY_TYPES, CHECKIN_TYPE, SESSION_TYPE
from coachdesk.models.booking import (
    BOOKING_STATUSES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_NO_SHOW,
    Booking,
    ClientCheckinUsage,
)
from coachdesk.models.package import SessionPackage
from coachdesk.models.user import User
from coachdesk.services import events
from coachdesk.services.availability import find_available_slots
from coachdesk.services.stats import refresh_attendance_stats

router = APIRouter(prefix='/api/bookings', tags=['bookings'])


class BookingResponse(CamelModel):
    id: int
    coach_id: int
    client_id: int | None = None
    package_id: int | None = None
    booking_type: str
    starts_at: UtcDatetime
    ends_at: UtcDatetime
    status: str
    rescheduled_from_id: int | None = None
    cancelled_at: UtcDatetime | None = None
    one_off_client_name: str | None = None
    created_at: UtcDatetime | None = None


class BookingEnvelope(CamelModel):
    booking: BookingResponse


class BookingListResponse(CamelModel):
    bookings: list[BookingResponse]


class AutoCompleteResponse(CamelModel):
    updated: int
    booking_ids: list[int]


class CreateBookingRequest(CamelModel):
    booking_type: str
    starts_at: datetime
    ends_at: datetime
    client_id: int | None = None
    package_id: int | None = None
    one_off_client_name: str | None = None

    @field_validator('booking_type')
    @classmethod
    def validate_booking_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in AVAILABILITY_TYPES:
            raise ValueError('bookingType must be session or checkin')
        return normalized

    @field_validator('one_off_client_name')
    @classmethod
    def validate_one_off_client_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode='after')
    def validate_range(self):
        if self.ends_at <= self.starts_at:
            raise ValueError('endsAt must be after startsAt')
        return self


class UpdateBookingRequest(CamelModel):
    status: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in BOOKING_STATUSES:
            raise ValueError('Invalid booking status')
        return normalized

    @model_validator(mode='after')
    def validate_reschedule(self):
        if (self.starts_at is None) != (self.ends_at is None):
            raise ValueError('startsAt and endsAt must be provided together')
        if self.starts_at is not None and self.ends_at <= self.starts_at:
            raise ValueError('endsAt must be after startsAt')
        return self


def booking_audience(booking: Booking) -> tuple[int, ...]:
    return tuple(user_id for user_id in (booking.coach_id, booking.client_id) if user_id is not None)


def get_accessible_booking(db: Session, booking_id: int, current_user: User) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Booking not found')
    if current_user.id not in (booking.coach_id, booking.client_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Forbidden')
    return booking


def enforce_min_notice(current_user: User, starts_at: datetime, now: datetime | None = None) -> None:
    """Clients must book ``MIN_NOTICE_HOURS`` ahead; coaches are exempt."""
    if current_user.is_coach:
        return
    earliest = (now or utcnow()) + timedelta(hours=config.MIN_NOTICE_HOURS)
    if as_utc(starts_at) < earliest:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Bookings require {config.MIN_NOTICE_HOURS} hours notice',
        )


def find_active_package(db: Session, client_id: int, coach_id: int) -> SessionPackage | None:
    """Oldest unexpired package that still has sessions left."""
    now = storage_now()
    return db.query(SessionPackage).filter(
        SessionPackage.client_id == client_id,
        SessionPackage.coach_id == coach_id,
        SessionPackage.remaining_sessions > 0,
        or_(SessionPackage.expires_at.is_(None), SessionPackage.expires_at > now),
    ).order_by(SessionPackage.created_at.asc(), SessionPackage.id.asc()).first()


def resolve_package(db: Session, client_id: int, coach_id: int, package_id: int | None) -> SessionPackage:
    if package_id is None:
        package = find_active_package(db, client_id, coach_id)
        if package is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No active session package found')
        return package

    package = db.get(SessionPackage, package_id)
    if package is None or package.client_id != client_id or package.coach_id != coach_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Package not found')
    if package.remaining_sessions <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No sessions remaining in package')
    return package


def get_checkin_usage(db: Session, client_id: int, coach: User, starts_at: datetime) -> ClientCheckinUsage | None:
    month = month_start(starts_at, resolve_timezone(coach.timezone))
    return db.query(ClientCheckinUsage).filter(
        ClientCheckinUsage.client_id == client_id,
        ClientCheckinUsage.coach_id == coach.id,
        ClientCheckinUsage.month == month,
    ).first()


def claim_checkin_usage(
    db: Session,
    client_id: int,
    coach: User,
    starts_at: datetime,
    booking_id: int,
    usage: ClientCheckinUsage | None = None,
) -> ClientCheckinUsage:
    if usage is None:
        usage = ClientCheckinUsage(
            client_id=client_id,
            coach_id=coach.id,
            month=month_start(starts_at, resolve_timezone(coach.timezone)),
        )
        db.add(usage)
    usage.used = True
    usage.booking_id = booking_id
    return usage


def release_checkin_usage(db: Session, booking: Booking) -> None:
    """Free the booking's month, but only if this booking is the one holding it."""
    coach = db.get(User, booking.coach_id)
    usage = get_checkin_usage(db, booking.client_id, coach, booking.starts_at)
    if usage is not None and usage.booking_id == booking.id:
        usage.used = False
        usage.booking_id = None


def lock_coach(db: Session, coach_id: int) -> User:
    """Serialize bookings against one coach's calendar until the transaction ends."""
    return db.query(User).filter(User.id == coach_id).with_for_update().one()


def ensure_slot_available(
    db: Session,
    coach: User,
    booking_type: str,
    starts_at: datetime,
    ends_at: datetime,
    exclude_booking_id: int | None = None,
) -> None:
    """Recompute the coach's free slots and require one starting at ``starts_at``."""
    start = as_utc(starts_at)
    duration_minutes = int((as_utc(ends_at) - start).total_seconds() // 60)
    local_date = start.astimezone(resolve_timezone(coach.timezone)).date()

    slots = find_available_slots(
        db,
        coach,
        local_date,
        booking_type,
        duration_minutes=duration_minutes,
        exclude_booking_id=exclude_booking_id,
    )
    if not any(slot.starts_at == start for slot in slots):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Selected time is no longer available')


@router.get('', response_model=BookingListResponse)
def list_bookings(
    client_id: int | None = Query(default=None, alias='clientId'),
    booking_status: str | None = Query(default=None, alias='status'),
    from_date: datetime | None = Query(default=None, alias='from'),
    to_date: datetime | None = Query(default=None, alias='to'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        query = db.query(Booking)
        if current_user.is_coach:
            query = query.filter(Booking.coach_id == current_user.id)
            if client_id is not None:
                query = query.filter(Booking.client_id == client_id)
        else:
            query = query.filter(Booking.client_id == current_user.id)

        if booking_status:
            query = query.filter(Booking.status == booking_status)
        if from_date:
            query = query.filter(Booking.starts_at >= to_storage(from_date))
        if to_date:
            query = query.filter(Booking.starts_at <= to_storage(to_date))

        return BookingListResponse(bookings=query.order_by(Booking.starts_at.asc()).all())
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching bookings') from exc


@router.post('', response_model=BookingEnvelope, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if current_user.is_coach:
        if data.client_id is None and not data.one_off_client_name:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Coach must specify clientId or oneOffClientName',
            )
        client_id = data.client_id
        coach_id = current_user.id
    else:
        if current_user.coach_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No coach relationship found')
        client_id = current_user.id
        coach_id = current_user.coach_id

    enforce_min_notice(current_user, data.starts_at)

    try:
        coach = lock_coach(db, coach_id)

        if client_id is not None:
            client = db.get(User, client_id)
            if client is None or client.coach_id != coach.id:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Client not found')

        package = None
        if data.booking_type == SESSION_TYPE and client_id is not None:
            package = resolve_package(db, client_id, coach.id, data.package_id)

        usage = None
        if data.booking_type == CHECKIN_TYPE and client_id is not None:
            usage = get_checkin_usage(db, client_id, coach, data.starts_at)
            if usage is not None and usage.used:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Monthly check-in already used')

        ensure_slot_available(db, coach, data.booking_type, data.starts_at, data.ends_at)

        booking = Booking(
            coach_id=coach.id,
            client_id=client_id,
            package_id=package.id if package else None,
            booking_type=data.booking_type,
            starts_at=to_storage(data.starts_at),
            ends_at=to_storage(data.ends_at),
            status=STATUS_CONFIRMED,
            one_off_client_name=data.one_off_client_name if client_id is None else None,
        )
        db.add(booking)
        db.flush()

        if package is not None:
            package.remaining_sessions = package.remaining_sessions - 1

        if data.booking_type == CHECKIN_TYPE and client_id is not None:
            claim_checkin_usage(db, client_id, coach, data.starts_at, booking.id, usage)

        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'creating booking') from exc
    except HTTPException:
        db.rollback()
        raise

    events.emit('bookings', events.INSERT, booking.id, booking_audience(booking))
    return BookingEnvelope(booking=booking)


@router.post('/auto-complete', response_model=AutoCompleteResponse)
def auto_complete_bookings(
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """Mark the coach's confirmed bookings that have already ended as completed."""
    try:
        past_bookings = db.query(Booking).filter(
            Booking.coach_id == coach.id,
            Booking.status == STATUS_CONFIRMED,
            Booking.ends_at < storage_now(),
        ).all()

        booking_ids = [booking.id for booking in past_bookings]
        for booking in past_bookings:
            booking.status = STATUS_COMPLETED
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'auto-completing bookings') from exc

    for booking in past_bookings:
        events.emit('bookings', events.UPDATE, booking.id, booking_audience(booking))
    return AutoCompleteResponse(updated=len(booking_ids), booking_ids=booking_ids)


@router.get('/{booking_id}', response_model=BookingEnvelope)
def get_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        booking = get_accessible_booking(db, booking_id, current_user)
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching booking') from exc
    return BookingEnvelope(booking=booking)


def cancel_booking(db: Session, booking: Booking, refund: bool = True) -> None:
    """Cancel in the caller's transaction, returning the session or check-in."""
    was_confirmed = booking.status == STATUS_CONFIRMED
    booking.status = STATUS_CANCELLED
    booking.cancelled_at = storage_now()

    if refund and was_confirmed and booking.booking_type == SESSION_TYPE and booking.package_id:
        package = db.get(SessionPackage, booking.package_id)
        if package is not None:
            package.remaining_sessions = package.remaining_sessions + 1

    if was_confirmed and booking.booking_type == CHECKIN_TYPE and booking.client_id is not None:
        release_checkin_usage(db, booking)


@router.patch('/{booking_id}', response_model=BookingEnvelope)
def update_booking(
    booking_id: int,
    data: UpdateBookingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Change a booking's status, or reschedule it.

    Rescheduling books the new time and cancels the old booking without a
    refund, since the session carries over.
    """
    try:
        booking = get_accessible_booking(db, booking_id, current_user)

        if data.status:
            if not current_user.is_coach and data.status != STATUS_CANCELLED:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Clients can only cancel bookings')

            if data.status == STATUS_CANCELLED:
                if booking.status != STATUS_CONFIRMED:
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail='Only confirmed bookings can be cancelled',
                    )
                cancel_booking(db, booking)
            else:
                booking.status = data.status
            db.flush()

            if data.status in (STATUS_CANCELLED, STATUS_NO_SHOW) and booking.client_id is not None:
                refresh_attendance_stats(db, booking.client_id, booking.coach_id)

            db.commit()
            db.refresh(booking)
            result = booking
            changes = [(events.UPDATE, booking)]
        elif data.starts_at and data.ends_at:
            if booking.status != STATUS_CONFIRMED:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail='Only confirmed bookings can be rescheduled',
                )
            enforce_min_notice(current_user, data.starts_at)

            coach = lock_coach(db, booking.coach_id)
            ensure_slot_available(
                db,
                coach,
                booking.booking_type,
                data.starts_at,
                data.ends_at,
                exclude_booking_id=booking.id,
            )

            moves_checkin = booking.booking_type == CHECKIN_TYPE and booking.client_id is not None
            target_usage = None
            if moves_checkin:
                target_usage = get_checkin_usage(db, booking.client_id, coach, data.starts_at)
                if target_usage is not None and target_usage.used and target_usage.booking_id != booking.id:
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Monthly check-in already used')

            new_booking = Booking(
                coach_id=booking.coach_id,
                client_id=booking.client_id,
                package_id=booking.package_id,
                booking_type=booking.booking_type,
                starts_at=to_storage(data.starts_at),
                ends_at=to_storage(data.ends_at),
                status=STATUS_CONFIRMED,
                rescheduled_from_id=booking.id,
                one_off_client_name=booking.one_off_client_name,
            )
            db.add(new_booking)
            db.flush()

            if moves_checkin:
                release_checkin_usage(db, booking)
                claim_checkin_usage(db, booking.client_id, coach, data.starts_at, new_booking.id, target_usage)

            booking.status = STATUS_CANCELLED
            booking.cancelled_at = storage_now()
            db.commit()
            db.refresh(new_booking)
            result = new_booking
            changes = [(events.INSERT, new_booking), (events.UPDATE, booking)]
        else:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No valid update provided')
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'updating booking') from exc
    except HTTPException:
        db.rollback()
        raise

    for action, changed in changes:
        events.emit('bookings', action, changed.id, booking_audience(changed))
    return BookingEnvelope(booking=result)
