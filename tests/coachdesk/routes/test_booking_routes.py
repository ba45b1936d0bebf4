from datetime import datetime, time, timedelta, timezone

import pytest
from fastapi import HTTPException

from coachdesk.core.timeutils import day_of_week, storage_now, utcnow
from coachdesk.models.availability import AvailabilityTemplate
from coachdesk.models.booking import Booking, ClientBookingStats, ClientCheckinUsage
from coachdesk.models.package import SessionPackage
from coachdesk.routes.booking_routes import (
    CreateBookingRequest,
    UpdateBookingRequest,
    auto_complete_bookings,
    create_booking,
    enforce_min_notice,
    get_booking,
    update_booking,
)
from coachdesk.services import events


@pytest.fixture
def booking_day():
    return (utcnow() + timedelta(days=3)).date()


@pytest.fixture
def open_calendar(db, coach, booking_day):
    def _open(availability_type='session', capacity=2):
        db.add(AvailabilityTemplate(
            coach_id=coach.id,
            availability_type=availability_type,
            day_of_week=day_of_week(booking_day),
            start_time=time(9),
            end_time=time(12),
            max_concurrent_clients=capacity,
        ))
        db.commit()

    return _open


@pytest.fixture
def package(db, coach, client_user):
    new_package = SessionPackage(
        client_id=client_user.id,
        coach_id=coach.id,
        total_sessions=5,
        remaining_sessions=5,
        session_duration_minutes=60,
    )
    db.add(new_package)
    db.commit()
    db.refresh(new_package)
    return new_package


def at(day, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def book(db, user, day, hour: int, minute: int = 0, booking_type: str = 'session', length: int = 60, **extra):
    start = at(day, hour, minute)
    request = CreateBookingRequest(
        booking_type=booking_type,
        starts_at=start,
        ends_at=start + timedelta(minutes=length),
        **extra,
    )
    return create_booking(data=request, current_user=user, db=db).booking


def test_client_booking_uses_a_package_session(db, client_user, package, open_calendar, booking_day, event_bus) -> None:
    open_calendar()
    changes = []
    event_bus.subscribe('bookings', changes.append)

    booking = book(db, client_user, booking_day, 9)

    db.refresh(package)
    assert booking.status == 'confirmed'
    assert booking.package_id == package.id
    assert booking.starts_at == at(booking_day, 9)
    assert package.remaining_sessions == 4
    assert [(change.action, change.row_id) for change in changes] == [(events.INSERT, booking.id)]


def test_client_booking_without_package_is_rejected(db, client_user, open_calendar, booking_day) -> None:
    open_calendar()

    with pytest.raises(HTTPException) as exception_info:
        book(db, client_user, booking_day, 9)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'No active session package found'
    assert db.query(Booking).count() == 0


def test_client_without_coach_cannot_book(db, make_user, booking_day) -> None:
    loner = make_user('Sam Solo')

    with pytest.raises(HTTPException) as exception_info:
        book(db, loner, booking_day, 9)

    assert exception_info.value.detail == 'No coach relationship found'


def test_min_notice_applies_to_clients_only(coach, client_user) -> None:
    soon = utcnow() + timedelta(hours=2)

    with pytest.raises(HTTPException) as exception_info:
        enforce_min_notice(client_user, soon)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Bookings require 12 hours notice'
    enforce_min_notice(coach, soon)


def test_full_slot_is_a_conflict(db, coach, client_user, package, open_calendar, booking_day) -> None:
    open_calendar(capacity=1)
    book(db, coach, booking_day, 9, one_off_client_name='Walk In')

    with pytest.raises(HTTPException) as exception_info:
        book(db, client_user, booking_day, 9)

    db.refresh(package)
    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'Selected time is no longer available'
    assert package.remaining_sessions == 5


def test_start_between_slots_is_a_conflict(db, client_user, package, open_calendar, booking_day) -> None:
    open_calendar()

    with pytest.raises(HTTPException) as exception_info:
        book(db, client_user, booking_day, 9, 15)

    assert exception_info.value.status_code == 409


def test_coach_must_name_a_client(db, coach, booking_day) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book(db, coach, booking_day, 9)

    assert exception_info.value.detail == 'Coach must specify clientId or oneOffClientName'


def test_coach_one_off_booking_has_no_package(db, coach, open_calendar, booking_day) -> None:
    open_calendar()

    booking = book(db, coach, booking_day, 10, one_off_client_name='  Walk In  ')

    assert booking.client_id is None
    assert booking.package_id is None
    assert booking.one_off_client_name == 'Walk In'


def test_checkin_is_limited_to_one_per_month(db, client_user, open_calendar, booking_day) -> None:
    open_calendar(availability_type='checkin')
    first = book(db, client_user, booking_day, 9, booking_type='checkin', length=30)

    usage = db.query(ClientCheckinUsage).one()
    assert usage.used is True
    assert usage.booking_id == first.id

    with pytest.raises(HTTPException) as exception_info:
        book(db, client_user, booking_day, 10, booking_type='checkin', length=30)

    assert exception_info.value.detail == 'Monthly check-in already used'


def test_cancelled_checkin_frees_the_month(db, client_user, open_calendar, booking_day) -> None:
    open_calendar(availability_type='checkin')
    first = book(db, client_user, booking_day, 9, booking_type='checkin', length=30)

    update_booking(booking_id=first.id, data=UpdateBookingRequest(status='cancelled'), current_user=client_user, db=db)
    second = book(db, client_user, booking_day, 10, booking_type='checkin', length=30)

    usage = db.query(ClientCheckinUsage).one()
    assert usage.used is True
    assert usage.booking_id == second.id


def test_client_cancel_refunds_and_counts(db, client_user, package, open_calendar, booking_day) -> None:
    open_calendar()
    booking = book(db, client_user, booking_day, 9)

    result = update_booking(
        booking_id=booking.id,
        data=UpdateBookingRequest(status='cancelled'),
        current_user=client_user,
        db=db,
    ).booking

    db.refresh(package)
    stats = db.query(ClientBookingStats).one()
    assert result.status == 'cancelled'
    assert result.cancelled_at is not None
    assert package.remaining_sessions == 5
    assert stats.cancellation_count_90d == 1


def test_client_cannot_mark_completed(db, client_user, package, open_calendar, booking_day) -> None:
    open_calendar()
    booking = book(db, client_user, booking_day, 9)

    with pytest.raises(HTTPException) as exception_info:
        update_booking(
            booking_id=booking.id,
            data=UpdateBookingRequest(status='completed'),
            current_user=client_user,
            db=db,
        )

    assert exception_info.value.status_code == 403
    assert db.get(Booking, booking.id).status == 'confirmed'


def test_coach_marks_no_show_without_refund(db, coach, client_user, package, open_calendar, booking_day) -> None:
    open_calendar()
    booking = book(db, client_user, booking_day, 9)

    update_booking(booking_id=booking.id, data=UpdateBookingRequest(status='no_show'), current_user=coach, db=db)

    db.refresh(package)
    stats = db.query(ClientBookingStats).one()
    assert package.remaining_sessions == 4
    assert stats.no_show_count_90d == 1


def test_reschedule_moves_the_session(db, client_user, package, open_calendar, booking_day, event_bus) -> None:
    open_calendar()
    original = book(db, client_user, booking_day, 9)
    changes = []
    event_bus.subscribe('bookings', changes.append)

    moved = update_booking(
        booking_id=original.id,
        data=UpdateBookingRequest(starts_at=at(booking_day, 10), ends_at=at(booking_day, 11)),
        current_user=client_user,
        db=db,
    ).booking

    db.refresh(package)
    assert moved.id != original.id
    assert moved.rescheduled_from_id == original.id
    assert moved.starts_at == at(booking_day, 10)
    assert db.get(Booking, original.id).status == 'cancelled'
    assert package.remaining_sessions == 4
    assert [change.action for change in changes] == [events.INSERT, events.UPDATE]


def test_reschedule_requires_confirmed_booking(db, coach, client_user, package, open_calendar, booking_day) -> None:
    open_calendar()
    booking = book(db, client_user, booking_day, 9)
    update_booking(booking_id=booking.id, data=UpdateBookingRequest(status='completed'), current_user=coach, db=db)

    with pytest.raises(HTTPException) as exception_info:
        update_booking(
            booking_id=booking.id,
            data=UpdateBookingRequest(starts_at=at(booking_day, 10), ends_at=at(booking_day, 11)),
            current_user=coach,
            db=db,
        )

    assert exception_info.value.detail == 'Only confirmed bookings can be rescheduled'


def test_empty_update_is_rejected(db, coach, open_calendar, booking_day) -> None:
    open_calendar()
    booking = book(db, coach, booking_day, 9, one_off_client_name='Walk In')

    with pytest.raises(HTTPException) as exception_info:
        update_booking(booking_id=booking.id, data=UpdateBookingRequest(), current_user=coach, db=db)

    assert exception_info.value.detail == 'No valid update provided'


def test_other_clients_cannot_see_a_booking(db, coach, client_user, make_user, package, open_calendar, booking_day) -> None:
    open_calendar()
    booking = book(db, client_user, booking_day, 9)
    stranger = make_user('Other Client', coach=coach)

    with pytest.raises(HTTPException) as exception_info:
        get_booking(booking_id=booking.id, current_user=stranger, db=db)

    assert exception_info.value.status_code == 403
    assert get_booking(booking_id=booking.id, current_user=coach, db=db).booking.id == booking.id


def test_auto_complete_marks_past_confirmed_bookings(db, coach, client_user) -> None:
    ended = storage_now() - timedelta(days=1)
    past = Booking(
        coach_id=coach.id, client_id=client_user.id, booking_type='session',
        starts_at=ended - timedelta(hours=1), ends_at=ended, status='confirmed',
    )
    cancelled = Booking(
        coach_id=coach.id, client_id=client_user.id, booking_type='session',
        starts_at=ended - timedelta(hours=1), ends_at=ended, status='cancelled',
    )
    upcoming = Booking(
        coach_id=coach.id, client_id=client_user.id, booking_type='session',
        starts_at=ended + timedelta(days=3), ends_at=ended + timedelta(days=3, hours=1), status='confirmed',
    )
    db.add_all([past, cancelled, upcoming])
    db.commit()

    result = auto_complete_bookings(coach=coach, db=db)

    assert result.updated == 1
    assert result.booking_ids == [past.id]
    assert db.get(Booking, past.id).status == 'completed'
    assert db.get(Booking, upcoming.id).status == 'confirmed'


def cancel(db, user, booking):
    return update_booking(booking_id=booking.id, data=UpdateBookingRequest(status='cancelled'), current_user=user, db=db)


def move(db, user, booking, day, hour: int, length: int = 30):
    data = UpdateBookingRequest(starts_at=at(day, hour), ends_at=at(day, hour) + timedelta(minutes=length))
    return update_booking(booking_id=booking.id, data=data, current_user=user, db=db).booking


def test_cancelling_twice_does_not_free_the_month(db, client_user, open_calendar, booking_day) -> None:
    open_calendar(availability_type='checkin')
    first = book(db, client_user, booking_day, 9, booking_type='checkin', length=30)
    cancel(db, client_user, first)
    second = book(db, client_user, booking_day, 10, booking_type='checkin', length=30)

    with pytest.raises(HTTPException) as cancel_error:
        cancel(db, client_user, first)
    with pytest.raises(HTTPException) as booking_error:
        book(db, client_user, booking_day, 11, booking_type='checkin', length=30)

    usage = db.query(ClientCheckinUsage).one()
    assert cancel_error.value.status_code == 400
    assert cancel_error.value.detail == 'Only confirmed bookings can be cancelled'
    assert booking_error.value.detail == 'Monthly check-in already used'
    assert usage.used is True
    assert usage.booking_id == second.id


def test_completed_booking_cannot_be_cancelled(db, coach, client_user, package, open_calendar, booking_day) -> None:
    open_calendar()
    booking = book(db, client_user, booking_day, 9)
    update_booking(booking_id=booking.id, data=UpdateBookingRequest(status='completed'), current_user=coach, db=db)

    with pytest.raises(HTTPException) as exception_info:
        cancel(db, client_user, booking)

    db.refresh(package)
    assert exception_info.value.status_code == 400
    assert db.get(Booking, booking.id).status == 'completed'
    assert package.remaining_sessions == 4


def test_rescheduled_checkin_keeps_the_month(db, client_user, open_calendar, booking_day) -> None:
    open_calendar(availability_type='checkin')
    original = book(db, client_user, booking_day, 9, booking_type='checkin', length=30)

    moved = move(db, client_user, original, booking_day, 10)

    usage = db.query(ClientCheckinUsage).one()
    assert usage.used is True
    assert usage.booking_id == moved.id
    with pytest.raises(HTTPException) as exception_info:
        book(db, client_user, booking_day, 11, booking_type='checkin', length=30)
    assert exception_info.value.detail == 'Monthly check-in already used'


def test_rescheduled_checkin_moves_to_the_new_month(db, client_user, open_calendar, booking_day) -> None:
    open_calendar(availability_type='checkin')
    later_day = booking_day + timedelta(days=35)
    original = book(db, client_user, booking_day, 9, booking_type='checkin', length=30)

    moved = move(db, client_user, original, later_day, 9)

    usages = {usage.month: usage for usage in db.query(ClientCheckinUsage).all()}
    old_month = booking_day.replace(day=1)
    new_month = later_day.replace(day=1)
    assert usages[old_month].used is False
    assert usages[new_month].used is True
    assert usages[new_month].booking_id == moved.id

    again = book(db, client_user, booking_day, 10, booking_type='checkin', length=30)
    assert again.status == 'confirmed'


def test_reschedule_into_a_used_month_is_rejected(db, client_user, open_calendar, booking_day) -> None:
    open_calendar(availability_type='checkin')
    later_day = booking_day + timedelta(days=35)
    first = book(db, client_user, booking_day, 9, booking_type='checkin', length=30)
    book(db, client_user, later_day, 9, booking_type='checkin', length=30)

    with pytest.raises(HTTPException) as exception_info:
        move(db, client_user, first, later_day, 10)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Monthly check-in already used'
    assert db.get(Booking, first.id).status == 'confirmed'
