from datetime import date, datetime, time, timedelta, timezone

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from coachdesk.core.timeutils import day_of_week, utcnow
from coachdesk.models.availability import AvailabilityOverride, AvailabilityTemplate
from coachdesk.models.booking import Booking, ClientBookingStats
from coachdesk.routes.availability_routes import (
    CreateAvailabilityRequest,
    create_availability,
    delete_template,
    list_availability,
    list_available_slots,
)

MONDAY = date(2026, 1, 5)


def utc(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def add_template(db, coach, start=time(9), end=time(12), availability_type='session', day=MONDAY, capacity=2):
    template = AvailabilityTemplate(
        coach_id=coach.id,
        availability_type=availability_type,
        day_of_week=day_of_week(day),
        start_time=start,
        end_time=end,
        max_concurrent_clients=capacity,
    )
    db.add(template)
    db.commit()
    return template


def slots_for(db, user, coach_id=None, slot_date=MONDAY, availability_type='session', duration=60):
    return list_available_slots(
        coach_id=coach_id,
        slot_date=slot_date,
        availability_type=availability_type,
        duration=duration,
        current_user=user,
        db=db,
    ).slots


def test_create_availability_request_parses_clock_strings() -> None:
    request = CreateAvailabilityRequest.model_validate(
        {'dayOfWeek': 1, 'startTime': '09:00', 'endTime': '12:30', 'availabilityType': 'Session'},
    )

    assert request.start_time == time(9, 0)
    assert request.end_time == time(12, 30)
    assert request.availability_type == 'session'
    assert request.is_template is True


@pytest.mark.parametrize(
    'payload',
    [
        {'dayOfWeek': 1, 'startTime': '12:00', 'endTime': '09:00'},
        {'dayOfWeek': 7, 'startTime': '09:00', 'endTime': '10:00'},
        {'dayOfWeek': 1},
        {'dayOfWeek': 1, 'overrideDate': '2026-01-05', 'startTime': '09:00', 'endTime': '10:00'},
        {'overrideDate': '2026-01-05', 'startTime': '09:00'},
        {'overrideDate': '2026-01-05', 'isBlocked': False},
        {'startTime': '09:00', 'endTime': '10:00'},
        {'dayOfWeek': 1, 'startTime': '09:00', 'endTime': '10:00', 'availabilityType': 'yoga'},
        {'dayOfWeek': 1, 'startTime': '09:00', 'endTime': '10:00', 'maxConcurrentClients': 0},
    ],
)
def test_create_availability_request_rejects_invalid_shapes(payload: dict) -> None:
    with pytest.raises(ValidationError):
        CreateAvailabilityRequest.model_validate(payload)


def test_whole_day_override_request_is_allowed() -> None:
    request = CreateAvailabilityRequest.model_validate({'overrideDate': '2026-01-05'})

    assert request.is_blocked is True
    assert request.start_time is None
    assert request.is_template is False


def test_create_availability_stores_template_for_coach(db, coach, event_bus) -> None:
    changes = []
    event_bus.subscribe('coach_availability_templates', changes.append)
    request = CreateAvailabilityRequest(day_of_week=1, start_time=time(9), end_time=time(12))

    result = create_availability(data=request, coach=coach, db=db)

    stored = db.query(AvailabilityTemplate).one()
    assert result['template'].id == stored.id
    assert stored.coach_id == coach.id
    assert stored.max_concurrent_clients == 2
    assert [change.row_id for change in changes] == [stored.id]


def test_create_availability_stores_override(db, coach) -> None:
    request = CreateAvailabilityRequest(
        override_date=MONDAY,
        start_time=time(14),
        end_time=time(16),
        is_blocked=False,
        max_concurrent_clients=3,
    )

    result = create_availability(data=request, coach=coach, db=db)

    stored = db.query(AvailabilityOverride).one()
    assert result['override'].id == stored.id
    assert stored.is_blocked is False
    assert stored.max_concurrent_clients == 3


def test_delete_template_only_touches_own_rows(db, coach, make_user) -> None:
    other_coach = make_user('Other Coach', role='coach')
    template = add_template(db, other_coach)

    with pytest.raises(HTTPException) as exception_info:
        delete_template(template_id=template.id, coach=coach, db=db)

    assert exception_info.value.status_code == 404
    assert db.query(AvailabilityTemplate).count() == 1


def test_list_availability_returns_upcoming_overrides_only(db, coach, client_user) -> None:
    add_template(db, coach)
    today = utcnow().date()
    db.add_all([
        AvailabilityOverride(coach_id=coach.id, availability_type='session', override_date=today - timedelta(days=3)),
        AvailabilityOverride(coach_id=coach.id, availability_type='session', override_date=today + timedelta(days=3)),
    ])
    db.commit()

    result = list_availability(coach_id=None, availability_type=None, current_user=client_user, db=db)

    assert len(result.templates) == 1
    assert [override.override_date for override in result.overrides] == [today + timedelta(days=3)]


def test_slots_require_a_date(db, coach) -> None:
    with pytest.raises(HTTPException) as exception_info:
        slots_for(db, coach, slot_date=None)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'date is required'


def test_slots_require_coach_id_for_clients(db, client_user) -> None:
    with pytest.raises(HTTPException) as exception_info:
        slots_for(db, client_user)

    assert exception_info.value.status_code == 400


def test_slots_reject_unknown_type(db, coach) -> None:
    with pytest.raises(HTTPException) as exception_info:
        slots_for(db, coach, availability_type='massage')

    assert exception_info.value.status_code == 400


def test_slots_for_unknown_coach_are_not_found(db, client_user) -> None:
    with pytest.raises(HTTPException) as exception_info:
        slots_for(db, client_user, coach_id=client_user.id)

    assert exception_info.value.status_code == 404


def test_slots_combine_templates_bookings_and_favorites(db, coach, client_user) -> None:
    add_template(db, coach)
    add_template(db, coach, start=time(13), end=time(15), availability_type='checkin')
    db.add_all([
        Booking(
            coach_id=coach.id, client_id=client_user.id, booking_type='session',
            starts_at=datetime(2026, 1, 5, 10, 0), ends_at=datetime(2026, 1, 5, 11, 0), status='confirmed',
        ),
        Booking(
            coach_id=coach.id, client_id=client_user.id, booking_type='session',
            starts_at=datetime(2026, 1, 5, 9, 0), ends_at=datetime(2026, 1, 5, 10, 0), status='cancelled',
        ),
        ClientBookingStats(
            client_id=client_user.id, coach_id=coach.id, favorite_times=[{'day': 1, 'time': '09:00'}],
        ),
    ])
    db.commit()

    slots = slots_for(db, client_user, coach_id=coach.id)

    assert [(slot.starts_at, slot.available_capacity, slot.is_favorite) for slot in slots] == [
        (utc(9), 2, True),
        (utc(9, 30), 1, False),
        (utc(10), 1, False),
        (utc(10, 30), 1, False),
        (utc(11), 2, False),
    ]


def test_slots_respect_blocks_of_the_other_type(db, coach) -> None:
    add_template(db, coach)
    db.add(AvailabilityOverride(
        coach_id=coach.id,
        availability_type='checkin',
        override_date=MONDAY,
        start_time=time(9),
        end_time=time(11),
        is_blocked=True,
    ))
    db.commit()

    slots = slots_for(db, coach)

    assert [slot.starts_at for slot in slots] == [utc(11)]


def test_slots_exclude_checkin_bookings_from_session_slots(db, coach, client_user) -> None:
    add_template(db, coach)
    db.add(Booking(
        coach_id=coach.id, client_id=client_user.id, booking_type='checkin',
        starts_at=datetime(2026, 1, 5, 9, 0), ends_at=datetime(2026, 1, 5, 9, 30), status='confirmed',
    ))
    db.commit()

    slots = slots_for(db, coach)

    assert [slot.starts_at for slot in slots] == [utc(9, 30), utc(10), utc(10, 30), utc(11)]


def test_whole_day_block_clears_the_date(db, coach) -> None:
    add_template(db, coach)
    db.add(AvailabilityOverride(coach_id=coach.id, availability_type='session', override_date=MONDAY))
    db.commit()

    assert slots_for(db, coach) == []
