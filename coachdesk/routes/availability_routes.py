from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import get_current_coach, get_current_user
from coachdesk.core.errors import database_error
from coachdesk.core.schemas import CamelModel
from coachdesk.core.timeutils import parse_clock, resolve_timezone, utcnow
from coachdesk.database import get_db
from coachdesk.models.availability import (
    AVAILABILITY_TYPES,
    DEFAULT_MAX_CONCURRENT_CLIENTS,
    SESSION_TYPE,
    AvailabilityOverride,
    AvailabilityTemplate,
)
from coachdesk.models.user import User
from coachdesk.services import events
from coachdesk.services.availability import find_available_slots
from coachdesk.services.slots import DEFAULT_DURATION_MINUTES

router = APIRouter(prefix='/api/availability', tags=['availability'])

MAX_SLOT_DURATION_MINUTES = 8 * 60


class TemplateResponse(CamelModel):
    id: int
    coach_id: int
    availability_type: str
    day_of_week: int
    start_time: time
    end_time: time
    max_concurrent_clients: int


class OverrideResponse(CamelModel):
    id: int
    coach_id: int
    availability_type: str
    override_date: date
    start_time: time | None = None
    end_time: time | None = None
    is_blocked: bool
    max_concurrent_clients: int | None = None


class AvailabilityResponse(CamelModel):
    templates: list[TemplateResponse]
    overrides: list[OverrideResponse]


class CreateAvailabilityRequest(CamelModel):
    availability_type: str = SESSION_TYPE
    day_of_week: int | None = None
    override_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    is_blocked: bool = True
    max_concurrent_clients: int | None = None

    @field_validator('availability_type')
    @classmethod
    def validate_availability_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in AVAILABILITY_TYPES:
            raise ValueError('availabilityType must be session or checkin')
        return normalized

    @field_validator('start_time', 'end_time', mode='before')
    @classmethod
    def parse_time(cls, value):
        if isinstance(value, str):
            return parse_clock(value)
        return value

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int | None) -> int | None:
        if value is not None and not 0 <= value <= 6:
            raise ValueError('dayOfWeek must be between 0 (Sunday) and 6 (Saturday)')
        return value

    @field_validator('max_concurrent_clients')
    @classmethod
    def validate_capacity(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError('maxConcurrentClients must be at least 1')
        return value

    @model_validator(mode='after')
    def validate_shape(self):
        if (self.day_of_week is None) == (self.override_date is None):
            raise ValueError('Provide exactly one of dayOfWeek or overrideDate')

        if (self.start_time is None) != (self.end_time is None):
            raise ValueError('startTime and endTime must be provided together')
        if self.start_time is not None and self.end_time <= self.start_time:
            raise ValueError('endTime must be after startTime')

        if self.day_of_week is not None and self.start_time is None:
            raise ValueError('startTime and endTime are required for a weekly template')
        if self.override_date is not None and not self.is_blocked and self.start_time is None:
            raise ValueError('An open override needs startTime and endTime')
        return self

    @property
    def is_template(self) -> bool:
        return self.day_of_week is not None


class AvailableSlotResponse(CamelModel):
    starts_at: datetime
    ends_at: datetime
    available_capacity: int
    is_favorite: bool


class SlotsResponse(CamelModel):
    slots: list[AvailableSlotResponse]


def normalize_availability_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in AVAILABILITY_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='type must be session or checkin',
        )
    return normalized


def resolve_coach(db: Session, current_user: User, coach_id: int | None) -> User:
    """The coach whose calendar is being read: explicit, the caller, or the client's coach."""
    if coach_id is None:
        if current_user.is_coach:
            return current_user
        coach_id = current_user.coach_id
    if coach_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='coachId is required')

    coach = db.get(User, coach_id)
    if coach is None or not coach.is_coach:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Coach not found')
    return coach


@router.get('', response_model=AvailabilityResponse)
def list_availability(
    coach_id: int | None = Query(default=None, alias='coachId'),
    availability_type: str | None = Query(default=None, alias='type'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    coach = resolve_coach(db, current_user, coach_id)

    try:
        templates = db.query(AvailabilityTemplate).filter(AvailabilityTemplate.coach_id == coach.id)
        overrides = db.query(AvailabilityOverride).filter(
            AvailabilityOverride.coach_id == coach.id,
            AvailabilityOverride.override_date >= utcnow().astimezone(resolve_timezone(coach.timezone)).date(),
        )
        if availability_type:
            normalized = normalize_availability_type(availability_type)
            templates = templates.filter(AvailabilityTemplate.availability_type == normalized)
            overrides = overrides.filter(AvailabilityOverride.availability_type == normalized)

        return AvailabilityResponse(
            templates=templates.order_by(
                AvailabilityTemplate.day_of_week.asc(),
                AvailabilityTemplate.start_time.asc(),
            ).all(),
            overrides=overrides.order_by(
                AvailabilityOverride.override_date.asc(),
                AvailabilityOverride.start_time.asc(),
            ).all(),
        )
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching availability') from exc


@router.post('', status_code=status.HTTP_201_CREATED)
def create_availability(
    data: CreateAvailabilityRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        if data.is_template:
            template = AvailabilityTemplate(
                coach_id=coach.id,
                availability_type=data.availability_type,
                day_of_week=data.day_of_week,
                start_time=data.start_time,
                end_time=data.end_time,
                max_concurrent_clients=data.max_concurrent_clients or DEFAULT_MAX_CONCURRENT_CLIENTS,
            )
            db.add(template)
            db.commit()
            db.refresh(template)
            events.emit('coach_availability_templates', events.INSERT, template.id, (coach.id,))
            return {'template': TemplateResponse.model_validate(template)}

        override = AvailabilityOverride(
            coach_id=coach.id,
            availability_type=data.availability_type,
            override_date=data.override_date,
            start_time=data.start_time,
            end_time=data.end_time,
            is_blocked=data.is_blocked,
            max_concurrent_clients=data.max_concurrent_clients,
        )
        db.add(override)
        db.commit()
        db.refresh(override)
        events.emit('coach_availability_overrides', events.INSERT, override.id, (coach.id,))
        return {'override': OverrideResponse.model_validate(override)}
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'saving availability') from exc


@router.delete('/templates/{template_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_template(
    template_id: int,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        template = db.query(AvailabilityTemplate).filter(
            AvailabilityTemplate.id == template_id,
            AvailabilityTemplate.coach_id == coach.id,
        ).first()
        if not template:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Template not found')

        db.delete(template)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'deleting template') from exc

    events.emit('coach_availability_templates', events.DELETE, template_id, (coach.id,))


@router.delete('/overrides/{override_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_override(
    override_id: int,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        override = db.query(AvailabilityOverride).filter(
            AvailabilityOverride.id == override_id,
            AvailabilityOverride.coach_id == coach.id,
        ).first()
        if not override:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Override not found')

        db.delete(override)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'deleting override') from exc

    events.emit('coach_availability_overrides', events.DELETE, override_id, (coach.id,))


@router.get('/slots', response_model=SlotsResponse)
def list_available_slots(
    coach_id: int | None = Query(default=None, alias='coachId'),
    slot_date: date | None = Query(default=None, alias='date'),
    availability_type: str = Query(default=SESSION_TYPE, alias='type'),
    duration: int = Query(default=DEFAULT_DURATION_MINUTES, ge=1, le=MAX_SLOT_DURATION_MINUTES),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if slot_date is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='date is required')
    if coach_id is None and not current_user.is_coach:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='coachId is required')

    booking_type = normalize_availability_type(availability_type)
    coach = resolve_coach(db, current_user, coach_id)

    try:
        slots = find_available_slots(
            db,
            coach,
            slot_date,
            booking_type,
            duration_minutes=duration,
            client_id=None if current_user.is_coach else current_user.id,
        )
    except SQLAlchemyError as exc:
        raise database_error(exc, 'calculating slots') from exc

    return SlotsResponse(slots=slots)
