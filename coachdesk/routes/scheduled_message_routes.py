from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import get_current_coach
from coachdesk.core.errors import database_error
from coachdesk.core.schemas import CamelModel, UtcDatetime
from coachdesk.core.timeutils import as_utc, to_storage, utcnow
from coachdesk.database import get_db
from coachdesk.models.messaging import (
    CONTENT_TYPES,
    MESSAGE_TYPE_DM,
    MESSAGE_TYPE_MASS_DM,
    SCHEDULED_CANCELLED,
    SCHEDULED_MESSAGE_TYPES,
    SCHEDULED_PENDING,
    SCHEDULED_STATUSES,
    Conversation,
    ScheduledMessage,
)
from coachdesk.models.user import User
from coachdesk.services import events
from coachdesk.services.dispatch import dispatch_scheduled_message

router = APIRouter(prefix='/api/scheduled-messages', tags=['scheduled-messages'])


class ScheduledMessageResponse(CamelModel):
    id: int
    coach_id: int
    message_type: str
    content: str
    content_type: str
    media_url: str | None = None
    conversation_id: int | None = None
    recipient_ids: list[int] | None = None
    scheduled_for: UtcDatetime
    status: str
    sent_at: UtcDatetime | None = None
    error_message: str | None = None
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None
    conversation_client_name: str | None = None
    recipient_names: list[str] | None = None


class ScheduledMessageEnvelope(CamelModel):
    message: ScheduledMessageResponse


class ScheduledMessageListResponse(CamelModel):
    messages: list[ScheduledMessageResponse]


def normalize_content_type(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized not in CONTENT_TYPES:
        raise ValueError('contentType must be one of text, image, gif, video')
    return normalized


class CreateScheduledMessageRequest(CamelModel):
    message_type: str
    content: str
    scheduled_for: datetime
    content_type: str = 'text'
    media_url: str | None = None
    conversation_id: int | None = None
    recipient_ids: list[int] | None = None

    @field_validator('message_type')
    @classmethod
    def validate_message_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SCHEDULED_MESSAGE_TYPES:
            raise ValueError('messageType must be dm, mass_dm or announcement')
        return normalized

    @field_validator('content_type')
    @classmethod
    def validate_content_type(cls, value: str) -> str:
        return normalize_content_type(value)

    @field_validator('content')
    @classmethod
    def validate_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('content is required')
        return value

    @model_validator(mode='after')
    def validate_target(self):
        if self.message_type == MESSAGE_TYPE_DM and not self.conversation_id:
            raise ValueError('conversationId required for DM')
        if self.message_type == MESSAGE_TYPE_MASS_DM and not self.recipient_ids:
            raise ValueError('recipientIds required for mass DM')
        return self


class UpdateScheduledMessageRequest(CamelModel):
    content: str | None = None
    content_type: str | None = None
    media_url: str | None = None
    scheduled_for: datetime | None = None

    @field_validator('content_type')
    @classmethod
    def validate_content_type(cls, value: str | None) -> str | None:
        return normalize_content_type(value)


def ensure_future(scheduled_for: datetime) -> None:
    if as_utc(scheduled_for) <= utcnow():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Scheduled time must be in the future')


def ensure_own_conversation(db: Session, conversation_id: int, coach: User) -> None:
    conversation = db.get(Conversation, conversation_id)
    client = db.get(User, conversation.client_id) if conversation else None
    if client is None or client.coach_id != coach.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Conversation not found')


def ensure_own_clients(db: Session, client_ids: list[int], coach: User) -> None:
    """Every id must be a client of ``coach``."""
    owned = {
        client_id
        for (client_id,) in db.query(User.id).filter(
            User.id.in_(client_ids),
            User.coach_id == coach.id,
        ).all()
    }
    if any(client_id not in owned for client_id in client_ids):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Client not found')


def get_own_message(db: Session, message_id: int, coach: User) -> ScheduledMessage:
    scheduled = db.get(ScheduledMessage, message_id)
    if scheduled is None or scheduled.coach_id != coach.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Not found')
    return scheduled


def describe(db: Session, scheduled: ScheduledMessage) -> ScheduledMessageResponse:
    """Response model with recipient names filled in for display."""
    response = ScheduledMessageResponse.model_validate(scheduled)

    if scheduled.message_type == MESSAGE_TYPE_DM and scheduled.conversation_id:
        conversation = db.get(Conversation, scheduled.conversation_id)
        client = db.get(User, conversation.client_id) if conversation else None
        response.conversation_client_name = (client.name if client else None) or 'Unknown'

    if scheduled.message_type == MESSAGE_TYPE_MASS_DM and scheduled.recipient_ids:
        recipients = db.query(User.name).filter(User.id.in_(scheduled.recipient_ids)).all()
        response.recipient_names = [name for (name,) in recipients]

    return response


@router.get('', response_model=ScheduledMessageListResponse)
def list_scheduled_messages(
    message_status: str | None = Query(default=None, alias='status'),
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    if message_status and message_status not in SCHEDULED_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid status')

    try:
        query = db.query(ScheduledMessage).filter(ScheduledMessage.coach_id == coach.id)
        if message_status:
            query = query.filter(ScheduledMessage.status == message_status)
        messages = query.order_by(ScheduledMessage.scheduled_for.asc(), ScheduledMessage.id.asc()).all()
        return ScheduledMessageListResponse(messages=[describe(db, scheduled) for scheduled in messages])
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching scheduled messages') from exc


@router.post('', response_model=ScheduledMessageEnvelope, status_code=status.HTTP_201_CREATED)
def create_scheduled_message(
    data: CreateScheduledMessageRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    ensure_future(data.scheduled_for)

    try:
        if data.message_type == MESSAGE_TYPE_DM:
            ensure_own_conversation(db, data.conversation_id, coach)
        if data.message_type == MESSAGE_TYPE_MASS_DM:
            ensure_own_clients(db, data.recipient_ids, coach)

        scheduled = ScheduledMessage(
            coach_id=coach.id,
            message_type=data.message_type,
            content=data.content,
            content_type=data.content_type,
            media_url=data.media_url,
            conversation_id=data.conversation_id if data.message_type == MESSAGE_TYPE_DM else None,
            recipient_ids=data.recipient_ids if data.message_type == MESSAGE_TYPE_MASS_DM else None,
            scheduled_for=to_storage(data.scheduled_for),
            status=SCHEDULED_PENDING,
        )
        db.add(scheduled)
        db.commit()
        db.refresh(scheduled)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'creating scheduled message') from exc

    events.emit('scheduled_messages', events.INSERT, scheduled.id, (coach.id,))
    return ScheduledMessageEnvelope(message=scheduled)


@router.get('/{message_id}', response_model=ScheduledMessageEnvelope)
def get_scheduled_message(
    message_id: int,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        scheduled = get_own_message(db, message_id, coach)
        return ScheduledMessageEnvelope(message=describe(db, scheduled))
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching scheduled message') from exc


@router.put('/{message_id}', response_model=ScheduledMessageEnvelope)
def update_scheduled_message(
    message_id: int,
    data: UpdateScheduledMessageRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    changes = data.model_dump(exclude_unset=True)

    try:
        scheduled = get_own_message(db, message_id, coach)
        if scheduled.status != SCHEDULED_PENDING:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Can only edit pending messages')
        if not changes:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No fields to update')

        if 'content' in changes:
            if not (data.content or '').strip():
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='content is required')
            scheduled.content = data.content
        if 'content_type' in changes and data.content_type:
            scheduled.content_type = data.content_type
        if 'media_url' in changes:
            scheduled.media_url = data.media_url
        if 'scheduled_for' in changes and data.scheduled_for is not None:
            ensure_future(data.scheduled_for)
            scheduled.scheduled_for = to_storage(data.scheduled_for)

        db.commit()
        db.refresh(scheduled)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'updating scheduled message') from exc

    events.emit('scheduled_messages', events.UPDATE, scheduled.id, (coach.id,))
    return ScheduledMessageEnvelope(message=scheduled)


@router.delete('/{message_id}')
def cancel_scheduled_message(
    message_id: int,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """Cancelling keeps the row for history; it just never goes out."""
    try:
        scheduled = get_own_message(db, message_id, coach)
        if scheduled.status != SCHEDULED_PENDING:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Can only cancel pending messages')

        scheduled.status = SCHEDULED_CANCELLED
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'cancelling scheduled message') from exc

    events.emit('scheduled_messages', events.UPDATE, message_id, (coach.id,))
    return {'success': True}


@router.post('/{message_id}/send-now')
def send_scheduled_message_now(
    message_id: int,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        scheduled = get_own_message(db, message_id, coach)
        if scheduled.status != SCHEDULED_PENDING:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Message is not pending')
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching scheduled message') from exc

    result = dispatch_scheduled_message(db, scheduled)
    if not result['success']:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail='Failed to send message')
    return {'success': True}
