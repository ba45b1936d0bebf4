from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import get_current_coach, get_current_user
from coachdesk.core.errors import database_error
from coachdesk.core.schemas import CamelModel, UtcDatetime
from coachdesk.core.timeutils import storage_now
from coachdesk.database import get_db
from coachdesk.models.messaging import (
    CONTENT_TYPES,
    Announcement,
    AnnouncementRecipient,
    Conversation,
    Message,
)
from coachdesk.models.user import User
from coachdesk.services import events
from coachdesk.services.dispatch import create_announcement, find_or_create_conversation, insert_message
from coachdesk.services.push import message_preview, send_push_to_users

router = APIRouter(tags=['messaging'])


class MessageResponse(CamelModel):
    id: int
    conversation_id: int
    sender_id: int
    content: str
    content_type: str
    media_url: str | None = None
    read_at: UtcDatetime | None = None
    created_at: UtcDatetime | None = None


class ConversationResponse(CamelModel):
    id: int
    client_id: int
    client_name: str | None = None
    last_message_at: UtcDatetime | None = None
    unread_count: int = 0


class ConversationListResponse(CamelModel):
    conversations: list[ConversationResponse]


class ConversationDetailResponse(CamelModel):
    conversation: ConversationResponse
    messages: list[MessageResponse]


class MessageEnvelope(CamelModel):
    message: MessageResponse


class AnnouncementResponse(CamelModel):
    id: int
    coach_id: int
    title: str | None = None
    content: str
    content_type: str
    media_url: str | None = None
    is_pinned: bool
    created_at: UtcDatetime | None = None
    read_at: UtcDatetime | None = None
    recipient_count: int | None = None
    read_count: int | None = None


class AnnouncementEnvelope(CamelModel):
    announcement: AnnouncementResponse


class AnnouncementListResponse(CamelModel):
    announcements: list[AnnouncementResponse]


def normalize_content_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in CONTENT_TYPES:
        raise ValueError('contentType must be one of text, image, gif, video')
    return normalized


class SendMessageRequest(CamelModel):
    content: str
    content_type: str = 'text'
    media_url: str | None = None
    conversation_id: int | None = None
    client_id: int | None = None

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


class CreateAnnouncementRequest(CamelModel):
    content: str
    title: str | None = None
    content_type: str = 'text'
    media_url: str | None = None
    is_pinned: bool = False

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


def get_accessible_conversation(db: Session, conversation_id: int, current_user: User) -> tuple[Conversation, User]:
    """The conversation and its client, if the caller is that client or their coach."""
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Conversation not found')

    client = db.get(User, conversation.client_id)
    if current_user.is_coach:
        allowed = client is not None and client.coach_id == current_user.id
    else:
        allowed = conversation.client_id == current_user.id
    if not allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Forbidden')
    return conversation, client


def summarize_conversation(db: Session, conversation: Conversation, client: User | None, viewer: User) -> ConversationResponse:
    unread = db.query(Message).filter(
        Message.conversation_id == conversation.id,
        Message.sender_id != viewer.id,
        Message.read_at.is_(None),
    ).count()
    return ConversationResponse(
        id=conversation.id,
        client_id=conversation.client_id,
        client_name=client.name if client else None,
        last_message_at=conversation.last_message_at,
        unread_count=unread,
    )


@router.get('/api/messages/conversations', response_model=ConversationListResponse)
def list_conversations(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        if current_user.is_coach:
            rows = db.query(Conversation, User).join(User, User.id == Conversation.client_id).filter(
                User.coach_id == current_user.id,
            ).order_by(Conversation.last_message_at.desc(), Conversation.id.desc()).all()
        else:
            rows = [
                (conversation, current_user)
                for conversation in db.query(Conversation).filter(Conversation.client_id == current_user.id).all()
            ]

        return ConversationListResponse(
            conversations=[
                summarize_conversation(db, conversation, client, current_user)
                for conversation, client in rows
            ],
        )
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching conversations') from exc


@router.get('/api/messages/conversations/{conversation_id}', response_model=ConversationDetailResponse)
def get_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Messages oldest first; the other party's unread messages are marked read."""
    try:
        conversation, client = get_accessible_conversation(db, conversation_id, current_user)
        messages = db.query(Message).filter(
            Message.conversation_id == conversation.id,
        ).order_by(Message.created_at.asc(), Message.id.asc()).all()

        read_at = storage_now()
        for message in messages:
            if message.sender_id != current_user.id and message.read_at is None:
                message.read_at = read_at
        db.commit()

        return ConversationDetailResponse(
            conversation=summarize_conversation(db, conversation, client, current_user),
            messages=messages,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'fetching conversation') from exc


@router.post('/api/messages', response_model=MessageEnvelope, status_code=status.HTTP_201_CREATED)
def send_message(
    data: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        if data.conversation_id is not None:
            conversation, client = get_accessible_conversation(db, data.conversation_id, current_user)
        elif current_user.is_coach:
            if data.client_id is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail='conversationId or clientId is required',
                )
            client = db.get(User, data.client_id)
            if client is None or client.coach_id != current_user.id:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Client not found')
            conversation = find_or_create_conversation(db, client.id)
        else:
            client = current_user
            conversation = find_or_create_conversation(db, current_user.id)

        message = insert_message(db, conversation, current_user.id, data.content, data.content_type, data.media_url)
        db.commit()
        db.refresh(message)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'sending message') from exc

    coach_id = current_user.id if current_user.is_coach else client.coach_id
    recipient_id = client.id if current_user.is_coach else coach_id
    if recipient_id is not None:
        send_push_to_users(
            db,
            [recipient_id],
            f'Message from {current_user.name or "Coach"}',
            message_preview(data.content, data.content_type),
            '/messages',
        )

    audience = tuple(user_id for user_id in (client.id, coach_id) if user_id is not None)
    events.emit('messages', events.INSERT, message.id, audience)
    return MessageEnvelope(message=message)


@router.get('/api/announcements', response_model=AnnouncementListResponse)
def list_announcements(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Coaches see what they sent with read counts; clients see what they received."""
    try:
        if current_user.is_coach:
            announcements = db.query(Announcement).filter(
                Announcement.coach_id == current_user.id,
            ).order_by(Announcement.is_pinned.desc(), Announcement.created_at.desc(), Announcement.id.desc()).all()

            results = []
            for announcement in announcements:
                recipients = db.query(AnnouncementRecipient).filter(
                    AnnouncementRecipient.announcement_id == announcement.id,
                )
                response = AnnouncementResponse.model_validate(announcement)
                response.recipient_count = recipients.count()
                response.read_count = recipients.filter(AnnouncementRecipient.read_at.is_not(None)).count()
                results.append(response)
            return AnnouncementListResponse(announcements=results)

        rows = db.query(Announcement, AnnouncementRecipient).join(
            AnnouncementRecipient, AnnouncementRecipient.announcement_id == Announcement.id,
        ).filter(
            AnnouncementRecipient.client_id == current_user.id,
        ).order_by(Announcement.is_pinned.desc(), Announcement.created_at.desc(), Announcement.id.desc()).all()

        results = []
        for announcement, recipient in rows:
            response = AnnouncementResponse.model_validate(announcement)
            response.read_at = recipient.read_at
            results.append(response)
        return AnnouncementListResponse(announcements=results)
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching announcements') from exc


@router.post('/api/announcements', response_model=AnnouncementEnvelope, status_code=status.HTTP_201_CREATED)
def post_announcement(
    data: CreateAnnouncementRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        announcement, client_ids = create_announcement(
            db,
            coach.id,
            data.content,
            data.content_type,
            data.media_url,
            title=data.title,
            is_pinned=data.is_pinned,
        )
        db.commit()
        db.refresh(announcement)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'creating announcement') from exc

    send_push_to_users(
        db,
        client_ids,
        f'Announcement from {coach.name or "Coach"}',
        message_preview(data.content, data.content_type),
        '/announcements',
    )
    events.emit('announcements', events.INSERT, announcement.id, tuple(client_ids))

    response = AnnouncementResponse.model_validate(announcement)
    response.recipient_count = len(client_ids)
    response.read_count = 0
    return AnnouncementEnvelope(announcement=response)


@router.post('/api/announcements/{announcement_id}/read')
def mark_announcement_read(
    announcement_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        recipient = db.query(AnnouncementRecipient).filter(
            AnnouncementRecipient.announcement_id == announcement_id,
            AnnouncementRecipient.client_id == current_user.id,
        ).first()
        if not recipient:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Announcement not found')

        if recipient.read_at is None:
            recipient.read_at = storage_now()
            db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'marking announcement read') from exc

    return {'success': True}
