"""
Scheduled message delivery.

A scheduled message goes to one of three sinks:

- ``dm``: an existing conversation
- ``mass_dm``: one conversation per recipient, created on demand
- ``announcement``: an announcement row plus one recipient row per client

Mass DMs commit per recipient, so a failure part way through leaves the
earlier recipients delivered and carries on with the rest. Push
notifications go out only after the rows they announce are committed.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.core.timeutils import storage_now, to_storage
from coachdesk.models.messaging import (
    MESSAGE_TYPE_ANNOUNCEMENT,
    MESSAGE_TYPE_DM,
    MESSAGE_TYPE_MASS_DM,
    SCHEDULED_FAILED,
    SCHEDULED_PENDING,
    SCHEDULED_SENT,
    Announcement,
    AnnouncementRecipient,
    Conversation,
    Message,
    ScheduledMessage,
)
from coachdesk.models.user import CLIENT_ROLE, User
from coachdesk.services import events
from coachdesk.services.push import message_preview, send_push_to_users

logger = logging.getLogger(__name__)

_FIRSTNAME_PATTERN = re.compile(r'\{firstname\}', re.IGNORECASE)
_NAME_PATTERN = re.compile(r'\{name\}', re.IGNORECASE)


class DispatchError(RuntimeError):
    """A scheduled message could not be delivered."""


@dataclass
class _Push:
    user_ids: list[int]
    body: str
    url: str


@dataclass
class _Delivery:
    pushes: list[_Push] = field(default_factory=list)
    changes: list[tuple[str, int, tuple[int, ...]]] = field(default_factory=list)
    failed_recipients: list[int] = field(default_factory=list)


def replace_variables(content: str, name: str | None) -> str:
    """Fill ``{firstname}`` and ``{name}`` (any case) for one recipient."""
    full_name = name or ''
    first_name = full_name.split(' ')[0]
    content = _FIRSTNAME_PATTERN.sub(lambda _match: first_name, content)
    return _NAME_PATTERN.sub(lambda _match: full_name, content)


def insert_message(
    db: Session,
    conversation: Conversation,
    sender_id: int,
    content: str,
    content_type: str,
    media_url: str | None,
) -> Message:
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        content=content,
        content_type=content_type,
        media_url=media_url,
    )
    db.add(message)
    conversation.last_message_at = storage_now()
    db.flush()
    return message


def _send_direct_message(db: Session, scheduled: ScheduledMessage, delivery: _Delivery) -> None:
    if not scheduled.conversation_id:
        raise DispatchError('No conversation_id for DM')

    conversation = db.get(Conversation, scheduled.conversation_id)
    if conversation is None:
        raise DispatchError('Conversation not found')

    client = db.get(User, conversation.client_id)
    if client is None or client.coach_id != scheduled.coach_id:
        raise DispatchError('Conversation does not belong to this coach')
    content = replace_variables(scheduled.content, client.name)
    message = insert_message(db, conversation, scheduled.coach_id, content, scheduled.content_type, scheduled.media_url)
    db.commit()

    delivery.pushes.append(_Push([conversation.client_id], message_preview(content, scheduled.content_type), '/messages'))
    delivery.changes.append(('messages', message.id, (conversation.client_id,)))


def find_or_create_conversation(db: Session, client_id: int) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.client_id == client_id).first()
    if conversation is None:
        conversation = Conversation(client_id=client_id)
        db.add(conversation)
        db.flush()
    return conversation


def _send_mass_direct_messages(db: Session, scheduled: ScheduledMessage, delivery: _Delivery) -> None:
    recipient_ids = scheduled.recipient_ids or []
    if not recipient_ids:
        raise DispatchError('No recipient_ids for mass DM')

    names = {
        user.id: user.name
        for user in db.query(User).filter(
            User.id.in_(recipient_ids),
            User.coach_id == scheduled.coach_id,
        ).all()
    }

    for client_id in recipient_ids:
        if client_id not in names:
            logger.error('Mass DM %s: recipient %s is not a client of coach %s', scheduled.id, client_id, scheduled.coach_id)
            delivery.failed_recipients.append(client_id)
            continue
        try:
            conversation = find_or_create_conversation(db, client_id)
            content = replace_variables(scheduled.content, names[client_id])
            message = insert_message(db, conversation, scheduled.coach_id, content, scheduled.content_type, scheduled.media_url)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception('Mass DM %s: failed to deliver to %s', scheduled.id, client_id)
            delivery.failed_recipients.append(client_id)
            continue

        delivery.pushes.append(_Push([client_id], message_preview(content, scheduled.content_type), '/messages'))
        delivery.changes.append(('messages', message.id, (client_id,)))

    if len(delivery.failed_recipients) == len(recipient_ids):
        raise DispatchError('Failed to deliver to any recipient')


def create_announcement(
    db: Session,
    coach_id: int,
    content: str,
    content_type: str,
    media_url: str | None,
    title: str | None = None,
    is_pinned: bool = False,
) -> tuple[Announcement, list[int]]:
    """Insert an announcement addressed to every client of the coach. Does not commit."""
    announcement = Announcement(
        coach_id=coach_id,
        title=title,
        content=content,
        content_type=content_type,
        media_url=media_url,
        is_pinned=is_pinned,
    )
    db.add(announcement)
    db.flush()

    client_ids = [
        client_id
        for (client_id,) in db.query(User.id).filter(
            User.role == CLIENT_ROLE,
            User.coach_id == coach_id,
        ).all()
    ]
    db.add_all(AnnouncementRecipient(announcement_id=announcement.id, client_id=client_id) for client_id in client_ids)
    return announcement, client_ids


def _send_announcement(db: Session, scheduled: ScheduledMessage, delivery: _Delivery) -> None:
    announcement, client_ids = create_announcement(
        db, scheduled.coach_id, scheduled.content, scheduled.content_type, scheduled.media_url,
    )
    db.commit()

    delivery.pushes.append(_Push(client_ids, message_preview(scheduled.content, scheduled.content_type), '/announcements'))
    delivery.changes.append(('announcements', announcement.id, tuple(client_ids)))


def _mark_failed(db: Session, scheduled: ScheduledMessage, error_message: str) -> dict:
    db.rollback()
    scheduled.status = SCHEDULED_FAILED
    scheduled.error_message = error_message
    db.commit()
    events.emit('scheduled_messages', events.UPDATE, scheduled.id, (scheduled.coach_id,))
    return {'id': scheduled.id, 'success': False, 'error': error_message}


SINKS = {
    MESSAGE_TYPE_DM: _send_direct_message,
    MESSAGE_TYPE_MASS_DM: _send_mass_direct_messages,
    MESSAGE_TYPE_ANNOUNCEMENT: _send_announcement,
}


def dispatch_scheduled_message(db: Session, scheduled: ScheduledMessage, now: datetime | None = None) -> dict:
    """Deliver one pending message and record the outcome on it.

    Never raises for delivery problems: the message ends up ``sent`` or
    ``failed`` and the returned dict says which.
    """
    scheduled_id = scheduled.id
    sent_at = to_storage(now) if now else storage_now()
    delivery = _Delivery()
    coach = db.get(User, scheduled.coach_id)
    coach_name = (coach.name if coach else None) or 'Coach'

    try:
        sink = SINKS.get(scheduled.message_type)
        if sink is None:
            raise DispatchError(f'Unsupported message type: {scheduled.message_type}')
        sink(db, scheduled, delivery)
    except DispatchError as exc:
        logger.error('Failed to send scheduled message %s: %s', scheduled_id, exc)
        return _mark_failed(db, scheduled, str(exc))
    except Exception as exc:
        logger.exception('Failed to send scheduled message %s', scheduled_id)
        return _mark_failed(db, scheduled, str(exc) or exc.__class__.__name__)

    scheduled.status = SCHEDULED_SENT
    scheduled.sent_at = sent_at
    if delivery.failed_recipients:
        scheduled.error_message = (
            f'Failed for {len(delivery.failed_recipients)} of {len(scheduled.recipient_ids or [])} recipients'
        )
    db.commit()
    logger.info('Sent scheduled message %s (%s)', scheduled.id, scheduled.message_type)

    if scheduled.message_type == MESSAGE_TYPE_ANNOUNCEMENT:
        title = f'Announcement from {coach_name}'
    else:
        title = f'Message from {coach_name}'
    for push in delivery.pushes:
        send_push_to_users(db, push.user_ids, title, push.body, push.url)

    for table, row_id, audience in delivery.changes:
        events.emit(table, events.INSERT, row_id, audience)
    events.emit('scheduled_messages', events.UPDATE, scheduled.id, (scheduled.coach_id,))

    return {'id': scheduled.id, 'success': True}


def process_due_scheduled_messages(db: Session, now: datetime | None = None) -> dict:
    """Deliver every pending message whose ``scheduled_for`` has passed, oldest first."""
    cutoff = to_storage(now) if now else storage_now()
    logger.info('Processing scheduled messages at %s', cutoff.isoformat())

    due = db.query(ScheduledMessage).filter(
        ScheduledMessage.status == SCHEDULED_PENDING,
        ScheduledMessage.scheduled_for <= cutoff,
    ).order_by(ScheduledMessage.scheduled_for.asc(), ScheduledMessage.id.asc()).all()

    logger.info('Found %d messages to process', len(due))

    results = [dispatch_scheduled_message(db, scheduled, now=cutoff) for scheduled in due]
    sent = sum(1 for result in results if result['success'])

    return {
        'processed': len(results),
        'sent': sent,
        'failed': len(results) - sent,
        'results': results,
    }
