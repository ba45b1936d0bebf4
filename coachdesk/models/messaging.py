"""Messaging, announcement and push subscription model definitions."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from coachdesk.core.timeutils import storage_now
from coachdesk.database import Base

CONTENT_TYPES = ("text", "image", "gif", "video")

MESSAGE_TYPE_DM = "dm"
MESSAGE_TYPE_MASS_DM = "mass_dm"
MESSAGE_TYPE_ANNOUNCEMENT = "announcement"
SCHEDULED_MESSAGE_TYPES = (MESSAGE_TYPE_DM, MESSAGE_TYPE_MASS_DM, MESSAGE_TYPE_ANNOUNCEMENT)

SCHEDULED_PENDING = "pending"
SCHEDULED_SENT = "sent"
SCHEDULED_CANCELLED = "cancelled"
SCHEDULED_FAILED = "failed"
SCHEDULED_STATUSES = (SCHEDULED_PENDING, SCHEDULED_SENT, SCHEDULED_CANCELLED, SCHEDULED_FAILED)


class Conversation(Base):
    """One direct-message thread between the coach and a client."""
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    last_message_at = Column(DateTime)
    created_at = Column(DateTime, default=storage_now)


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    content_type = Column(String, default="text", nullable=False)
    media_url = Column(String)
    read_at = Column(DateTime)
    created_at = Column(DateTime, default=storage_now)


class Announcement(Base):
    __tablename__ = "announcements"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    title = Column(String)
    content = Column(Text, nullable=False)
    content_type = Column(String, default="text", nullable=False)
    media_url = Column(String)
    is_pinned = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=storage_now)


class AnnouncementRecipient(Base):
    __tablename__ = "announcement_recipients"

    id = Column(Integer, primary_key=True)
    announcement_id = Column(Integer, ForeignKey("announcements.id"), index=True, nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    read_at = Column(DateTime)


class ScheduledMessage(Base):
    """A message queued for delivery at ``scheduled_for``."""
    __tablename__ = "scheduled_messages"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    message_type = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    content_type = Column(String, default="text", nullable=False)
    media_url = Column(String)
    conversation_id = Column(Integer, ForeignKey("conversations.id"))
    recipient_ids = Column(JSON)
    scheduled_for = Column(DateTime, index=True, nullable=False)
    status = Column(String, default=SCHEDULED_PENDING, nullable=False)
    sent_at = Column(DateTime)
    error_message = Column(String)
    created_at = Column(DateTime, default=storage_now)
    updated_at = Column(DateTime, default=storage_now, onupdate=storage_now)


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    endpoint = Column(String, unique=True, nullable=False)
    p256dh = Column(String, nullable=False)
    auth = Column(String, nullable=False)
    created_at = Column(DateTime, default=storage_now)
