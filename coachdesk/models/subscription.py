"""Client subscription model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from coachdesk.core.timeutils import storage_now
from coachdesk.database import Base

UNLIMITED_SUBSCRIPTION = "unlimited"
HYBRID_SUBSCRIPTION = "hybrid"
SUBSCRIPTION_TYPES = (UNLIMITED_SUBSCRIPTION, HYBRID_SUBSCRIPTION)


class ClientSubscription(Base):
    """A recurring plan; hybrid plans carry a capped monthly session allowance."""
    __tablename__ = "client_subscriptions"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    subscription_type = Column(String, nullable=False)
    monthly_sessions = Column(Integer)
    available_sessions = Column(Integer)
    session_duration_minutes = Column(Integer)
    is_active = Column(Boolean, default=True, nullable=False)
    notes = Column(String)
    created_at = Column(DateTime, default=storage_now)
    updated_at = Column(DateTime, default=storage_now, onupdate=storage_now)


class SubscriptionAdjustment(Base):
    """Immutable audit row for a hybrid subscription balance change."""
    __tablename__ = "subscription_adjustments"

    id = Column(Integer, primary_key=True)
    subscription_id = Column(Integer, ForeignKey("client_subscriptions.id"), index=True, nullable=False)
    requested = Column(Integer, nullable=False)
    applied = Column(Integer, nullable=False)
    previous_balance = Column(Integer, nullable=False)
    new_balance = Column(Integer, nullable=False)
    was_capped = Column(Boolean, default=False, nullable=False)
    reason = Column(String)
    adjusted_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=storage_now)
