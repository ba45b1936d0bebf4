"""Booking model definitions."""

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from coachdesk.core.timeutils import storage_now
from coachdesk.database import Base

STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"
STATUS_COMPLETED = "completed"
STATUS_NO_SHOW = "no_show"
BOOKING_STATUSES = (STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_COMPLETED, STATUS_NO_SHOW)


class Booking(Base):
    """Represents a scheduled session or check-in."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), index=True)  # null for one-off bookings
    package_id = Column(Integer, ForeignKey("session_packages.id"))
    booking_type = Column(String, nullable=False)
    starts_at = Column(DateTime, index=True, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    status = Column(String, default=STATUS_CONFIRMED, nullable=False)
    rescheduled_from_id = Column(Integer, ForeignKey("bookings.id"))
    cancelled_at = Column(DateTime)
    one_off_client_name = Column(String)
    created_at = Column(DateTime, default=storage_now)
    updated_at = Column(DateTime, default=storage_now, onupdate=storage_now)


class ClientBookingStats(Base):
    """Per client/coach attendance counters, streaks and favorite times."""
    __tablename__ = "client_booking_stats"
    __table_args__ = (UniqueConstraint("client_id", "coach_id"),)

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    coach_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    current_streak_weeks = Column(Integer, default=0, nullable=False)
    longest_streak_weeks = Column(Integer, default=0, nullable=False)
    no_show_count_90d = Column(Integer, default=0, nullable=False)
    cancellation_count_90d = Column(Integer, default=0, nullable=False)
    is_flagged = Column(Boolean, default=False, nullable=False)
    favorite_times = Column(JSON, default=list)  # [{"day": 0-6, "time": "HH:MM"}]
    last_streak_update = Column(DateTime)


class ClientCheckinUsage(Base):
    """Tracks the one check-in a client may book per month."""
    __tablename__ = "client_checkin_usage"
    __table_args__ = (UniqueConstraint("client_id", "coach_id", "month"),)

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    coach_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    month = Column(Date, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"))
