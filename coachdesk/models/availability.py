"""Availability model definitions."""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String, Time
from coachdesk.database import Base

SESSION_TYPE = "session"
CHECKIN_TYPE = "checkin"
AVAILABILITY_TYPES = (SESSION_TYPE, CHECKIN_TYPE)

DEFAULT_MAX_CONCURRENT_CLIENTS = 2


class AvailabilityTemplate(Base):
    """A standing weekly open window for a coach."""
    __tablename__ = "coach_availability_templates"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    availability_type = Column(String, nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    max_concurrent_clients = Column(Integer, default=DEFAULT_MAX_CONCURRENT_CLIENTS, nullable=False)


class AvailabilityOverride(Base):
    """A date-specific block or extra opening. No start time means the whole day."""
    __tablename__ = "coach_availability_overrides"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    availability_type = Column(String, nullable=False)
    override_date = Column(Date, index=True, nullable=False)
    start_time = Column(Time)
    end_time = Column(Time)
    is_blocked = Column(Boolean, default=True, nullable=False)
    max_concurrent_clients = Column(Integer)
