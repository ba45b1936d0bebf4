"""Workout programming model definitions."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from coachdesk.core.timeutils import storage_now
from coachdesk.database import Base

MISSED_WORKOUT_NOTIFICATION = "missed_workout"


class Program(Base):
    """A coach's training program."""
    __tablename__ = "programs"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=storage_now)


class ProgramAssignment(Base):
    """A program assigned to a client, with the weekdays they train on."""
    __tablename__ = "program_assignments"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False)
    scheduled_days = Column(JSON(none_as_null=True))  # [0-6], 0 = Sunday
    current_week = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=storage_now)


class WorkoutLog(Base):
    __tablename__ = "workout_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    assignment_id = Column(Integer, ForeignKey("program_assignments.id"))
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)


class CoachNotification(Base):
    """An in-app notice for a coach about one of their clients."""
    __tablename__ = "coach_notifications"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"))
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    assignment_id = Column(Integer, ForeignKey("program_assignments.id"))
    data = Column(JSON)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=storage_now)
