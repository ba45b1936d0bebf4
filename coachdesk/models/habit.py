"""Habit tracking model definitions."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String
from coachdesk.core.timeutils import storage_now
from coachdesk.database import Base

RIVALRY_ACTIVE = "active"
RIVALRY_COMPLETED = "completed"


class HabitRivalry(Base):
    """Two clients racing to complete the same habit over a date range."""
    __tablename__ = "habit_rivalries"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    challenger_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    opponent_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String, default=RIVALRY_ACTIVE, nullable=False)
    winner_id = Column(Integer, ForeignKey("users.id"))  # null on a tie
    created_at = Column(DateTime, default=storage_now)


class ClientHabit(Base):
    __tablename__ = "client_habits"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    rivalry_id = Column(Integer, ForeignKey("habit_rivalries.id"))
    created_at = Column(DateTime, default=storage_now)


class HabitCompletion(Base):
    __tablename__ = "habit_completions"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    client_habit_id = Column(Integer, ForeignKey("client_habits.id"), nullable=False)
    completed_date = Column(Date, nullable=False)
