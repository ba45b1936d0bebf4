"""Session package model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from coachdesk.core.timeutils import storage_now
from coachdesk.database import Base


class SessionPackage(Base):
    """A prepaid bucket of sessions with a remaining balance."""
    __tablename__ = "session_packages"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    total_sessions = Column(Integer, nullable=False)
    remaining_sessions = Column(Integer, nullable=False)
    session_duration_minutes = Column(Integer, nullable=False)
    expires_at = Column(DateTime)
    notes = Column(String)
    created_at = Column(DateTime, default=storage_now)
    updated_at = Column(DateTime, default=storage_now, onupdate=storage_now)


class SessionPackageAdjustment(Base):
    """Immutable audit row for a manual balance change."""
    __tablename__ = "session_package_adjustments"

    id = Column(Integer, primary_key=True)
    package_id = Column(Integer, ForeignKey("session_packages.id"), index=True, nullable=False)
    adjustment = Column(Integer, nullable=False)
    previous_balance = Column(Integer, nullable=False)
    new_balance = Column(Integer, nullable=False)
    reason = Column(String)
    adjusted_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=storage_now)
