"""User model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from coachdesk.core.timeutils import storage_now
from coachdesk.database import Base

COACH_ROLE = "coach"
CLIENT_ROLE = "client"


class User(Base):
    """Represents a coach or client profile."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    name = Column(String)
    role = Column(String, default=CLIENT_ROLE)  # coach/client
    timezone = Column(String)
    avatar_url = Column(String)
    coach_id = Column(Integer, ForeignKey("users.id"), index=True)
    created_at = Column(DateTime, default=storage_now)

    @property
    def is_coach(self) -> bool:
        return self.role == COACH_ROLE
