from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import get_current_user
from coachdesk.core import config
from coachdesk.core.errors import database_error
from coachdesk.core.schemas import CamelModel
from coachdesk.core.timeutils import is_valid_timezone
from coachdesk.database import get_db
from coachdesk.models.user import User

router = APIRouter()


class ProfileResponse(CamelModel):
    id: int
    email: str | None = None
    name: str | None = None
    role: str
    timezone: str
    coach_id: int | None = None
    avatar_url: str | None = None


class UpdateProfileRequest(CamelModel):
    name: str | None = None
    timezone: str | None = None
    avatar_url: str | None = None


def to_profile(user: User) -> ProfileResponse:
    return ProfileResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        timezone=user.timezone or config.DEFAULT_TIMEZONE,
        coach_id=user.coach_id,
        avatar_url=user.avatar_url,
    )


@router.get("/me", response_model=ProfileResponse)
def me(current_user: User = Depends(get_current_user)):
    return to_profile(current_user)


@router.patch("/me", response_model=ProfileResponse)
def update_me(
    data: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    if "timezone" in changes:
        if not data.timezone or not is_valid_timezone(data.timezone):
            raise HTTPException(status_code=400, detail="Invalid timezone")
        current_user.timezone = data.timezone
    if "name" in changes:
        name = (data.name or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name is required")
        current_user.name = name
    if "avatar_url" in changes:
        current_user.avatar_url = data.avatar_url

    try:
        db.commit()
        db.refresh(current_user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, "updating profile") from exc

    return to_profile(current_user)
