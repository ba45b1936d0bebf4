from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import get_current_coach
from coachdesk.core.errors import database_error
from coachdesk.core.schemas import CamelModel, UtcDatetime
from coachdesk.core.timeutils import to_storage
from coachdesk.database import get_db
from coachdesk.models.package import SessionPackage, SessionPackageAdjustment
from coachdesk.models.user import User
from coachdesk.services import events
from coachdesk.services.balances import BalanceError, adjust_package_balance

router = APIRouter(prefix='/api/session-packages', tags=['session-packages'])


class PackageResponse(CamelModel):
    id: int
    client_id: int
    coach_id: int
    total_sessions: int
    remaining_sessions: int
    session_duration_minutes: int
    expires_at: UtcDatetime | None = None
    notes: str | None = None
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


class PackageAdjustmentResponse(CamelModel):
    id: int
    package_id: int
    adjustment: int
    previous_balance: int
    new_balance: int
    reason: str | None = None
    adjusted_by: int | None = None
    created_at: UtcDatetime | None = None


class PackageHistoryResponse(PackageResponse):
    adjustments: list[PackageAdjustmentResponse]


class PackageEnvelope(CamelModel):
    package: PackageResponse


class PackageListResponse(CamelModel):
    packages: list[PackageResponse]


class PackageHistoryListResponse(CamelModel):
    packages: list[PackageHistoryResponse]


class AdjustedPackageResponse(CamelModel):
    package: PackageResponse
    adjustment: PackageAdjustmentResponse


class CreatePackageRequest(CamelModel):
    client_id: int
    total_sessions: int
    session_duration_minutes: int
    expires_at: datetime | None = None
    notes: str | None = None

    @field_validator('total_sessions', 'session_duration_minutes')
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError('must be at least 1')
        return value


class UpdatePackageRequest(CamelModel):
    client_id: int | None = None
    expires_at: datetime | None = None
    notes: str | None = None


class AdjustPackageRequest(CamelModel):
    adjustment: int
    reason: str | None = None
    expires_at: datetime | None = None


def get_own_package(db: Session, package_id: int, coach: User) -> SessionPackage:
    package = db.get(SessionPackage, package_id)
    if package is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Package not found')
    if package.coach_id != coach.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='You can only manage your own packages')
    return package


def ensure_own_client(db: Session, client_id: int, coach: User) -> None:
    client = db.get(User, client_id)
    if client is None or client.coach_id != coach.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Client not found')


@router.get('', response_model=PackageListResponse)
def list_packages(
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        packages = db.query(SessionPackage).filter(
            SessionPackage.coach_id == coach.id,
        ).order_by(SessionPackage.created_at.desc(), SessionPackage.id.desc()).all()
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching session packages') from exc
    return PackageListResponse(packages=packages)


@router.post('', response_model=PackageEnvelope, status_code=status.HTTP_201_CREATED)
def create_package(
    data: CreatePackageRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        ensure_own_client(db, data.client_id, coach)
        package = SessionPackage(
            client_id=data.client_id,
            coach_id=coach.id,
            total_sessions=data.total_sessions,
            remaining_sessions=data.total_sessions,
            session_duration_minutes=data.session_duration_minutes,
            expires_at=to_storage(data.expires_at) if data.expires_at else None,
            notes=data.notes,
        )
        db.add(package)
        db.commit()
        db.refresh(package)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'creating session package') from exc

    events.emit('session_packages', events.INSERT, package.id, (coach.id, package.client_id))
    return PackageEnvelope(package=package)


@router.get('/history', response_model=PackageHistoryListResponse)
def list_package_history(
    client_id: int | None = Query(default=None, alias='clientId'),
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    """A client's packages, newest first, each with its adjustments newest first."""
    if client_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='clientId is required')

    try:
        packages = db.query(SessionPackage).filter(
            SessionPackage.coach_id == coach.id,
            SessionPackage.client_id == client_id,
        ).order_by(SessionPackage.created_at.desc(), SessionPackage.id.desc()).all()

        adjustments_by_package: dict[int, list[SessionPackageAdjustment]] = {package.id: [] for package in packages}
        if packages:
            adjustments = db.query(SessionPackageAdjustment).filter(
                SessionPackageAdjustment.package_id.in_(adjustments_by_package.keys()),
            ).order_by(SessionPackageAdjustment.created_at.desc(), SessionPackageAdjustment.id.desc()).all()
            for adjustment in adjustments:
                adjustments_by_package[adjustment.package_id].append(adjustment)
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching package history') from exc

    return PackageHistoryListResponse(
        packages=[
            PackageHistoryResponse(
                **PackageResponse.model_validate(package).model_dump(),
                adjustments=[PackageAdjustmentResponse.model_validate(item) for item in adjustments_by_package[package.id]],
            )
            for package in packages
        ],
    )


@router.patch('/{package_id}', response_model=PackageEnvelope)
def update_package(
    package_id: int,
    data: UpdatePackageRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No valid fields to update')

    try:
        package = get_own_package(db, package_id, coach)
        if 'client_id' in changes:
            ensure_own_client(db, data.client_id, coach)
            package.client_id = data.client_id
        if 'expires_at' in changes:
            package.expires_at = to_storage(data.expires_at) if data.expires_at else None
        if 'notes' in changes:
            package.notes = data.notes
        db.commit()
        db.refresh(package)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'updating session package') from exc

    events.emit('session_packages', events.UPDATE, package.id, (coach.id, package.client_id))
    return PackageEnvelope(package=package)


@router.delete('/{package_id}')
def delete_package(
    package_id: int,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        package = get_own_package(db, package_id, coach)
        client_id = package.client_id
        db.query(SessionPackageAdjustment).filter(
            SessionPackageAdjustment.package_id == package.id,
        ).delete(synchronize_session=False)
        db.delete(package)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'deleting session package') from exc

    events.emit('session_packages', events.DELETE, package_id, (coach.id, client_id))
    return {'success': True}


@router.post('/{package_id}/adjust', response_model=AdjustedPackageResponse)
def adjust_package(
    package_id: int,
    data: AdjustPackageRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        package = db.query(SessionPackage).filter(
            SessionPackage.id == package_id,
            SessionPackage.coach_id == coach.id,
        ).first()
        if not package:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Package not found')

        try:
            _change, adjustment = adjust_package_balance(
                db,
                package,
                data.adjustment,
                data.reason or None,
                coach.id,
                expires_at=to_storage(data.expires_at) if data.expires_at else None,
            )
        except BalanceError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        db.commit()
        db.refresh(package)
        db.refresh(adjustment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'adjusting session package') from exc

    events.emit('session_packages', events.UPDATE, package.id, (coach.id, package.client_id))
    return AdjustedPackageResponse(package=package, adjustment=adjustment)
