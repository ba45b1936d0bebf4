from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import get_current_coach
from coachdesk.core.errors import database_error
from coachdesk.core.schemas import CamelModel, UtcDatetime
from coachdesk.database import get_db
from coachdesk.models.subscription import (
    HYBRID_SUBSCRIPTION,
    SUBSCRIPTION_TYPES,
    ClientSubscription,
    SubscriptionAdjustment,
)
from coachdesk.models.user import User
from coachdesk.services import events
from coachdesk.services.balances import BalanceError, adjust_subscription_balance, subscription_balance_cap

router = APIRouter(prefix='/api/subscriptions', tags=['subscriptions'])


class SubscriptionResponse(CamelModel):
    id: int
    client_id: int
    coach_id: int
    subscription_type: str
    monthly_sessions: int | None = None
    available_sessions: int | None = None
    session_duration_minutes: int | None = None
    is_active: bool
    notes: str | None = None
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


class SubscriptionEnvelope(CamelModel):
    subscription: SubscriptionResponse


class SubscriptionListResponse(CamelModel):
    subscriptions: list[SubscriptionResponse]


class AdjustmentSummary(CamelModel):
    requested: int
    applied: int
    was_capped: bool


class AdjustedSubscriptionResponse(CamelModel):
    subscription: SubscriptionResponse
    adjustment: AdjustmentSummary


class CreateSubscriptionRequest(CamelModel):
    client_id: int
    subscription_type: str
    monthly_sessions: int | None = None
    available_sessions: int | None = None
    session_duration_minutes: int | None = None
    notes: str | None = None

    @field_validator('subscription_type')
    @classmethod
    def validate_subscription_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SUBSCRIPTION_TYPES:
            raise ValueError('subscriptionType must be unlimited or hybrid')
        return normalized

    @model_validator(mode='after')
    def validate_hybrid_fields(self):
        if self.subscription_type == HYBRID_SUBSCRIPTION:
            if not self.monthly_sessions or not self.session_duration_minutes:
                raise ValueError('Hybrid subscriptions require monthlySessions and sessionDurationMinutes')
            if self.available_sessions is not None and self.available_sessions < 0:
                raise ValueError('availableSessions cannot be negative')
        return self


class UpdateSubscriptionRequest(CamelModel):
    """Either a balance ``adjustment`` (with an optional reason) or field updates."""

    adjustment: int | None = None
    reason: str | None = None
    monthly_sessions: int | None = None
    session_duration_minutes: int | None = None
    is_active: bool | None = None
    notes: str | None = None


def get_own_subscription(db: Session, subscription_id: int, coach: User) -> ClientSubscription:
    subscription = db.get(ClientSubscription, subscription_id)
    if subscription is None or subscription.coach_id != coach.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Subscription not found')
    return subscription


@router.get('', response_model=SubscriptionListResponse)
def list_subscriptions(
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        subscriptions = db.query(ClientSubscription).filter(
            ClientSubscription.coach_id == coach.id,
        ).order_by(ClientSubscription.created_at.desc(), ClientSubscription.id.desc()).all()
    except SQLAlchemyError as exc:
        raise database_error(exc, 'fetching subscriptions') from exc
    return SubscriptionListResponse(subscriptions=subscriptions)


@router.post('', response_model=SubscriptionEnvelope, status_code=status.HTTP_201_CREATED)
def create_subscription(
    data: CreateSubscriptionRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    is_hybrid = data.subscription_type == HYBRID_SUBSCRIPTION

    try:
        client = db.get(User, data.client_id)
        if client is None or client.coach_id != coach.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Client not found')

        subscription = ClientSubscription(
            client_id=data.client_id,
            coach_id=coach.id,
            subscription_type=data.subscription_type,
            monthly_sessions=data.monthly_sessions if is_hybrid else None,
            session_duration_minutes=data.session_duration_minutes if is_hybrid else None,
            is_active=True,
            notes=data.notes or None,
        )
        if is_hybrid:
            opening = data.available_sessions if data.available_sessions is not None else data.monthly_sessions
            subscription.available_sessions = min(opening, subscription_balance_cap(subscription))
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'creating subscription') from exc

    events.emit('client_subscriptions', events.INSERT, subscription.id, (coach.id, subscription.client_id))
    return SubscriptionEnvelope(subscription=subscription)


@router.patch('/{subscription_id}', response_model=SubscriptionEnvelope | AdjustedSubscriptionResponse)
def update_subscription(
    subscription_id: int,
    data: UpdateSubscriptionRequest,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        subscription = get_own_subscription(db, subscription_id, coach)

        if 'adjustment' in data.model_fields_set:
            if data.adjustment is None:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='adjustment must be a non-zero number')
            try:
                change, _adjustment = adjust_subscription_balance(
                    db, subscription, data.adjustment, data.reason or None, coach.id,
                )
            except BalanceError as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

            db.commit()
            db.refresh(subscription)
            result = AdjustedSubscriptionResponse(
                subscription=subscription,
                adjustment=AdjustmentSummary(
                    requested=change.requested,
                    applied=change.applied,
                    was_capped=change.was_capped,
                ),
            )
        else:
            is_hybrid = subscription.subscription_type == HYBRID_SUBSCRIPTION
            if data.monthly_sessions is not None:
                if not is_hybrid:
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail='Can only set monthly sessions for hybrid subscriptions',
                    )
                subscription.monthly_sessions = data.monthly_sessions
                subscription.available_sessions = min(
                    subscription.available_sessions or 0, subscription_balance_cap(subscription),
                )
            if data.session_duration_minutes is not None:
                if not is_hybrid:
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail='Can only set session duration for hybrid subscriptions',
                    )
                subscription.session_duration_minutes = data.session_duration_minutes
            if data.is_active is not None:
                subscription.is_active = data.is_active
            if 'notes' in data.model_fields_set:
                subscription.notes = data.notes

            db.commit()
            db.refresh(subscription)
            result = SubscriptionEnvelope(subscription=subscription)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'updating subscription') from exc

    events.emit('client_subscriptions', events.UPDATE, subscription.id, (coach.id, subscription.client_id))
    return result


@router.delete('/{subscription_id}')
def delete_subscription(
    subscription_id: int,
    coach: User = Depends(get_current_coach),
    db: Session = Depends(get_db),
):
    try:
        subscription = get_own_subscription(db, subscription_id, coach)
        client_id = subscription.client_id
        db.query(SubscriptionAdjustment).filter(
            SubscriptionAdjustment.subscription_id == subscription.id,
        ).delete(synchronize_session=False)
        db.delete(subscription)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'deleting subscription') from exc

    events.emit('client_subscriptions', events.DELETE, subscription_id, (coach.id, client_id))
    return {'success': True}
