from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coachdesk.auth.dependencies import get_current_user
from coachdesk.core import config
from coachdesk.core.errors import database_error
from coachdesk.database import get_db
from coachdesk.models.messaging import PushSubscription
from coachdesk.models.user import User

router = APIRouter(prefix='/api/push', tags=['push'])


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class SubscribeRequest(BaseModel):
    endpoint: str
    keys: SubscriptionKeys


class UnsubscribeRequest(BaseModel):
    endpoint: str


@router.get('/vapid-key')
def get_vapid_key():
    if not config.VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail='VAPID key not configured')
    return {'publicKey': config.VAPID_PUBLIC_KEY}


@router.post('/subscribe')
def subscribe(
    data: SubscribeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Register a browser endpoint; re-subscribing an endpoint moves it to the caller."""
    if not data.endpoint.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid subscription')

    try:
        subscription = db.query(PushSubscription).filter(PushSubscription.endpoint == data.endpoint).first()
        if subscription is None:
            subscription = PushSubscription(endpoint=data.endpoint)
            db.add(subscription)
        subscription.user_id = current_user.id
        subscription.p256dh = data.keys.p256dh
        subscription.auth = data.keys.auth
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'saving push subscription') from exc

    return {'success': True}


@router.post('/unsubscribe')
def unsubscribe(
    data: UnsubscribeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not data.endpoint.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Endpoint required')

    try:
        db.query(PushSubscription).filter(
            PushSubscription.user_id == current_user.id,
            PushSubscription.endpoint == data.endpoint,
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_error(exc, 'removing push subscription') from exc

    return {'success': True}
