import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from coachdesk.models.subscription import ClientSubscription, SubscriptionAdjustment
from coachdesk.routes.subscription_routes import (
    AdjustedSubscriptionResponse,
    CreateSubscriptionRequest,
    UpdateSubscriptionRequest,
    create_subscription,
    delete_subscription,
    update_subscription,
)


def make_subscription(db, coach, client_user, **fields):
    request = CreateSubscriptionRequest(client_id=client_user.id, **fields)
    return create_subscription(data=request, coach=coach, db=db).subscription


def test_hybrid_subscription_opens_with_monthly_allowance(db, coach, client_user) -> None:
    subscription = make_subscription(
        db, coach, client_user, subscription_type='hybrid', monthly_sessions=4, session_duration_minutes=45,
    )

    assert subscription.available_sessions == 4


def test_opening_balance_is_capped(db, coach, client_user) -> None:
    subscription = make_subscription(
        db, coach, client_user,
        subscription_type='hybrid', monthly_sessions=4, session_duration_minutes=45, available_sessions=20,
    )

    assert subscription.available_sessions == 8


def test_unlimited_subscription_ignores_hybrid_fields(db, coach, client_user) -> None:
    subscription = make_subscription(db, coach, client_user, subscription_type='unlimited', monthly_sessions=4)

    assert subscription.monthly_sessions is None
    assert subscription.available_sessions is None


def test_hybrid_subscription_requires_allowance() -> None:
    with pytest.raises(ValidationError):
        CreateSubscriptionRequest(client_id=1, subscription_type='hybrid')


def test_adjustment_is_capped_and_reported(db, coach, client_user) -> None:
    subscription = make_subscription(
        db, coach, client_user, subscription_type='hybrid', monthly_sessions=4, session_duration_minutes=45,
    )

    result = update_subscription(
        subscription_id=subscription.id,
        data=UpdateSubscriptionRequest(adjustment=10, reason='Rollover'),
        coach=coach,
        db=db,
    )

    assert isinstance(result, AdjustedSubscriptionResponse)
    assert result.subscription.available_sessions == 8
    assert result.adjustment.requested == 10
    assert result.adjustment.applied == 4
    assert result.adjustment.was_capped is True
    audit = db.query(SubscriptionAdjustment).one()
    assert audit.previous_balance == 4
    assert audit.new_balance == 8


def test_adjustment_floors_at_zero(db, coach, client_user) -> None:
    subscription = make_subscription(
        db, coach, client_user, subscription_type='hybrid', monthly_sessions=4, session_duration_minutes=45,
    )

    result = update_subscription(
        subscription_id=subscription.id,
        data=UpdateSubscriptionRequest(adjustment=-10),
        coach=coach,
        db=db,
    )

    assert result.subscription.available_sessions == 0
    assert result.adjustment.applied == -4


def test_unlimited_subscription_cannot_be_adjusted(db, coach, client_user) -> None:
    subscription = make_subscription(db, coach, client_user, subscription_type='unlimited')

    with pytest.raises(HTTPException) as exception_info:
        update_subscription(
            subscription_id=subscription.id,
            data=UpdateSubscriptionRequest(adjustment=1),
            coach=coach,
            db=db,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Can only adjust sessions for hybrid subscriptions'


def test_monthly_sessions_only_for_hybrid(db, coach, client_user) -> None:
    subscription = make_subscription(db, coach, client_user, subscription_type='unlimited')

    with pytest.raises(HTTPException) as exception_info:
        update_subscription(
            subscription_id=subscription.id,
            data=UpdateSubscriptionRequest(monthly_sessions=6),
            coach=coach,
            db=db,
        )

    assert exception_info.value.status_code == 400


def test_field_update_and_delete(db, coach, client_user) -> None:
    subscription = make_subscription(
        db, coach, client_user, subscription_type='hybrid', monthly_sessions=4, session_duration_minutes=45,
    )
    update_subscription(subscription_id=subscription.id, data=UpdateSubscriptionRequest(adjustment=-1), coach=coach, db=db)

    updated = update_subscription(
        subscription_id=subscription.id,
        data=UpdateSubscriptionRequest(monthly_sessions=6, is_active=False),
        coach=coach,
        db=db,
    ).subscription

    assert updated.monthly_sessions == 6
    assert updated.is_active is False

    assert delete_subscription(subscription_id=subscription.id, coach=coach, db=db) == {'success': True}
    assert db.query(ClientSubscription).count() == 0
    assert db.query(SubscriptionAdjustment).count() == 0


def test_other_coach_cannot_touch_subscription(db, coach, client_user, make_user) -> None:
    subscription = make_subscription(db, coach, client_user, subscription_type='unlimited')
    other_coach = make_user('Other Coach', role='coach')

    with pytest.raises(HTTPException) as exception_info:
        delete_subscription(subscription_id=subscription.id, coach=other_coach, db=db)

    assert exception_info.value.status_code == 404


def test_lowering_monthly_sessions_recaps_the_balance(db, coach, client_user) -> None:
    subscription = make_subscription(
        db, coach, client_user, subscription_type='hybrid', monthly_sessions=4, session_duration_minutes=45,
    )
    update_subscription(subscription_id=subscription.id, data=UpdateSubscriptionRequest(adjustment=4), coach=coach, db=db)

    updated = update_subscription(
        subscription_id=subscription.id,
        data=UpdateSubscriptionRequest(monthly_sessions=2),
        coach=coach,
        db=db,
    ).subscription

    assert updated.monthly_sessions == 2
    assert updated.available_sessions == 4


def test_raising_monthly_sessions_keeps_the_balance(db, coach, client_user) -> None:
    subscription = make_subscription(
        db, coach, client_user, subscription_type='hybrid', monthly_sessions=4, session_duration_minutes=45,
    )

    updated = update_subscription(
        subscription_id=subscription.id,
        data=UpdateSubscriptionRequest(monthly_sessions=10),
        coach=coach,
        db=db,
    ).subscription

    assert updated.available_sessions == 4
