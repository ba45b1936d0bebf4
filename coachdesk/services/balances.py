"""
Session balance arithmetic for packages and hybrid subscriptions.

The two kinds behave differently on purpose: a package refuses any
adjustment that would take it below zero, while a hybrid subscription is
clamped to ``[0, 2 * monthly_sessions]`` without complaint. Both write an
immutable audit row in the caller's transaction; the caller commits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from coachdesk.models.package import SessionPackage, SessionPackageAdjustment
from coachdesk.models.subscription import HYBRID_SUBSCRIPTION, ClientSubscription, SubscriptionAdjustment

logger = logging.getLogger(__name__)

SUBSCRIPTION_CAP_MULTIPLIER = 2


class BalanceError(ValueError):
    """The requested adjustment breaks a balance rule."""


@dataclass(frozen=True)
class BalanceChange:
    previous_balance: int
    new_balance: int
    requested: int
    applied: int
    was_capped: bool


def _validate_delta(delta) -> None:
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise BalanceError('adjustment must be a non-zero number')


def adjust_package_balance(
    db: Session,
    package: SessionPackage,
    delta: int,
    reason: str | None,
    actor_id: int | None,
    expires_at: datetime | None = None,
) -> tuple[BalanceChange, SessionPackageAdjustment]:
    _validate_delta(delta)

    previous = package.remaining_sessions
    new_balance = previous + delta
    if new_balance < 0:
        raise BalanceError('Cannot reduce balance below 0')

    package.remaining_sessions = new_balance
    if delta > 0:
        package.total_sessions = package.total_sessions + delta
    if expires_at is not None:
        package.expires_at = expires_at

    adjustment = SessionPackageAdjustment(
        package_id=package.id,
        adjustment=delta,
        previous_balance=previous,
        new_balance=new_balance,
        reason=reason,
        adjusted_by=actor_id,
    )
    db.add(adjustment)
    logger.info('Package %s balance %s -> %s (%+d)', package.id, previous, new_balance, delta)

    return BalanceChange(previous, new_balance, delta, delta, False), adjustment


def subscription_balance_cap(subscription: ClientSubscription) -> int:
    return (subscription.monthly_sessions or 0) * SUBSCRIPTION_CAP_MULTIPLIER


def adjust_subscription_balance(
    db: Session,
    subscription: ClientSubscription,
    delta: int,
    reason: str | None,
    actor_id: int | None,
) -> tuple[BalanceChange, SubscriptionAdjustment]:
    _validate_delta(delta)
    if subscription.subscription_type != HYBRID_SUBSCRIPTION:
        raise BalanceError('Can only adjust sessions for hybrid subscriptions')

    previous = subscription.available_sessions or 0
    requested_balance = previous + delta
    new_balance = min(max(requested_balance, 0), subscription_balance_cap(subscription))

    subscription.available_sessions = new_balance

    change = BalanceChange(
        previous_balance=previous,
        new_balance=new_balance,
        requested=delta,
        applied=new_balance - previous,
        was_capped=new_balance != requested_balance,
    )
    adjustment = SubscriptionAdjustment(
        subscription_id=subscription.id,
        requested=change.requested,
        applied=change.applied,
        previous_balance=previous,
        new_balance=new_balance,
        was_capped=change.was_capped,
        reason=reason,
        adjusted_by=actor_id,
    )
    db.add(adjustment)
    if change.was_capped:
        logger.info('Subscription %s adjustment %+d capped to %+d', subscription.id, delta, change.applied)

    return change, adjustment
