"""
Web push delivery.

Best effort: a failed push is logged and never fails the caller's write.
Subscriptions the push service reports as gone (404/410) are deleted.
"""

import json
import logging

from pywebpush import WebPushException, webpush
from sqlalchemy.orm import Session

from coachdesk.core import config
from coachdesk.models.messaging import PushSubscription

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50


def message_preview(content: str, content_type: str) -> str:
    if content_type == "text":
        if len(content) > PREVIEW_LENGTH:
            return content[:PREVIEW_LENGTH] + "..."
        return content
    if content_type == "gif":
        return "Sent a GIF"
    return f"Sent {content_type}"


def send_push_to_users(db: Session, user_ids: list[int], title: str, body: str, url: str) -> dict[str, int]:
    """Send one notification to every subscribed device of ``user_ids``.

    Returns ``sent``/``failed``/``expired`` counts.
    """
    counts = {"sent": 0, "failed": 0, "expired": 0}
    if not user_ids:
        return counts
    if not config.push_configured():
        logger.warning("Push notifications not configured; skipping send")
        return counts

    subscriptions = db.query(PushSubscription).filter(PushSubscription.user_id.in_(user_ids)).all()
    if not subscriptions:
        logger.info("No push subscriptions found for %d recipient(s)", len(user_ids))
        return counts

    payload = json.dumps({"title": title, "body": body, "url": url})

    for subscription in subscriptions:
        try:
            webpush(
                subscription_info={
                    "endpoint": subscription.endpoint,
                    "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
                },
                data=payload,
                vapid_private_key=config.VAPID_PRIVATE_KEY,
                vapid_claims={"sub": config.VAPID_CLAIMS_EMAIL},
            )
            counts["sent"] += 1
        except WebPushException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            if status_code in (404, 410):
                logger.info("Push subscription %s expired; deleting", subscription.id)
                db.delete(subscription)
                db.commit()
                counts["expired"] += 1
            else:
                logger.error("Push failed for subscription %s: %s", subscription.id, exc)
                counts["failed"] += 1

    return counts
