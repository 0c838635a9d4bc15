from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.core.errors import MalformedPayloadError
from app.core.subscription_status import SubscriptionStatus
from app.services.billing.revenuecat import (
    extract_revenuecat_subscription_id,
    extract_revenuecat_user_id,
    normalize_revenuecat,
    revenuecat_event_type,
)
from app.services.notifications import NotificationHub, notification_hub
from app.services.subscription_store import upsert_subscription
from app.services.webhook_support import ack, refresh_user_caches, subscription_data

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = {
    "INITIAL_PURCHASE",
    "RENEWAL",
    "CANCELLATION",
    "UNCANCELLATION",
    "NON_RENEWING_PURCHASE",
    "EXPIRATION",
    "BILLING_ISSUE",
    "PRODUCT_CHANGE",
    "SUBSCRIPTION_PAUSED",
}

# Stream event announced for the stored status after an update.
STATUS_EMITTERS = {
    SubscriptionStatus.ACTIVE.value: "emit_subscription_activated",
    SubscriptionStatus.PENDING.value: "emit_subscription_pending",
    SubscriptionStatus.HALTED.value: "emit_subscription_halted",
    SubscriptionStatus.CANCELLED.value: "emit_subscription_cancelled",
    SubscriptionStatus.INACTIVE.value: "emit_subscription_cancelled",
    SubscriptionStatus.EXPIRED.value: "emit_subscription_expired",
}

# Event types whose announcement is more specific than the status alone.
EVENT_EMITTERS = {
    "RENEWAL": "emit_subscription_charged",
    "UNCANCELLATION": "emit_subscription_resumed",
}


def _emitter_for(event_type: str, status: str) -> Optional[str]:
    if status == SubscriptionStatus.ACTIVE.value and event_type in EVENT_EMITTERS:
        return EVENT_EMITTERS[event_type]
    return STATUS_EMITTERS.get(status)


async def handle_revenuecat_event(db: Session, payload: dict[str, Any], hub: NotificationHub) -> dict[str, Any]:
    event_type = revenuecat_event_type(payload)
    update = normalize_revenuecat(payload)

    result = upsert_subscription(db, update)
    if not result.success:
        return ack(event_type, result.message or "Subscription update failed", success=False)
    if result.ignored:
        return ack(event_type, result.message)

    subscription = result.data
    user_id = subscription.user_id
    if not user_id:
        logger.warning(
            "revenuecat_subscription_without_user subscription_id=%s event=%s",
            subscription.subscription_id,
            event_type,
        )
        return ack(event_type, result.message)

    await refresh_user_caches(user_id)

    data = subscription_data(subscription)
    if result.created and event_type == "INITIAL_PURCHASE":
        hub.emit_subscription_created(user_id, data)

    emitter = _emitter_for(event_type, subscription.status)
    if emitter:
        getattr(hub, emitter)(user_id, data)
    else:
        logger.info(
            "revenuecat_no_stream_event subscription_id=%s status=%s",
            subscription.subscription_id,
            subscription.status,
        )

    return ack(event_type, result.message)


async def process_revenuecat_event(
    db: Session,
    payload: dict[str, Any],
    hub: Optional[NotificationHub] = None,
) -> dict[str, Any]:
    hub = hub or notification_hub
    event_type = revenuecat_event_type(payload)
    logger.info(
        "revenuecat_webhook_received event=%s subscription_id=%s user_id=%s",
        event_type,
        extract_revenuecat_subscription_id(payload),
        extract_revenuecat_user_id(payload),
    )

    if event_type == "TEST":
        return ack(event_type, "Test event received")

    if event_type not in HANDLED_EVENT_TYPES:
        logger.info("revenuecat_webhook_unhandled event=%s", event_type)
        return ack(event_type, f"Unhandled event type: {event_type}")

    try:
        return await handle_revenuecat_event(db, payload, hub)
    except MalformedPayloadError as exc:
        logger.warning("revenuecat_webhook_malformed event=%s reason=%s", event_type, exc.reason)
        return ack(event_type, exc.reason, success=False)
