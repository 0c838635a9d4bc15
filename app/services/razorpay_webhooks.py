from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.errors import EnrichmentError, MalformedPayloadError
from app.core.subscription_status import SubscriptionStatus
from app.schemas.subscription import SubscriptionUpdate
from app.services.billing.razorpay import (
    extract_razorpay_subscription_id,
    extract_razorpay_user_id,
    normalize_razorpay_payment,
    normalize_razorpay_subscription,
    razorpay_order_entity,
    razorpay_payment_entity,
)
from app.services.billing.razorpay_client import get_razorpay_client, plan_period_days
from app.services.notifications import NotificationHub, notification_hub
from app.services.payment_recorder import create_payment, get_payment_by_external_id
from app.services.subscription_store import (
    get_subscription_by_external_id,
    update_next_billing_date_from_payments,
    upsert_subscription,
)
from app.services.webhook_support import (
    ack,
    payment_data,
    refresh_user_caches,
    subscription_data,
)

logger = logging.getLogger(__name__)

RazorpayHandler = Callable[[Session, dict[str, Any], NotificationHub], Awaitable[dict[str, Any]]]


async def _lookup(fetch: Callable[[str], dict[str, Any]], resource_id: Optional[str]) -> Optional[dict[str, Any]]:
    if not resource_id:
        return None
    try:
        return await run_in_threadpool(fetch, resource_id)
    except EnrichmentError as exc:
        logger.warning(
            "razorpay_lookup_failed resource=%s id=%s reason=%s",
            exc.resource,
            exc.resource_id,
            exc.reason,
        )
        return None


async def _trial_ended_at(update: SubscriptionUpdate) -> Optional[datetime]:
    """End of a cancelled trial: start plus one plan period, when the plan can be fetched."""
    if update.start_date is None or not update.plan_id:
        return None
    plan = await _lookup(get_razorpay_client().get_plan, update.plan_id)
    period_days = plan_period_days(plan)
    if not period_days:
        return None
    return update.start_date + timedelta(days=period_days)


def _subscription_handler(emitter: str) -> RazorpayHandler:
    async def handle(db: Session, payload: dict[str, Any], hub: NotificationHub) -> dict[str, Any]:
        event_type = payload.get("event")
        update = normalize_razorpay_subscription(payload)

        if update.status == SubscriptionStatus.INACTIVE.value and "ended_at" not in update.model_fields_set:
            ended_at = await _trial_ended_at(update)
            if ended_at is not None:
                update = update.with_overrides(ended_at=ended_at)

        result = upsert_subscription(db, update)
        if not result.success:
            return ack(event_type, result.message or "Subscription update failed", success=False)
        if result.ignored:
            return ack(event_type, result.message)

        subscription = result.data
        if event_type == "subscription.charged":
            _record_charge(db, payload, subscription)

        if subscription.user_id:
            await refresh_user_caches(subscription.user_id)
            getattr(hub, emitter)(subscription.user_id, subscription_data(subscription))
        else:
            logger.warning(
                "razorpay_subscription_without_user subscription_id=%s event=%s",
                subscription.subscription_id,
                event_type,
            )

        return ack(event_type, result.message)

    handle.__name__ = f"handle_{emitter}"
    return handle


def _record_charge(db: Session, payload: dict[str, Any], subscription) -> None:
    if not razorpay_payment_entity(payload).get("id"):
        return
    record = normalize_razorpay_payment(payload, status="captured")
    if not record.subscription_id:
        record.subscription_id = subscription.subscription_id
    if not record.user_id:
        record.user_id = subscription.user_id
    create_payment(db, record)


async def handle_payment_authorized(db: Session, payload: dict[str, Any], hub: NotificationHub) -> dict[str, Any]:
    event_type = payload.get("event")
    record = normalize_razorpay_payment(payload, status="authorized")
    client = get_razorpay_client()

    if not record.subscription_id and record.invoice_id:
        invoice = await _lookup(client.get_invoice, record.invoice_id)
        if invoice and invoice.get("subscription_id"):
            record.subscription_id = str(invoice["subscription_id"])

    subscription = get_subscription_by_external_id(db, record.subscription_id)
    if subscription is not None:
        record.user_id = record.user_id or subscription.user_id
        record.plan_id = record.plan_id or subscription.plan_id

    result = create_payment(db, record)
    if not result.success:
        return ack(event_type, result.message or "Payment record failed", success=False)

    if subscription is not None and record.plan_id:
        plan = await _lookup(client.get_plan, record.plan_id)
        period_days = plan_period_days(plan)
        if period_days:
            update_next_billing_date_from_payments(db, subscription.subscription_id, period_days)

    return ack(event_type, result.message)


async def handle_payment_failed(db: Session, payload: dict[str, Any], hub: NotificationHub) -> dict[str, Any]:
    event_type = payload.get("event")
    record = normalize_razorpay_payment(payload, status="failed")

    subscription = get_subscription_by_external_id(db, record.subscription_id)
    if subscription is not None and not record.user_id:
        record.user_id = subscription.user_id

    result = create_payment(db, record)
    if not result.success:
        return ack(event_type, result.message or "Payment record failed", success=False)

    if record.user_id:
        hub.emit_payment_failed(record.user_id, payment_data(result.data))
    return ack(event_type, result.message)


async def _resolve_captured_user(db: Session, payload: dict[str, Any], subscription_id: Optional[str], payment_id: str) -> Optional[str]:
    user_id = extract_razorpay_user_id(payload)
    if user_id:
        return user_id

    subscription = get_subscription_by_external_id(db, subscription_id)
    if subscription is not None and subscription.user_id:
        return subscription.user_id

    remote = await _lookup(get_razorpay_client().get_subscription, subscription_id)
    notes = (remote or {}).get("notes")
    if isinstance(notes, dict) and notes.get("user_id"):
        return str(notes["user_id"])

    payment = get_payment_by_external_id(db, payment_id)
    if payment is not None and payment.user_id:
        return payment.user_id
    return None


async def handle_payment_captured(db: Session, payload: dict[str, Any], hub: NotificationHub) -> dict[str, Any]:
    event_type = payload.get("event")
    record = normalize_razorpay_payment(payload, status="captured")

    user_id = await _resolve_captured_user(db, payload, record.subscription_id, record.payment_id)
    if user_id and not record.user_id:
        record.user_id = user_id

    result = create_payment(db, record)
    if not result.success:
        return ack(event_type, result.message or "Payment record failed", success=False)

    if user_id:
        await refresh_user_caches(user_id)
        hub.emit_payment_success(user_id, payment_data(result.data))
    else:
        logger.warning("razorpay_payment_without_user payment_id=%s", record.payment_id)

    return ack(event_type, result.message)


async def handle_order_paid(db: Session, payload: dict[str, Any], hub: NotificationHub) -> dict[str, Any]:
    event_type = payload.get("event")
    order = razorpay_order_entity(payload)
    payment = razorpay_payment_entity(payload)
    order_notes = order.get("notes") if isinstance(order.get("notes"), dict) else {}

    subscription_id = extract_razorpay_subscription_id(payload) or order_notes.get("subscription_id")
    user_id = extract_razorpay_user_id(payload)
    if not user_id:
        subscription = get_subscription_by_external_id(db, subscription_id)
        user_id = subscription.user_id if subscription is not None else None

    if not user_id:
        logger.warning("razorpay_order_without_user order_id=%s", order.get("id"))
        return ack(event_type, "Order paid without resolvable user", success=False)

    await refresh_user_caches(user_id)
    hub.emit_payment_success(
        user_id,
        {
            "order_id": order.get("id"),
            "payment_id": payment.get("id"),
            "subscription_id": subscription_id,
            "amount": order.get("amount_paid") or order.get("amount"),
            "currency": order.get("currency"),
            "status": "paid",
        },
    )
    return ack(event_type, "Order paid")


RAZORPAY_HANDLERS: dict[str, RazorpayHandler] = {
    "subscription.authenticated": _subscription_handler("emit_subscription_created"),
    "subscription.activated": _subscription_handler("emit_subscription_activated"),
    "subscription.charged": _subscription_handler("emit_subscription_charged"),
    "subscription.cancelled": _subscription_handler("emit_subscription_cancelled"),
    "subscription.resumed": _subscription_handler("emit_subscription_resumed"),
    "subscription.pending": _subscription_handler("emit_subscription_pending"),
    "subscription.halted": _subscription_handler("emit_subscription_halted"),
    "subscription.completed": _subscription_handler("emit_subscription_expired"),
    "payment.authorized": handle_payment_authorized,
    "payment.failed": handle_payment_failed,
    "payment.captured": handle_payment_captured,
    "order.paid": handle_order_paid,
}


async def process_razorpay_event(
    db: Session,
    payload: dict[str, Any],
    hub: Optional[NotificationHub] = None,
) -> dict[str, Any]:
    """
    Dispatch one verified Razorpay webhook. Malformed payloads and database
    failures are acknowledged with success false; unexpected errors propagate.
    """
    hub = hub or notification_hub
    event_type = str(payload.get("event") or "")
    logger.info(
        "razorpay_webhook_received event=%s subscription_id=%s",
        event_type,
        extract_razorpay_subscription_id(payload),
    )

    handler = RAZORPAY_HANDLERS.get(event_type)
    if handler is None:
        logger.info("razorpay_webhook_unhandled event=%s", event_type)
        return ack(event_type, f"Unhandled event type: {event_type}")

    try:
        return await handler(db, payload, hub)
    except MalformedPayloadError as exc:
        logger.warning("razorpay_webhook_malformed event=%s reason=%s", event_type, exc.reason)
        return ack(event_type, exc.reason, success=False)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("razorpay_webhook_db_error event=%s", event_type)
        return ack(event_type, "Database error", success=False)
