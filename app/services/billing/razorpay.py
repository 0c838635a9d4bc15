from __future__ import annotations

from datetime import datetime
from typing import Any

from app.core.errors import MalformedPayloadError
from app.core.subscription_status import (
    BillingProvider,
    SubscriptionStatus,
    map_razorpay_status,
)
from app.schemas.subscription import PaymentRecord, SubscriptionUpdate
from app.services.billing.dates import first_datetime, parse_datetime, utcnow

PROVIDER = BillingProvider.RAZORPAY.value

# Event types that assert the resulting status regardless of entity fields.
EVENT_STATUS_OVERRIDES: dict[str, SubscriptionStatus] = {
    "subscription.authenticated": SubscriptionStatus.AUTHENTICATED,
    "subscription.activated": SubscriptionStatus.ACTIVE,
    "subscription.resumed": SubscriptionStatus.ACTIVE,
    "subscription.pending": SubscriptionStatus.PENDING,
    "subscription.halted": SubscriptionStatus.HALTED,
    "subscription.cancelled": SubscriptionStatus.CANCELLED,
    "subscription.completed": SubscriptionStatus.EXPIRED,
}


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    block = (payload.get("payload") or {}).get(name) or {}
    entity = block.get("entity") if isinstance(block, dict) else None
    return entity if isinstance(entity, dict) else {}


def _notes(entity: dict[str, Any]) -> dict[str, Any]:
    notes = entity.get("notes")
    # Razorpay serializes empty notes as [] rather than {}.
    return notes if isinstance(notes, dict) else {}


def _as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _truthy_note(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def extract_razorpay_subscription_id(payload: dict[str, Any]) -> str | None:
    candidates = (
        _entity(payload, "subscription").get("id"),
        _entity(payload, "payment").get("subscription_id"),
        _entity(payload, "invoice").get("subscription_id"),
    )
    for candidate in candidates:
        if candidate:
            return str(candidate)
    return None


def extract_razorpay_user_id(payload: dict[str, Any]) -> str | None:
    for name in ("subscription", "payment", "order"):
        user_id = _notes(_entity(payload, name)).get("user_id")
        if user_id:
            return str(user_id)
    return None


def razorpay_event_time(payload: dict[str, Any]) -> datetime | None:
    return parse_datetime(payload.get("created_at"))


def normalize_razorpay_subscription(payload: dict[str, Any]) -> SubscriptionUpdate:
    event_type = str(payload.get("event") or "")
    subscription_id = extract_razorpay_subscription_id(payload)
    if not subscription_id:
        raise MalformedPayloadError(PROVIDER, f"no subscription id in {event_type or 'event'}")

    entity = _entity(payload, "subscription")
    notes = _notes(entity)
    now = utcnow()
    event_at = razorpay_event_time(payload)

    start_date = parse_datetime(entity.get("start_at"))
    end_date = parse_datetime(entity.get("end_at"))
    ended_at = parse_datetime(entity.get("ended_at"))
    next_billing_date = first_datetime(
        entity.get("next_billing_at"),
        entity.get("charge_at"),
        entity.get("current_end"),
    )

    status = map_razorpay_status(entity.get("status"))
    expiry = ended_at or end_date
    if expiry is not None and expiry < now:
        status = SubscriptionStatus.EXPIRED
    status = EVENT_STATUS_OVERRIDES.get(event_type, status)

    fields: dict[str, Any] = {
        "subscription_id": subscription_id,
        "status": status,
        "provider": PROVIDER,
        "metadata": {
            "razorpay_event": event_type or None,
            "razorpay_plan_id": entity.get("plan_id"),
            "razorpay_customer_id": entity.get("customer_id"),
            "razorpay_offer_id": entity.get("offer_id"),
            "full_webhook_payload": payload,
        },
    }

    optional = {
        "user_id": _as_str(notes.get("user_id")),
        "plan_id": _as_str(entity.get("plan_id")),
        "start_date": start_date,
        "end_date": end_date,
        "next_billing_date": next_billing_date,
        "ended_at": ended_at,
        "event_at": event_at,
    }
    fields.update({key: value for key, value in optional.items() if value is not None})

    if "onTrial" in notes:
        is_trial = _truthy_note(notes.get("onTrial"))
        fields["is_trial"] = is_trial
        if is_trial and start_date is not None:
            # Trial subscriptions start charging when the trial ends.
            fields["trial_end_date"] = start_date

    if status == SubscriptionStatus.CANCELLED:
        fields["user_cancelled"] = True
        fields["cancelled_at"] = event_at or now
        trial_end = fields.get("trial_end_date")
        if fields.get("is_trial") and trial_end is not None and trial_end > now:
            fields["status"] = SubscriptionStatus.INACTIVE

    return SubscriptionUpdate(**fields)


def normalize_razorpay_payment(
    payload: dict[str, Any],
    status: str | None = None,
) -> PaymentRecord:
    entity = _entity(payload, "payment")
    payment_id = entity.get("id")
    if not payment_id:
        raise MalformedPayloadError(PROVIDER, f"no payment id in {payload.get('event') or 'event'}")

    amount = entity.get("amount")
    return PaymentRecord(
        payment_id=str(payment_id),
        status=status or str(entity.get("status") or "unknown"),
        amount=str(amount) if amount is not None else None,
        currency=entity.get("currency"),
        invoice_id=_as_str(entity.get("invoice_id")),
        plan_id=_as_str(entity.get("plan_id")),
        user_id=_as_str(_notes(entity).get("user_id")),
        subscription_id=entity.get("subscription_id") or "",
        metadata=entity,
    )


def razorpay_payment_entity(payload: dict[str, Any]) -> dict[str, Any]:
    return _entity(payload, "payment")


def razorpay_order_entity(payload: dict[str, Any]) -> dict[str, Any]:
    return _entity(payload, "order")
