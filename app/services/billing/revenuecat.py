from __future__ import annotations

from typing import Any

from app.core.errors import MalformedPayloadError
from app.core.subscription_status import (
    BillingProvider,
    SubscriptionStatus,
    map_revenuecat_status,
)
from app.schemas.subscription import SubscriptionUpdate
from app.services.billing.dates import first_datetime, parse_datetime, utcnow

PROVIDER = BillingProvider.REVENUECAT.value

# Event types whose meaning outranks any entitlement expiry in the payload.
EVENT_STATUS_OVERRIDES: dict[str, str] = {
    "CANCELLATION": "CANCELLED",
    "EXPIRATION": "EXPIRED",
    "BILLING_ISSUE": "BILLING_ISSUE",
    "SUBSCRIPTION_PAUSED": "PAUSED",
}


def revenuecat_event(payload: dict[str, Any]) -> dict[str, Any]:
    event = payload.get("event")
    return event if isinstance(event, dict) else payload


def revenuecat_event_type(payload: dict[str, Any]) -> str:
    event = revenuecat_event(payload)
    return str(event.get("type") or payload.get("type") or "UNKNOWN").upper()


def extract_revenuecat_subscription_id(payload: dict[str, Any]) -> str | None:
    # original_transaction_id survives renewals; transaction_id changes per charge.
    event = revenuecat_event(payload)
    for key in ("original_transaction_id", "transaction_id", "id", "subscription_id"):
        value = event.get(key)
        if value:
            return str(value)
    return None


def extract_revenuecat_user_id(payload: dict[str, Any]) -> str | None:
    event = revenuecat_event(payload)
    customer_info = event.get("customer_info") or {}
    candidates = (
        event.get("app_user_id"),
        customer_info.get("app_user_id") if isinstance(customer_info, dict) else None,
        payload.get("app_user_id"),
    )
    for candidate in candidates:
        if candidate:
            return str(candidate)
    return None


def _first_entitlement(event: dict[str, Any]) -> dict[str, Any]:
    entitlements = event.get("entitlements")
    if isinstance(entitlements, dict) and entitlements:
        first = next(iter(entitlements.values()))
        return first if isinstance(first, dict) else {}
    return {}


def _product_id(event: dict[str, Any]) -> str | None:
    product_ids = event.get("product_ids") or []
    entitlements = event.get("entitlements")
    entitlement_ids = event.get("entitlement_ids") or []
    candidates = (
        event.get("product_id"),
        product_ids[0] if product_ids else None,
        next(iter(entitlements)) if isinstance(entitlements, dict) and entitlements else None,
        entitlement_ids[0] if entitlement_ids else None,
    )
    for candidate in candidates:
        if candidate:
            return str(candidate)
    return None


def normalize_revenuecat(payload: dict[str, Any]) -> SubscriptionUpdate:
    event = revenuecat_event(payload)
    event_type = revenuecat_event_type(payload)

    subscription_id = extract_revenuecat_subscription_id(payload)
    if not subscription_id:
        raise MalformedPayloadError(PROVIDER, f"no transaction id in {event_type}")

    now = utcnow()
    entitlement = _first_entitlement(event)
    product_id = _product_id(event)

    expires_at = first_datetime(
        event.get("expiration_at_ms"),
        event.get("expires_at_ms"),
        event.get("expires_date_ms"),
        event.get("expiration_at"),
        event.get("expires_at"),
        entitlement.get("expires_date"),
        entitlement.get("expires_at_ms"),
    )
    purchased_at = first_datetime(
        event.get("purchased_at_ms"),
        event.get("purchased_at"),
        event.get("created_at"),
    )
    event_at = parse_datetime(event.get("event_timestamp_ms"))

    provider_status = "ACTIVE"
    if expires_at is not None and expires_at < now:
        provider_status = "EXPIRED"
    provider_status = EVENT_STATUS_OVERRIDES.get(event_type, provider_status)
    if provider_status == "ACTIVE" and str(event.get("period_type") or "").upper() == "TRIAL":
        provider_status = "IN_TRIAL_PERIOD"

    status = map_revenuecat_status(provider_status)
    is_trial = (
        provider_status == "IN_TRIAL_PERIOD"
        or str(event.get("period_type") or "").upper() == "TRIAL"
        or event.get("is_trial_period") is True
    )

    fields: dict[str, Any] = {
        "subscription_id": subscription_id,
        "status": status,
        "provider": PROVIDER,
        "is_trial": is_trial,
        "metadata": {
            "revenuecat_customer_id": (
                (event.get("customer_info") or {}).get("customer_id")
                if isinstance(event.get("customer_info"), dict)
                else None
            ) or event.get("customer_id"),
            "revenuecat_store": event.get("store") or "GOOGLE_PLAY",
            "revenuecat_original_transaction_id": event.get("original_transaction_id"),
            "revenuecat_transaction_id": event.get("transaction_id"),
            "revenuecat_product_id": product_id,
            "revenuecat_event_type": event_type,
            "revenuecat_period_type": event.get("period_type"),
            "full_webhook_payload": payload,
        },
    }

    optional = {
        "user_id": extract_revenuecat_user_id(payload),
        "plan_id": product_id,
        "start_date": purchased_at,
        "end_date": expires_at,
        "next_billing_date": expires_at,
        "trial_end_date": expires_at if is_trial else None,
        "event_at": event_at,
    }
    fields.update({key: value for key, value in optional.items() if value is not None})

    if status == SubscriptionStatus.CANCELLED:
        fields["user_cancelled"] = True
        fields["cancelled_at"] = event_at or now
    elif event_type == "UNCANCELLATION":
        fields["user_cancelled"] = False
        fields["cancelled_at"] = None

    return SubscriptionUpdate(**fields)
