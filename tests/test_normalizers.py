from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import MalformedPayloadError
from app.services.billing.dates import parse_datetime
from app.services.billing.razorpay import (
    extract_razorpay_subscription_id,
    normalize_razorpay_payment,
    normalize_razorpay_subscription,
)
from app.services.billing.revenuecat import normalize_revenuecat

NOW = datetime.now(timezone.utc)


def epoch(dt: datetime) -> int:
    return int(dt.timestamp())


def epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def razorpay_payload(event, subscription=None, payment=None, created_at=None):
    payload = {"event": event, "payload": {}}
    if subscription is not None:
        payload["payload"]["subscription"] = {"entity": subscription}
    if payment is not None:
        payload["payload"]["payment"] = {"entity": payment}
    if created_at is not None:
        payload["created_at"] = created_at
    return payload


# ---------------- DATES ----------------
def test_parse_datetime_accepts_seconds_milliseconds_and_iso():
    seconds = parse_datetime(1700000000)
    assert seconds == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert parse_datetime(1700000000000) == seconds
    assert parse_datetime("1700000000") == seconds
    assert parse_datetime("2023-11-14T22:13:20Z") == seconds
    assert parse_datetime(None) is None
    assert parse_datetime(0) is None
    assert parse_datetime("not a date") is None


# ---------------- RAZORPAY ----------------
def test_razorpay_activated_subscription():
    start = NOW - timedelta(days=1)
    next_charge = NOW + timedelta(days=29)
    update = normalize_razorpay_subscription(
        razorpay_payload(
            "subscription.activated",
            subscription={
                "id": "sub_123",
                "status": "active",
                "plan_id": "plan_monthly",
                "customer_id": "cust_1",
                "start_at": epoch(start),
                "charge_at": epoch(next_charge),
                "notes": {"user_id": "u1"},
            },
            created_at=epoch(NOW),
        )
    )

    assert update.subscription_id == "sub_123"
    assert update.user_id == "u1"
    assert update.status == "active"
    assert update.provider == "razorpay"
    assert update.plan_id == "plan_monthly"
    assert update.next_billing_date == datetime.fromtimestamp(epoch(next_charge), tz=timezone.utc)
    assert update.metadata["razorpay_event"] == "subscription.activated"
    assert update.metadata["razorpay_customer_id"] == "cust_1"
    assert "end_date" not in update.model_fields_set


def test_razorpay_subscription_id_falls_back_to_payment_entity():
    payload = razorpay_payload(
        "subscription.charged",
        payment={"id": "pay_1", "subscription_id": "sub_from_payment"},
    )
    assert extract_razorpay_subscription_id(payload) == "sub_from_payment"
    assert normalize_razorpay_subscription(payload).subscription_id == "sub_from_payment"


def test_razorpay_missing_subscription_id_is_malformed():
    with pytest.raises(MalformedPayloadError):
        normalize_razorpay_subscription(razorpay_payload("subscription.activated", subscription={}))


def test_razorpay_empty_notes_list_is_tolerated():
    update = normalize_razorpay_subscription(
        razorpay_payload("subscription.pending", subscription={"id": "sub_1", "notes": []})
    )
    assert update.user_id is None
    assert update.status == "pending"


def test_razorpay_past_end_date_means_expired_without_event_override():
    update = normalize_razorpay_subscription(
        razorpay_payload(
            "subscription.charged",
            subscription={"id": "sub_1", "status": "active", "end_at": epoch(NOW - timedelta(days=2))},
        )
    )
    assert update.status == "expired"


def test_razorpay_event_type_overrides_entity_status():
    update = normalize_razorpay_subscription(
        razorpay_payload("subscription.halted", subscription={"id": "sub_1", "status": "active"})
    )
    assert update.status == "halted"


def test_razorpay_cancel_during_running_trial_is_inactive():
    trial_end = NOW + timedelta(days=5)
    update = normalize_razorpay_subscription(
        razorpay_payload(
            "subscription.cancelled",
            subscription={
                "id": "sub_1",
                "status": "cancelled",
                "start_at": epoch(trial_end),
                "notes": {"user_id": "u1", "onTrial": "true"},
            },
        )
    )
    assert update.status == "inactive"
    assert update.is_trial is True
    assert update.user_cancelled is True
    assert update.cancelled_at is not None


def test_razorpay_cancel_after_trial_is_cancelled():
    update = normalize_razorpay_subscription(
        razorpay_payload(
            "subscription.cancelled",
            subscription={
                "id": "sub_1",
                "start_at": epoch(NOW - timedelta(days=3)),
                "notes": {"onTrial": True},
            },
        )
    )
    assert update.status == "cancelled"


def test_razorpay_payment_record():
    record = normalize_razorpay_payment(
        razorpay_payload(
            "payment.captured",
            payment={
                "id": "pay_1",
                "amount": 19900,
                "currency": "INR",
                "status": "captured",
                "subscription_id": "sub_1",
                "notes": {"user_id": 42},
            },
        )
    )
    assert record.payment_id == "pay_1"
    assert record.amount == "19900"
    assert record.user_id == "42"
    assert record.status == "captured"


# ---------------- REVENUECAT ----------------
def test_revenuecat_initial_purchase():
    expires = NOW + timedelta(days=30)
    update = normalize_revenuecat(
        {
            "event": {
                "type": "INITIAL_PURCHASE",
                "app_user_id": "rc_user",
                "original_transaction_id": "GPA.1",
                "transaction_id": "GPA.1..0",
                "product_id": "premium_monthly",
                "expiration_at_ms": epoch_ms(expires),
                "purchased_at_ms": epoch_ms(NOW),
                "event_timestamp_ms": epoch_ms(NOW),
                "store": "APP_STORE",
            }
        }
    )
    assert update.subscription_id == "GPA.1"
    assert update.user_id == "rc_user"
    assert update.status == "active"
    assert update.provider == "revenuecat"
    assert update.plan_id == "premium_monthly"
    assert update.end_date == update.next_billing_date
    assert update.is_trial is False
    assert update.metadata["revenuecat_store"] == "APP_STORE"
    assert update.metadata["revenuecat_event_type"] == "INITIAL_PURCHASE"


def test_revenuecat_bare_event_and_entitlement_expiry():
    expired = NOW - timedelta(days=1)
    update = normalize_revenuecat(
        {
            "type": "RENEWAL",
            "transaction_id": "txn_9",
            "entitlements": {"premium": {"expires_date": expired.isoformat()}},
            "customer_info": {"app_user_id": "rc_user"},
        }
    )
    assert update.subscription_id == "txn_9"
    assert update.user_id == "rc_user"
    assert update.plan_id == "premium"
    assert update.status == "expired"
    assert update.metadata["revenuecat_store"] == "GOOGLE_PLAY"


def test_revenuecat_expiry_field_priority():
    first = NOW + timedelta(days=10)
    update = normalize_revenuecat(
        {
            "event": {
                "type": "RENEWAL",
                "id": "evt_1",
                "expires_at_ms": epoch_ms(first),
                "expires_at": (NOW + timedelta(days=99)).isoformat(),
            }
        }
    )
    assert update.end_date == datetime.fromtimestamp(epoch_ms(first) / 1000, tz=timezone.utc)


@pytest.mark.parametrize(
    "event_type,status",
    [
        ("CANCELLATION", "cancelled"),
        ("EXPIRATION", "expired"),
        ("BILLING_ISSUE", "halted"),
        ("SUBSCRIPTION_PAUSED", "paused"),
    ],
)
def test_revenuecat_event_overrides(event_type, status):
    update = normalize_revenuecat(
        {"event": {"type": event_type, "original_transaction_id": "GPA.2", "app_user_id": "u"}}
    )
    assert update.status == status


def test_revenuecat_cancellation_marks_user_cancelled():
    update = normalize_revenuecat(
        {
            "event": {
                "type": "CANCELLATION",
                "original_transaction_id": "GPA.2",
                "event_timestamp_ms": epoch_ms(NOW),
            }
        }
    )
    assert update.user_cancelled is True
    assert update.cancelled_at == update.event_at


def test_revenuecat_trial_period():
    expires = NOW + timedelta(days=7)
    update = normalize_revenuecat(
        {
            "event": {
                "type": "INITIAL_PURCHASE",
                "original_transaction_id": "GPA.3",
                "period_type": "TRIAL",
                "expiration_at_ms": epoch_ms(expires),
            }
        }
    )
    assert update.status == "active"
    assert update.is_trial is True
    assert update.trial_end_date == update.end_date


def test_revenuecat_missing_transaction_id_is_malformed():
    with pytest.raises(MalformedPayloadError):
        normalize_revenuecat({"event": {"type": "RENEWAL", "app_user_id": "u"}})


def test_razorpay_paused_entity_status():
    update = normalize_razorpay_subscription(
        razorpay_payload("subscription.charged", subscription={"id": "sub_1", "status": "paused"})
    )
    assert update.status == "paused"


def test_revenuecat_uncancellation_resets_cancellation():
    update = normalize_revenuecat(
        {"event": {"type": "UNCANCELLATION", "original_transaction_id": "GPA.9", "app_user_id": "u"}}
    )
    assert update.status == "active"
    assert update.changes()["user_cancelled"] is False
    assert update.changes()["cancelled_at"] is None
