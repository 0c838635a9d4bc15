from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    PENDING = "pending"
    HALTED = "halted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAUSED = "paused"
    # Cancelled while the trial period is still running.
    INACTIVE = "inactive"


class BillingProvider(str, Enum):
    RAZORPAY = "razorpay"
    REVENUECAT = "revenuecat"


RAZORPAY_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "created": SubscriptionStatus.PENDING,
    "authenticated": SubscriptionStatus.AUTHENTICATED,
    "active": SubscriptionStatus.ACTIVE,
    "resumed": SubscriptionStatus.ACTIVE,
    "pending": SubscriptionStatus.PENDING,
    "halted": SubscriptionStatus.HALTED,
    "paused": SubscriptionStatus.PAUSED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "completed": SubscriptionStatus.EXPIRED,
    "expired": SubscriptionStatus.EXPIRED,
}


REVENUECAT_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "ACTIVE": SubscriptionStatus.ACTIVE,
    "IN_TRIAL_PERIOD": SubscriptionStatus.ACTIVE,
    "IN_GRACE_PERIOD": SubscriptionStatus.ACTIVE,
    "CANCELLED": SubscriptionStatus.CANCELLED,
    "EXPIRED": SubscriptionStatus.EXPIRED,
    "BILLING_ISSUE": SubscriptionStatus.HALTED,
    "PAUSED": SubscriptionStatus.PAUSED,
}


def map_razorpay_status(value: str | None) -> SubscriptionStatus:
    """Unknown provider statuses resolve to ACTIVE so access is never cut on a surprise value."""
    if not value:
        return SubscriptionStatus.ACTIVE
    return RAZORPAY_STATUS_MAP.get(str(value).strip().lower(), SubscriptionStatus.ACTIVE)


def map_revenuecat_status(value: str | None) -> SubscriptionStatus:
    if not value:
        return SubscriptionStatus.ACTIVE
    return REVENUECAT_STATUS_MAP.get(str(value).strip().upper(), SubscriptionStatus.ACTIVE)
