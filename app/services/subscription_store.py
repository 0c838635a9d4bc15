from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import is_stale_event_guard_enabled
from app.models.payment import Payment
from app.models.subscription import Subscription
from app.schemas.subscription import SubscriptionUpdate
from app.services.billing.dates import as_utc

logger = logging.getLogger(__name__)

# SubscriptionUpdate field -> Subscription column attribute, where they differ.
_COLUMN_ALIASES = {
    "metadata": "metadata_",
    "event_at": "last_event_at",
}

# Fields update_subscription_status accepts next to the status itself.
STATUS_EXTRA_FIELDS = {
    "next_billing_date",
    "end_date",
    "ended_at",
    "user_cancelled",
    "cancelled_at",
    "metadata",
    "event_at",
}


@dataclass
class StoreResult:
    success: bool
    data: Any = None
    message: str | None = None
    created: bool = False
    ignored: bool = False


def get_subscription_by_external_id(db: Session, subscription_id: str) -> Subscription | None:
    if not subscription_id:
        return None
    return (
        db.query(Subscription)
        .filter(Subscription.subscription_id == subscription_id)
        .first()
    )


def get_latest_subscription_for_user(db: Session, user_id: str) -> Subscription | None:
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == str(user_id))
        .order_by(Subscription.updated_at.desc(), Subscription.id.desc())
        .first()
    )


def is_stale_update(subscription: Subscription, incoming_event_at: datetime | None) -> bool:
    if incoming_event_at is None:
        return False

    last_seen = as_utc(subscription.last_event_at)
    if last_seen is None:
        return False

    return as_utc(incoming_event_at) < last_seen


def _apply(subscription: Subscription, changes: dict[str, Any]) -> None:
    for field, value in changes.items():
        setattr(subscription, _COLUMN_ALIASES.get(field, field), value)


def _insert(db: Session, changes: dict[str, Any]) -> Subscription:
    subscription = Subscription()
    _apply(subscription, changes)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def _merge(db: Session, subscription: Subscription, changes: dict[str, Any]) -> StoreResult:
    if is_stale_event_guard_enabled() and is_stale_update(subscription, changes.get("event_at")):
        logger.info(
            "subscription_update_ignored_stale subscription_id=%s user_id=%s status=%s event_at=%s last_event_at=%s",
            subscription.subscription_id,
            subscription.user_id,
            changes.get("status"),
            changes.get("event_at"),
            subscription.last_event_at,
        )
        return StoreResult(success=True, data=subscription, message="Stale event ignored", ignored=True)

    # The external id is immutable once set.
    changes = {key: value for key, value in changes.items() if key != "subscription_id"}
    _apply(subscription, changes)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return StoreResult(success=True, data=subscription, message="Subscription updated")


def upsert_subscription(db: Session, update: SubscriptionUpdate) -> StoreResult:
    """
    Insert-or-merge keyed by the provider's subscription id.

    Every field explicitly set on the update overwrites the stored value;
    unset fields keep what earlier events recorded. There is no transition
    graph: the last applied update wins.
    """
    changes = update.changes()

    try:
        existing = get_subscription_by_external_id(db, update.subscription_id)
        if existing is None:
            try:
                subscription = _insert(db, changes)
            except IntegrityError:
                # Concurrent first delivery won the insert; fall through to merge.
                db.rollback()
                existing = get_subscription_by_external_id(db, update.subscription_id)
                if existing is None:
                    raise
            else:
                logger.info(
                    "subscription_created subscription_id=%s user_id=%s status=%s provider=%s",
                    subscription.subscription_id,
                    subscription.user_id,
                    subscription.status,
                    subscription.provider,
                )
                return StoreResult(success=True, data=subscription, message="Subscription created", created=True)

        result = _merge(db, existing, changes)
        if not result.ignored:
            logger.info(
                "subscription_updated subscription_id=%s user_id=%s status=%s provider=%s",
                existing.subscription_id,
                existing.user_id,
                existing.status,
                existing.provider,
            )
        return result

    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "subscription_upsert_failed subscription_id=%s user_id=%s status=%s",
            update.subscription_id,
            update.user_id,
            update.status,
        )
        return StoreResult(success=False, message=str(exc))


def update_subscription_status(
    db: Session,
    subscription_id: str,
    status: str,
    extra: dict[str, Any] | None = None,
) -> StoreResult:
    extra = dict(extra or {})
    unknown = set(extra) - STATUS_EXTRA_FIELDS
    if unknown:
        raise ValueError(f"Unsupported status update fields: {sorted(unknown)}")

    status_value = getattr(status, "value", status)
    changes = {"status": status_value, **extra}

    try:
        subscription = get_subscription_by_external_id(db, subscription_id)
        if subscription is None:
            logger.warning(
                "subscription_status_update_missing subscription_id=%s status=%s",
                subscription_id,
                status_value,
            )
            return StoreResult(success=False, message="Subscription not found")

        result = _merge(db, subscription, changes)
        if not result.ignored:
            logger.info(
                "subscription_status_updated subscription_id=%s user_id=%s status=%s",
                subscription.subscription_id,
                subscription.user_id,
                subscription.status,
            )
        return result

    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "subscription_status_update_failed subscription_id=%s status=%s",
            subscription_id,
            status_value,
        )
        return StoreResult(success=False, message=str(exc))


def update_next_billing_date_from_payments(
    db: Session,
    subscription_id: str,
    period_days: int | None,
) -> StoreResult:
    """Next billing date = latest recorded payment + one plan period."""
    if not subscription_id or not period_days:
        return StoreResult(success=False, message="Subscription id or plan period missing")

    try:
        latest = (
            db.query(Payment)
            .filter(Payment.subscription_id == subscription_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .first()
        )
        if latest is None or latest.created_at is None:
            return StoreResult(success=False, message="No payments for subscription")

        next_billing_date = as_utc(latest.created_at) + timedelta(days=period_days)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("next_billing_lookup_failed subscription_id=%s", subscription_id)
        return StoreResult(success=False, message=str(exc))

    subscription = get_subscription_by_external_id(db, subscription_id)
    if subscription is None:
        return StoreResult(success=False, message="Subscription not found")

    return update_subscription_status(
        db,
        subscription_id,
        subscription.status,
        {"next_billing_date": next_billing_date},
    )
