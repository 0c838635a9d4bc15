from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.payment import Payment
from app.schemas.subscription import PaymentRecord
from app.services.subscription_store import StoreResult

logger = logging.getLogger(__name__)


def get_payment_by_external_id(db: Session, payment_id: str) -> Payment | None:
    if not payment_id:
        return None
    return db.query(Payment).filter(Payment.payment_id == payment_id).first()


def list_payments_for_user(db: Session, user_id: str, limit: int = 50) -> list[Payment]:
    return (
        db.query(Payment)
        .filter(Payment.user_id == str(user_id))
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .all()
    )


def list_payments_for_subscription(db: Session, subscription_id: str) -> list[Payment]:
    return (
        db.query(Payment)
        .filter(Payment.subscription_id == subscription_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .all()
    )


def create_payment(db: Session, record: PaymentRecord) -> StoreResult:
    """
    Record one charge attempt. A redelivered payment_id updates the existing
    row in place instead of inserting a duplicate.
    """
    existing = get_payment_by_external_id(db, record.payment_id)
    if existing is not None:
        logger.info(
            "payment_redelivered payment_id=%s status=%s",
            record.payment_id,
            record.status,
        )
        return update_payment_status(db, record.payment_id, record.status, record.metadata)

    payment = Payment(
        payment_id=record.payment_id,
        status=record.status,
        amount=record.amount,
        currency=record.currency,
        invoice_id=record.invoice_id,
        plan_id=record.plan_id,
        user_id=record.user_id,
        subscription_id=record.subscription_id,
        metadata_=record.metadata,
    )

    try:
        db.add(payment)
        db.commit()
        db.refresh(payment)
    except IntegrityError:
        db.rollback()
        logger.info("payment_insert_race payment_id=%s", record.payment_id)
        return update_payment_status(db, record.payment_id, record.status, record.metadata)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "payment_create_failed payment_id=%s user_id=%s subscription_id=%s status=%s",
            record.payment_id,
            record.user_id,
            record.subscription_id,
            record.status,
        )
        return StoreResult(success=False, message=str(exc))

    logger.info(
        "payment_recorded payment_id=%s user_id=%s subscription_id=%s status=%s amount=%s currency=%s",
        payment.payment_id,
        payment.user_id,
        payment.subscription_id,
        payment.status,
        payment.amount,
        payment.currency,
    )
    return StoreResult(success=True, data=payment, message="Payment recorded", created=True)


def update_payment_status(
    db: Session,
    payment_id: str,
    status: str,
    metadata: dict[str, Any] | None = None,
) -> StoreResult:
    try:
        payment = get_payment_by_external_id(db, payment_id)
        if payment is None:
            return StoreResult(success=False, message="Payment not found")

        payment.status = status
        if metadata is not None:
            payment.metadata_ = metadata
        db.add(payment)
        db.commit()
        db.refresh(payment)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("payment_status_update_failed payment_id=%s status=%s", payment_id, status)
        return StoreResult(success=False, message=str(exc))

    logger.info("payment_status_updated payment_id=%s status=%s", payment_id, status)
    return StoreResult(success=True, data=payment, message="Payment status updated")
