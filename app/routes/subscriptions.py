from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.routes.auth import get_current_user
from app.schemas.subscription import PaymentOut, SubscriptionOut
from app.services.payment_recorder import list_payments_for_user
from app.services.subscription_store import get_latest_subscription_for_user

router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])


@router.get("/me")
def my_subscription(
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    subscription = get_latest_subscription_for_user(db, str(current_user.id))
    return {
        "has_subscription": subscription is not None,
        "subscription": SubscriptionOut.model_validate(subscription) if subscription else None,
    }


@router.get("/payments")
def my_payments(
    limit: int = Query(50, ge=1, le=200),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payments = list_payments_for_user(db, str(current_user.id), limit=limit)
    return {
        "count": len(payments),
        "payments": [PaymentOut.model_validate(payment) for payment in payments],
    }
