from __future__ import annotations

import logging
from typing import Any, Optional

from starlette.concurrency import run_in_threadpool

from app.models.payment import Payment
from app.models.subscription import Subscription
from app.schemas.subscription import PaymentOut, SubscriptionOut
from app.services.cache_invalidator import invalidate_user_caches

logger = logging.getLogger(__name__)


def ack(event: str, message: str, success: bool = True) -> dict[str, Any]:
    """Body returned to the provider. Always status ok so the delivery is not retried."""
    return {
        "status": "ok",
        "event": event,
        "message": message,
        "success": success,
    }


def subscription_data(subscription: Subscription) -> dict[str, Any]:
    return SubscriptionOut.model_validate(subscription).model_dump(mode="json")


def payment_data(payment: Payment) -> dict[str, Any]:
    return PaymentOut.model_validate(payment).model_dump(mode="json")


async def refresh_user_caches(user_id: Optional[str]) -> int:
    if not user_id:
        return 0
    return await run_in_threadpool(invalidate_user_caches, user_id)
