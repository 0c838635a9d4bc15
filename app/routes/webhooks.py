from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.errors import WebhookAuthenticationError
from app.core.subscription_status import BillingProvider
from app.db import get_db
from app.services.billing.signatures import get_authenticator
from app.services.razorpay_webhooks import process_razorpay_event
from app.services.revenuecat_webhooks import process_revenuecat_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

RAZORPAY_SIGNATURE_HEADER = "X-Razorpay-Signature"


def _authenticate(provider: BillingProvider, raw_body: bytes, credential: str | None) -> None:
    if not get_authenticator(provider).verify(raw_body, credential):
        raise WebhookAuthenticationError(provider.value)


def _parse_body(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return payload


async def _verified_payload(request: Request, provider: BillingProvider, credential: str | None) -> dict[str, Any]:
    raw_body = await request.body()
    try:
        _authenticate(provider, raw_body, credential)
    except WebhookAuthenticationError as exc:
        logger.warning(
            "webhook_rejected provider=%s reason=%s ip=%s",
            exc.provider,
            exc.reason,
            request.client.host if request.client else None,
        )
        raise HTTPException(status_code=401, detail=exc.reason)
    return _parse_body(raw_body)


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    payload = await _verified_payload(
        request,
        BillingProvider.RAZORPAY,
        request.headers.get(RAZORPAY_SIGNATURE_HEADER),
    )

    try:
        return await process_razorpay_event(db, payload)
    except Exception:
        logger.exception("razorpay_webhook_failed event=%s", payload.get("event"))
        raise HTTPException(status_code=500, detail="Webhook processing failed")


@router.post("/revenuecat")
async def revenuecat_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    payload = await _verified_payload(
        request,
        BillingProvider.REVENUECAT,
        request.headers.get("Authorization"),
    )

    try:
        return await process_revenuecat_event(db, payload)
    except Exception:
        logger.exception("revenuecat_webhook_failed")
        raise HTTPException(status_code=500, detail="Webhook processing failed")
