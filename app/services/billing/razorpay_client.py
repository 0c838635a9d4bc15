import logging
from typing import Any, Optional

import requests

from app.core.config import (
    get_razorpay_api_base_url,
    get_razorpay_api_timeout,
    get_razorpay_credentials,
)
from app.core.errors import EnrichmentError

logger = logging.getLogger(__name__)

PLAN_PERIOD_DAYS = {
    "monthly": 30,
    "yearly": 365,
}


class RazorpayClient:
    """
    Read-only Razorpay API lookups used to enrich webhook payloads.
    Every call carries an explicit timeout and raises EnrichmentError on
    any failure so callers can continue with partial data.
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        env_key_id, env_key_secret = get_razorpay_credentials()
        self.key_id = key_id or env_key_id
        self.key_secret = key_secret or env_key_secret
        self.base_url = (base_url or get_razorpay_api_base_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else get_razorpay_api_timeout()
        self.session = session or requests.Session()

    def _get(self, resource: str, resource_id: str) -> dict[str, Any]:
        if not resource_id:
            raise EnrichmentError(resource, resource_id, "missing id")

        if not self.key_id or not self.key_secret:
            raise EnrichmentError(resource, resource_id, "Razorpay API credentials not configured")

        url = f"{self.base_url}/{resource}/{resource_id}"
        try:
            resp = self.session.get(
                url,
                auth=(self.key_id, self.key_secret),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise EnrichmentError(resource, resource_id, str(exc)) from exc

        if resp.status_code != 200:
            raise EnrichmentError(resource, resource_id, f"HTTP {resp.status_code}")

        try:
            return resp.json()
        except ValueError as exc:
            raise EnrichmentError(resource, resource_id, "invalid JSON response") from exc

    def get_plan(self, plan_id: str) -> dict[str, Any]:
        return self._get("plans", plan_id)

    def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._get("invoices", invoice_id)

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._get("subscriptions", subscription_id)


def plan_period_days(plan: Optional[dict[str, Any]]) -> Optional[int]:
    if not plan:
        return None
    period = str(plan.get("period") or "").strip().lower()
    return PLAN_PERIOD_DAYS.get(period)


def get_razorpay_client() -> RazorpayClient:
    """
    Returns a new client instance per request.
    """
    return RazorpayClient()
