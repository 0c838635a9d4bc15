from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod

from app.core.config import (
    get_razorpay_webhook_secret,
    get_revenuecat_webhook_secret,
    is_production,
)
from app.core.subscription_status import BillingProvider

logger = logging.getLogger(__name__)


class WebhookAuthenticator(ABC):

    @abstractmethod
    def verify(self, raw_body: bytes, credential: str | None) -> bool:
        """
        Authenticate one inbound webhook.

        raw_body is the literal request body as received, before any JSON
        parsing. credential is the provider's auth header value.
        """
        pass


class HmacAuthenticator(WebhookAuthenticator):
    """HMAC-SHA256 over the raw body, hex digest in a signature header."""

    def __init__(self, secret: str | None, bypass: bool = False):
        self.secret = secret
        self.bypass = bypass

    def expected_signature(self, raw_body: bytes) -> str:
        return hmac.new(self.secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    def verify(self, raw_body: bytes, credential: str | None) -> bool:
        if self.bypass:
            logger.warning("webhook_signature_bypassed scheme=hmac reason=non_production_env")
            return True

        if not self.secret:
            logger.error("webhook_secret_missing scheme=hmac")
            return False

        if not credential:
            logger.warning("webhook_signature_missing scheme=hmac")
            return False

        return hmac.compare_digest(
            credential.strip().encode("utf-8"),
            self.expected_signature(raw_body).encode("utf-8"),
        )


class BearerAuthenticator(WebhookAuthenticator):
    """Shared secret sent as ``Authorization: Bearer <secret>``. Fails closed without a secret."""

    def __init__(self, secret: str | None):
        self.secret = secret

    def verify(self, raw_body: bytes, credential: str | None) -> bool:
        if not self.secret:
            logger.error("webhook_secret_missing scheme=bearer")
            return False

        if not credential:
            logger.warning("webhook_authorization_missing scheme=bearer")
            return False

        supplied = credential.strip()
        if supplied.lower().startswith("bearer "):
            supplied = supplied[7:].strip()

        return hmac.compare_digest(supplied.encode("utf-8"), self.secret.encode("utf-8"))


def get_authenticator(provider: BillingProvider | str) -> WebhookAuthenticator:
    """
    Returns a new authenticator per request so secret rotation via env takes
    effect without a restart.
    """
    provider_name = provider.value if isinstance(provider, BillingProvider) else str(provider)

    if provider_name == BillingProvider.RAZORPAY.value:
        return HmacAuthenticator(
            secret=get_razorpay_webhook_secret(),
            bypass=not is_production(),
        )
    if provider_name == BillingProvider.REVENUECAT.value:
        return BearerAuthenticator(secret=get_revenuecat_webhook_secret())

    raise ValueError(f"Unknown billing provider: {provider_name}")
