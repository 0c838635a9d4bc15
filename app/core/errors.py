from __future__ import annotations


class BillingWebhookError(Exception):
    """Base class for errors raised while reconciling provider webhooks."""


class WebhookAuthenticationError(BillingWebhookError):
    def __init__(self, provider: str, reason: str = "Invalid webhook signature"):
        super().__init__(reason)
        self.provider = provider
        self.reason = reason


class MalformedPayloadError(BillingWebhookError):
    def __init__(self, provider: str, reason: str):
        super().__init__(reason)
        self.provider = provider
        self.reason = reason


class EnrichmentError(BillingWebhookError):
    """Auxiliary provider lookup failed. Callers continue with partial data."""

    def __init__(self, resource: str, resource_id: str | None, reason: str):
        super().__init__(f"{resource} lookup failed for {resource_id}: {reason}")
        self.resource = resource
        self.resource_id = resource_id
        self.reason = reason
