from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.subscription_status import BillingProvider, SubscriptionStatus


class SubscriptionUpdate(BaseModel):
    """
    Provider-agnostic result of normalizing one webhook.

    Only fields explicitly set by the normalizer (``model_fields_set``) are
    merged onto an existing row, so a later event that omits a date never
    erases what an earlier event recorded.
    """

    model_config = ConfigDict(use_enum_values=True)

    subscription_id: str = Field(..., min_length=1)
    status: SubscriptionStatus
    provider: BillingProvider

    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    is_trial: bool = False
    trial_end_date: Optional[datetime] = None
    user_cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Provider-side event time, when the payload carries one.
    event_at: Optional[datetime] = None

    def changes(self) -> dict[str, Any]:
        fields = set(self.model_fields_set) | {"subscription_id", "status", "provider"}
        return self.model_dump(include=fields)

    def with_overrides(self, **overrides: Any) -> "SubscriptionUpdate":
        data = self.changes()
        data.update(overrides)
        return SubscriptionUpdate(**data)


class PaymentRecord(BaseModel):
    payment_id: str = Field(..., min_length=1)
    status: str
    amount: Optional[str] = None
    currency: Optional[str] = None
    invoice_id: Optional[str] = None
    plan_id: Optional[str] = None
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: str
    provider: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    is_trial: bool = False
    trial_end_date: Optional[datetime] = None
    user_cancelled: bool = False
    cancelled_at: Optional[datetime] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    status: str
    amount: Optional[str] = None
    currency: Optional[str] = None
    subscription_id: Optional[str] = None
    created_at: Optional[datetime] = None
