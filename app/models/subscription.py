from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from app.db import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # External provider id. Idempotency key for webhook upserts.
    subscription_id = Column(String(128), nullable=False, unique=True, index=True)
    user_id = Column(String(128), nullable=True, index=True)
    plan_id = Column(String(128), nullable=True)
    status = Column(String(32), nullable=False, index=True)
    provider = Column(String(32), nullable=False, default="razorpay")

    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    is_trial = Column(Boolean, nullable=False, default=False, server_default="false")
    trial_end_date = Column(DateTime(timezone=True), nullable=True)

    user_cancelled = Column(Boolean, nullable=False, default=False, server_default="false")
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Last normalized provider payload. Support visibility only.
    metadata_ = Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )
