from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from app.db import Base


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)

    payment_id = Column(String(128), nullable=False, unique=True, index=True)
    status = Column(String(32), nullable=False)
    amount = Column(String(32), nullable=True)
    currency = Column(String(8), nullable=True)
    invoice_id = Column(String(128), nullable=True)
    plan_id = Column(String(128), nullable=True)
    user_id = Column(String(128), nullable=True, index=True)

    # External subscription id, best effort. Not a foreign key.
    subscription_id = Column(String(128), nullable=True, index=True)

    metadata_ = Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )
