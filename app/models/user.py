import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from app.db import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    name = Column(String, nullable=False)
    email = Column(String, unique=True)
    role = Column(String, nullable=False, default="USER")

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    password_changed_at = Column(
        DateTime(timezone=True),
        nullable=True
    )
