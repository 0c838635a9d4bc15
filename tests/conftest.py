import asyncio
import hashlib
import hmac
import json
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["APP_ENV"] = "production"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_webhook_secret"
os.environ["REVENUECAT_WEBHOOK_SECRET"] = "rc_webhook_secret"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SUBSCRIPTION_STALE_EVENT_GUARD", None)
os.environ.pop("NOTIFICATIONS_REDIS_RELAY", None)

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import EnrichmentError
from app.db import Base, get_db
from app.main import app
from app.models.payment import Payment  # noqa: F401
from app.models.subscription import Subscription  # noqa: F401
from app.models.user import User
from app.routes.auth import create_access_token
from app.services.notifications import NotificationHub

RAZORPAY_SECRET = "rzp_webhook_secret"
REVENUECAT_SECRET = "rc_webhook_secret"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def hub(monkeypatch):
    hub = NotificationHub()
    monkeypatch.setattr("app.services.razorpay_webhooks.notification_hub", hub)
    monkeypatch.setattr("app.services.revenuecat_webhooks.notification_hub", hub)
    monkeypatch.setattr("app.routes.notifications.notification_hub", hub)
    return hub


@pytest.fixture
def cache_invalidator(monkeypatch):
    invalidate = MagicMock(return_value=0)
    monkeypatch.setattr("app.services.webhook_support.invalidate_user_caches", invalidate)
    return invalidate


@pytest.fixture
def razorpay_api(monkeypatch):
    """Razorpay lookups fail unless a test configures a return value."""
    api = MagicMock()
    api.get_plan.side_effect = EnrichmentError("plans", None, "not configured")
    api.get_invoice.side_effect = EnrichmentError("invoices", None, "not configured")
    api.get_subscription.side_effect = EnrichmentError("subscriptions", None, "not configured")
    monkeypatch.setattr("app.services.razorpay_webhooks.get_razorpay_client", lambda: api)
    return api


@pytest.fixture
def client(session_factory, hub, cache_invalidator, razorpay_api):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user(db_session):
    user = User(name="Listener", email="listener@example.com")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def razorpay_signature(body: bytes, secret: str = RAZORPAY_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def post_razorpay(client, payload, secret: str = RAZORPAY_SECRET):
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        "/api/webhooks/razorpay",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Razorpay-Signature": razorpay_signature(body, secret),
        },
    )


def post_revenuecat(client, payload, secret: str = REVENUECAT_SECRET):
    return client.post(
        "/api/webhooks/revenuecat",
        content=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {secret}",
        },
    )


def drain(channel):
    messages = []
    while channel.pending():
        messages.append(asyncio.run(channel.receive()))
    return messages
