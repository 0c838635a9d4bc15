from unittest.mock import MagicMock

import pytest
import requests
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.errors import EnrichmentError
from app.services.billing.razorpay_client import RazorpayClient, plan_period_days
from app.services.cache_invalidator import invalidate_user_caches


def make_client(response=None, error=None):
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    client = RazorpayClient(
        key_id="rzp_key",
        key_secret="rzp_secret",
        base_url="https://api.example.test/v1/",
        timeout=3,
        session=session,
    )
    return client, session


def fake_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


# ---------------- RAZORPAY API ----------------
def test_lookup_uses_basic_auth_and_timeout():
    client, session = make_client(fake_response(payload={"id": "plan_1", "period": "monthly"}))

    plan = client.get_plan("plan_1")

    assert plan["period"] == "monthly"
    session.get.assert_called_once()
    args, kwargs = session.get.call_args
    assert args[0] == "https://api.example.test/v1/plans/plan_1"
    assert kwargs["auth"] == ("rzp_key", "rzp_secret")
    assert kwargs["timeout"] == 3


def test_lookup_http_error():
    client, _ = make_client(fake_response(status_code=404))
    with pytest.raises(EnrichmentError) as exc_info:
        client.get_invoice("inv_missing")
    assert exc_info.value.resource == "invoices"


def test_lookup_network_error():
    client, _ = make_client(error=requests.Timeout("slow"))
    with pytest.raises(EnrichmentError):
        client.get_subscription("sub_1")


def test_lookup_requires_credentials(monkeypatch):
    monkeypatch.delenv("RAZORPAY_KEY_ID", raising=False)
    monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)
    session = MagicMock()
    client = RazorpayClient(session=session)

    with pytest.raises(EnrichmentError):
        client.get_plan("plan_1")
    session.get.assert_not_called()


def test_plan_period_days():
    assert plan_period_days({"period": "monthly"}) == 30
    assert plan_period_days({"period": "Yearly"}) == 365
    assert plan_period_days({"period": "weekly"}) is None
    assert plan_period_days(None) is None


# ---------------- CACHE INVALIDATION ----------------
def test_invalidation_deletes_matching_keys():
    redis = MagicMock()
    redis.scan_iter.side_effect = lambda match, count: iter([f"{match}-a", f"{match}-b"])
    redis.delete.side_effect = lambda *keys: len(keys)

    deleted = invalidate_user_caches("u1", redis=redis)

    assert deleted == 10
    patterns = [call.kwargs["match"] for call in redis.scan_iter.call_args_list]
    assert all(":user:u1" in pattern for pattern in patterns)


def test_invalidation_never_raises():
    redis = MagicMock()
    redis.scan_iter.side_effect = RedisConnectionError("down")

    assert invalidate_user_caches("u1", redis=redis) == 0


def test_invalidation_without_redis_url(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    assert invalidate_user_caches("u1") == 0


def test_invalidation_skips_missing_user():
    redis = MagicMock()
    assert invalidate_user_caches("", redis=redis) == 0
    redis.scan_iter.assert_not_called()
