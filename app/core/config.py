from __future__ import annotations

import os

NON_PRODUCTION_ENVS = {"development", "local", "test"}

DEFAULT_RAZORPAY_API_BASE_URL = "https://api.razorpay.com/v1"
DEFAULT_RAZORPAY_API_TIMEOUT_SECONDS = 8.0
DEFAULT_SSE_HEARTBEAT_SECONDS = 30.0


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def get_app_env() -> str:
    # Unset means production: signature checks stay on unless explicitly relaxed.
    return (os.getenv("APP_ENV") or "production").strip().lower()


def is_production() -> bool:
    return get_app_env() not in NON_PRODUCTION_ENVS


def get_razorpay_webhook_secret() -> str | None:
    return os.getenv("RAZORPAY_WEBHOOK_SECRET") or os.getenv("RAZORPAY_KEY_SECRET")


def get_revenuecat_webhook_secret() -> str | None:
    secret = os.getenv("REVENUECAT_WEBHOOK_SECRET")
    return secret.strip() if secret and secret.strip() else None


def get_razorpay_credentials() -> tuple[str | None, str | None]:
    return os.getenv("RAZORPAY_KEY_ID"), os.getenv("RAZORPAY_KEY_SECRET")


def get_razorpay_api_base_url() -> str:
    return (os.getenv("RAZORPAY_API_BASE_URL") or DEFAULT_RAZORPAY_API_BASE_URL).rstrip("/")


def get_razorpay_api_timeout() -> float:
    return _env_float("RAZORPAY_API_TIMEOUT_SECONDS", DEFAULT_RAZORPAY_API_TIMEOUT_SECONDS)


def get_sse_heartbeat_seconds() -> float:
    return _env_float("SSE_HEARTBEAT_SECONDS", DEFAULT_SSE_HEARTBEAT_SECONDS)


def is_stale_event_guard_enabled() -> bool:
    return _env_flag("SUBSCRIPTION_STALE_EVENT_GUARD")


def is_notification_relay_enabled() -> bool:
    return _env_flag("NOTIFICATIONS_REDIS_RELAY")


def get_cors_origins() -> list[str]:
    configured_origins = os.getenv("CORS_ORIGINS", "").strip()
    if configured_origins:
        return [origin.strip() for origin in configured_origins.split(",") if origin.strip()]
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
