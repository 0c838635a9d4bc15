import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(message)s"
)

logger = logging.getLogger(__name__)

from app.core.config import get_app_env, get_cors_origins, is_notification_relay_enabled
from app.middleware.request_logging import RequestLoggingMiddleware

app = FastAPI(
    title="Audiobook Billing API",
    version="1.0.0",
)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    logger.info("Billing API starting up env=%s", get_app_env())

    if is_notification_relay_enabled():
        from app.services.notifications import RedisNotificationRelay, notification_hub
        from app.services.redis_store import get_async_redis

        try:
            relay = RedisNotificationRelay(notification_hub, get_async_redis())
        except RuntimeError as exc:
            logger.error("notification_relay_disabled reason=%s", exc)
        else:
            relay.attach()
            app.state.relay_task = asyncio.create_task(relay.listen())
            logger.info("notification_relay_started")

    logger.info("Startup completed")


@app.on_event("shutdown")
async def shutdown():
    relay_task = getattr(app.state, "relay_task", None)
    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass


from app.routes.notifications import router as notifications_router
from app.routes.subscriptions import router as subscriptions_router
from app.routes.webhooks import router as webhooks_router

app.include_router(webhooks_router)
app.include_router(notifications_router)
app.include_router(subscriptions_router)


@app.get("/health")
def health_check():
    return {
        "status": "ok",
        "service": "audiobook-billing",
        "version": "1.0.0",
    }
