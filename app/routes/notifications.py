import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.core.config import get_sse_heartbeat_seconds
from app.routes.auth import get_current_user, get_stream_user
from app.services.notifications import SSEChannel, event_stream, notification_hub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/subscribe")
async def subscribe(request: Request, current_user=Depends(get_stream_user)):
    user_id = str(current_user.id)
    channel = SSEChannel()
    notification_hub.add_connection(user_id, channel)

    logger.info(
        "sse_subscribe user_id=%s active_connections=%s",
        user_id,
        notification_hub.active_connections_count(),
    )

    return StreamingResponse(
        event_stream(
            notification_hub,
            user_id,
            channel,
            heartbeat_seconds=get_sse_heartbeat_seconds(),
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/status")
def status(current_user=Depends(get_current_user)):
    return {
        "status": "ok",
        "active_connections": notification_hub.active_connections_count(),
        "active_users": notification_hub.active_users_count(),
        "user_connections": len(notification_hub.connections_for(str(current_user.id))),
    }
