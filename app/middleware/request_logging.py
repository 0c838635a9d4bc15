import logging
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

WEBHOOK_PATH_PREFIX = "/api/webhooks/"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request id + access log for every call.

    - Adds request_id (echoed as X-Request-ID)
    - Logs method, path, status, latency
    - Tags provider webhook deliveries
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed request_id=%s method=%s path=%s",
                request_id,
                request.method,
                request.url.path,
            )
            raise

        duration_ms = int((time.time() - start_time) * 1000)
        client_ip = request.client.host if request.client else None

        logger.info(
            "request_completed request_id=%s method=%s path=%s status_code=%s duration_ms=%s ip=%s webhook=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            client_ip,
            request.url.path.startswith(WEBHOOK_PATH_PREFIX),
        )

        response.headers["X-Request-ID"] = request_id
        return response
