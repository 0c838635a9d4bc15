from __future__ import annotations

import os

from redis import Redis
from redis.asyncio import Redis as AsyncRedis

_redis_client: Redis | None = None
_async_redis_client: AsyncRedis | None = None


def _require_redis_url() -> str:
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        raise RuntimeError("REDIS_URL not set")
    return redis_url


def get_redis() -> Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(
            _require_redis_url(),
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
    return _redis_client


def get_async_redis() -> AsyncRedis:
    global _async_redis_client
    if _async_redis_client is None:
        _async_redis_client = AsyncRedis.from_url(
            _require_redis_url(),
            decode_responses=True,
            socket_connect_timeout=2,
        )
    return _async_redis_client
