from __future__ import annotations

import logging

from redis import Redis
from redis.exceptions import RedisError

from app.services.redis_store import get_redis

logger = logging.getLogger(__name__)

# Response-cache keys whose bodies depend on the caller's subscription.
USER_CACHE_PATTERNS = (
    "cache:*/show/*:user:{user_id}*",
    "cache:*/story/getStoryBySlugForShow*:user:{user_id}*",
    "cache:*/story/getStoryByIdForShow*:user:{user_id}*",
    "cache:*/story/getStoryBySlug*:user:{user_id}*",
    "cache:*/story/slug/*:user:{user_id}*",
)

SCAN_BATCH_SIZE = 100


def delete_pattern(redis: Redis, pattern: str) -> int:
    deleted = 0
    batch: list[str] = []
    for key in redis.scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
        batch.append(key)
        if len(batch) >= SCAN_BATCH_SIZE:
            deleted += int(redis.delete(*batch) or 0)
            batch = []
    if batch:
        deleted += int(redis.delete(*batch) or 0)
    return deleted


def invalidate_user_caches(user_id: str, redis: Redis | None = None) -> int:
    """
    Purge cached read-views embedding subscription-gated content for a user.
    This function MUST NOT raise: stale entries expire on their own TTL.
    """
    if not user_id:
        return 0

    try:
        client = redis or get_redis()
        total_deleted = 0
        for template in USER_CACHE_PATTERNS:
            total_deleted += delete_pattern(client, template.format(user_id=user_id))
    except (RedisError, RuntimeError) as exc:
        logger.error("cache_invalidation_failed user_id=%s error=%s", user_id, exc)
        return 0

    logger.info("cache_invalidated user_id=%s deleted_keys=%s", user_id, total_deleted)
    return total_deleted
