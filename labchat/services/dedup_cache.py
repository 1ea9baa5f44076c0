"""Optional Redis fast path for duplicate deliveries.

Ids are remembered only after a message has been committed, so a delivery
that failed half-way is never mistaken for a duplicate. The message log's
unique constraint stays the source of truth; Redis errors are ignored.
"""

import redis.asyncio as redis_async

from labchat.config import settings
from labchat.logging_config import get_logger

logger = get_logger("dedup_cache")

_redis_client = None
_redis_url = None


def _get_redis():
    global _redis_client, _redis_url
    redis_url = settings.redis_url
    if not redis_url:
        return None
    if _redis_client is None or _redis_url != redis_url:
        _redis_client = redis_async.from_url(
            redis_url,
            socket_timeout=settings.dedup_socket_timeout_seconds,
            socket_connect_timeout=settings.dedup_socket_timeout_seconds,
        )
        _redis_url = redis_url
    return _redis_client


def _key(message_id: str) -> str:
    return f"labchat:dedup:{message_id}"


async def was_processed(message_id: str, redis_client=None) -> bool:
    redis_client = redis_client or _get_redis()
    if not redis_client:
        return False
    try:
        return bool(await redis_client.exists(_key(message_id)))
    except Exception as exc:
        logger.warning("Dedup cache unavailable", extra={"context": {"error": str(exc)}})
        return False


async def mark_processed(message_id: str, redis_client=None) -> None:
    redis_client = redis_client or _get_redis()
    if not redis_client:
        return
    try:
        await redis_client.set(_key(message_id), "1", ex=settings.dedup_ttl_seconds)
    except Exception as exc:
        logger.warning("Dedup cache write failed", extra={"context": {"error": str(exc)}})
