import redis.asyncio as redis_async

from relay.config import settings
from relay.logging_config import get_logger

logger = get_logger("redis")

_redis_client = None


def get_redis():
    """Shared client, created on first use; None when it cannot be built."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.redis_url:
        return None
    try:
        _redis_client = redis_async.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
        )
    except Exception as exc:
        logger.warning("Redis client init failed", extra={"context": {"error": str(exc)}})
        _redis_client = None
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
    finally:
        _redis_client = None


def create_subscriber_client():
    """Dedicated client for pub/sub; blocking reads must not hit the short socket timeout."""
    return redis_async.from_url(settings.redis_url, decode_responses=True)
