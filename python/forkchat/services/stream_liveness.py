"""Generation liveness marker.

A Redis key that exists while some process is actively driving a
generation. The state machine sets it before consuming the provider stream,
the cancel watcher refreshes it on every poll, and it is cleared in the
state machine's finally block. The stale-generation sweeper only touches
active messages without a marker, so a crashed process is detected within
the TTL while a slow but live generation is left alone.

Redis key: generation_active:{message_id}
TTL: 600 seconds (sliding)
"""

from redis.exceptions import RedisError

from forkchat.logging import get_logger

logger = get_logger(__name__)

LIVENESS_TTL_SECONDS = 600


def liveness_key(message_id: str) -> str:
    return f"generation_active:{message_id}"


async def set_liveness_marker(redis_client, message_id: str) -> None:
    if redis_client is None:
        return
    try:
        await redis_client.set(liveness_key(message_id), "1", ex=LIVENESS_TTL_SECONDS)
    except (RedisError, OSError) as e:
        logger.warning("liveness_set_failed", message_id=message_id, error=str(e))


async def refresh_liveness_marker(redis_client, message_id: str) -> None:
    if redis_client is None:
        return
    try:
        await redis_client.expire(liveness_key(message_id), LIVENESS_TTL_SECONDS)
    except (RedisError, OSError) as e:
        # Non-critical; the next poll tries again
        logger.debug("liveness_refresh_failed", message_id=message_id, error=str(e))


async def clear_liveness_marker(redis_client, message_id: str) -> None:
    if redis_client is None:
        return
    try:
        await redis_client.delete(liveness_key(message_id))
    except (RedisError, OSError) as e:
        logger.warning("liveness_clear_failed", message_id=message_id, error=str(e))


def check_liveness_marker(redis_client, message_id: str) -> bool:
    """Check for a marker with a synchronous client (Celery worker side).

    Returns False when Redis is unavailable; the sweeper's age threshold
    still protects generations that are merely slow.
    """
    if redis_client is None:
        return False
    try:
        return bool(redis_client.exists(liveness_key(message_id)))
    except (RedisError, OSError) as e:
        logger.warning("liveness_check_failed", message_id=message_id, error=str(e))
        return False
