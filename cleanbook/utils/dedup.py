"""
Shared Redis client plus the webhook redelivery filter.

Stripe redelivers events it believes were missed, sometimes several at once.
The first delivery of an event ID sets a Redis mark holding the payload
fingerprint; later deliveries inside the window are dropped before they reach
the database. The webhook_events unique constraint stays the real guarantee,
so a Redis outage only costs a database round trip.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Stripe stops redelivering after three days
DEDUP_WINDOW_SECONDS = 72 * 3600
KEY_PREFIX = "cleanbook:webhook"

_redis_client = None


async def get_redis():
    """Lazily connect; also used for task wake-ups and the worker heartbeat."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from cleanbook.config import get_settings
        _redis_client = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        client, _redis_client = _redis_client, None
        await client.aclose()


def make_event_key(source: str, event_id: str) -> str:
    return f"{KEY_PREFIX}:{source}:{event_id}"


async def is_duplicate_event(source: str, event_id: str, fingerprint: Optional[str] = None) -> bool:
    """
    True when event_id was already delivered inside the window.

    The first caller wins the SET NX and gets False. A repeat whose
    fingerprint differs from the first delivery is still a duplicate, but
    is logged since the processor should never change an event's body.
    Redis errors count as "not seen".
    """
    key = make_event_key(source, event_id)
    mark = fingerprint or "1"
    try:
        redis = await get_redis()
        if await redis.set(key, mark, nx=True, ex=DEDUP_WINDOW_SECONDS):
            return False
        first = await redis.get(key)
    except Exception as e:
        logger.warning("Dedup check skipped for %s (%s): %s", event_id, source, str(e))
        return False

    if fingerprint and isinstance(first, str) and first != fingerprint:
        logger.warning(
            "Redelivered %s event %s has a different payload than the first delivery",
            source, event_id, extra={"event_id": event_id, "source": source},
        )
    else:
        logger.info("Dropping redelivered %s event %s", source, event_id, extra={"event_id": event_id})
    return True


async def forget_event(source: str, event_id: str) -> None:
    """Clear the mark so the next redelivery is processed. Never raises."""
    try:
        redis = await get_redis()
        await redis.delete(make_event_key(source, event_id))
    except Exception as e:
        logger.warning("Could not clear dedup mark for %s: %s", event_id, str(e))
