"""
Queue work for the task processor.

The row is committed in a session of its own, so a task queued from a request
survives whatever happens to that request's transaction afterwards. Tasks due
now also get an LPUSH on TASK_NOTIFY_KEY, which wakes the processor out of its
BRPOP; delayed tasks are left for its next poll.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from cleanbook.database import async_session_factory
from cleanbook.models.task_queue import TaskQueue
from cleanbook.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

TASK_NOTIFY_KEY = "cleanbook:task_notify"


async def _wake_processor(task_id: str) -> None:
    try:
        from cleanbook.utils.dedup import get_redis
        redis = await get_redis()
        await redis.lpush(TASK_NOTIFY_KEY, task_id)
    except Exception as e:
        # The processor still finds the row on its fallback poll
        logger.debug("Task wake-up not delivered for %s: %s", task_id[:8], str(e))


async def enqueue_task(
    task_type: str,
    payload: Optional[dict] = None,
    priority: int = 5,
    delay_seconds: int = 0,
    max_retries: int = 3,
) -> str:
    """
    Insert a pending task and return its ID.

    Args:
        task_type: handler name, e.g. send_booking_confirmed_mail
        payload: JSON-serializable handler input
        priority: higher is picked first (0-10)
        delay_seconds: earliest start, relative to now
        max_retries: attempts before the task is marked failed
    """
    task = TaskQueue(
        task_type=task_type,
        payload=payload or {},
        priority=priority,
        max_retries=max_retries,
        correlation_id=get_correlation_id(),
        scheduled_at=datetime.now(timezone.utc) + timedelta(seconds=max(delay_seconds, 0)),
    )

    async with async_session_factory() as db:
        db.add(task)
        await db.commit()
        task_id = str(task.id)

    logger.info(
        "Queued %s (priority=%d, delay=%ds) as %s",
        task_type, priority, delay_seconds, task_id[:8],
        extra={"task_type": task_type, "task_id": task_id},
    )

    if delay_seconds <= 0:
        await _wake_processor(task_id)

    return task_id
