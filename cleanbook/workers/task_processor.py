"""
Task processor - runs queued booking mails and deferred webhook reconciliation.

Wake-ups arrive as LPUSHes on TASK_NOTIFY_KEY (see task_dispatch). Without
Redis the loop falls back to polling the table every POLL_INTERVAL_SECONDS.

Each task is claimed with a conditional UPDATE (pending -> processing) before
it runs, so several app instances can share the queue without mailing a
customer twice. Handlers never change booking state themselves: mails only
send, and reconcile_payment_event goes back through the reconciliation engine.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.database import async_session_factory
from cleanbook.errors import UpstreamError
from cleanbook.models.task_queue import TaskQueue
from cleanbook.services.task_dispatch import TASK_NOTIFY_KEY
from cleanbook.utils.logging import bound_correlation_id

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30
MAX_TASKS_PER_CYCLE = 10
BRPOP_TIMEOUT = 30
HEARTBEAT_KEY = "cleanbook:worker_health:task_processor"
BACKOFF_BASE_SECONDS = 30
BACKOFF_FACTOR = 4
# A claimed task older than this belongs to a worker that died mid-run
STALE_PROCESSING_SECONDS = 15 * 60


def retry_delay(attempt: int) -> timedelta:
    """Wait before retry number `attempt` (1-based): 30s, 120s, 480s, ..."""
    return timedelta(seconds=BACKOFF_BASE_SECONDS * BACKOFF_FACTOR ** max(attempt - 1, 0))


async def _heartbeat():
    try:
        from cleanbook.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=120)
    except Exception as e:
        logger.debug("Heartbeat not written: %s", str(e))


async def _wait_for_work() -> None:
    """Block until a task is announced or the poll interval passes."""
    try:
        from cleanbook.utils.dedup import get_redis
        redis = await get_redis()
        if await redis.brpop(TASK_NOTIFY_KEY, timeout=BRPOP_TIMEOUT):
            # One cycle picks up everything due; further wake-ups are redundant
            while await redis.rpop(TASK_NOTIFY_KEY):
                pass
    except Exception as e:
        logger.debug("No Redis wake-ups, sleeping %ds: %s", POLL_INTERVAL_SECONDS, str(e))
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def run_task_processor():
    logger.info("Task processor running (BRPOP %ds, poll fallback %ds)", BRPOP_TIMEOUT, POLL_INTERVAL_SECONDS)

    while True:
        try:
            ran = await process_cycle()
        except Exception as e:
            logger.error("Task cycle failed: %s", str(e), exc_info=True)
            ran = 0

        await _heartbeat()

        # A full batch means more work is probably due already
        if ran < MAX_TASKS_PER_CYCLE:
            await _wait_for_work()


async def _claim(db: AsyncSession, task: TaskQueue) -> bool:
    """Move task to processing unless another worker already has it."""
    started_at = datetime.now(timezone.utc)
    result = await db.execute(
        update(TaskQueue)
        .where(TaskQueue.id == task.id, TaskQueue.status == "pending")
        .values(status="processing", started_at=started_at)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        logger.debug("Task %s already claimed elsewhere", str(task.id)[:8])
        return False
    # Load the claimed row as committed state so a later reset to pending is
    # seen as a change and flushed
    await db.refresh(task)
    return True


async def _requeue_stale(db: AsyncSession, now: datetime) -> int:
    """Put tasks left in processing by a crashed worker back in the queue."""
    result = await db.execute(
        update(TaskQueue)
        .where(
            TaskQueue.status == "processing",
            TaskQueue.started_at < now - timedelta(seconds=STALE_PROCESSING_SECONDS),
        )
        .values(status="pending", scheduled_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.warning("Requeued %d task(s) stuck in processing", result.rowcount)
    return result.rowcount


async def process_cycle() -> int:
    """Claim and run due tasks, highest priority first. Returns how many ran."""
    now = datetime.now(timezone.utc)

    async with async_session_factory() as db:
        await _requeue_stale(db, now)
        result = await db.execute(
            select(TaskQueue)
            .where(TaskQueue.status == "pending", TaskQueue.scheduled_at <= now)
            .order_by(TaskQueue.priority.desc(), TaskQueue.created_at)
            .limit(MAX_TASKS_PER_CYCLE)
        )
        due = result.scalars().all()

        ran = 0
        for task in due:
            if not await _claim(db, task):
                continue
            await _execute_task(task)
            await db.commit()
            ran += 1

    if ran:
        logger.info("Ran %d of %d due tasks", ran, len(due))
    return ran


async def _execute_task(task: TaskQueue) -> None:
    """Run one claimed task under the correlation ID it was queued with."""
    with bound_correlation_id(task.correlation_id):
        log_extra = {"task_type": task.task_type, "task_id": str(task.id)}
        try:
            result = await _dispatch_task(task.task_type, task.payload or {})
        except Exception as e:
            _record_failure(task, str(e), log_extra)
            return

        task.status = "completed"
        task.completed_at = datetime.now(timezone.utc)
        task.result_data = result
        logger.info("Task %s done: %s", str(task.id)[:8], task.task_type, extra=log_extra)


def _record_failure(task: TaskQueue, error: str, log_extra: dict) -> None:
    task.retry_count = task.retry_count + 1
    task.error_message = error

    if task.retry_count >= task.max_retries:
        task.status = "failed"
        task.completed_at = datetime.now(timezone.utc)
        logger.error(
            "Task %s gave up after %d attempts: %s",
            str(task.id)[:8], task.retry_count, error, extra=log_extra,
        )
        return

    delay = retry_delay(task.retry_count)
    task.status = "pending"
    task.scheduled_at = datetime.now(timezone.utc) + delay
    logger.warning(
        "Task %s attempt %d/%d failed, retrying in %ds: %s",
        str(task.id)[:8], task.retry_count, task.max_retries, delay.total_seconds(), error,
        extra=log_extra,
    )


async def _dispatch_task(task_type: str, payload: dict) -> dict:
    handler = TASK_HANDLERS.get(task_type)
    if handler is None:
        # Retrying cannot make an unknown type runnable
        logger.warning("No handler for task type %s", task_type)
        return {"status": "skipped", "reason": f"unknown task type: {task_type}"}
    return await handler(payload)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Unparseable cleaning_date in task payload: %r", value)
        return None


async def _deliver_mail(payload: dict, send: Callable[..., Awaitable[dict]], *args) -> dict:
    email = payload.get("email")
    if not email:
        return {"status": "skipped", "reason": "no email"}

    outcome = await send(email, *args)
    if outcome.get("error"):
        raise UpstreamError(f"Booking mail not sent: {outcome['error']}")
    return {"status": "sent", "booking_id": payload.get("booking_id"), "message_id": outcome.get("message_id")}


async def _handle_send_booking_served_mail(payload: dict) -> dict:
    from cleanbook.services.transactional_email import send_booking_served_mail
    return await _deliver_mail(payload, send_booking_served_mail)


async def _handle_send_booking_confirmed_mail(payload: dict) -> dict:
    from cleanbook.services.transactional_email import send_booking_confirmed_mail
    return await _deliver_mail(
        payload, send_booking_confirmed_mail, _parse_datetime(payload.get("cleaning_date"))
    )


async def _handle_reconcile_payment_event(payload: dict) -> dict:
    """Replay a webhook event whose first processing attempt failed."""
    from cleanbook.services.payment_events import reprocess_event

    webhook_event_id = payload.get("webhook_event_id")
    if not webhook_event_id:
        return {"status": "skipped", "reason": "no webhook_event_id"}
    return await reprocess_event(webhook_event_id)


TASK_HANDLERS: dict[str, Callable[[dict], Awaitable[dict]]] = {
    "send_booking_served_mail": _handle_send_booking_served_mail,
    "send_booking_confirmed_mail": _handle_send_booking_confirmed_mail,
    "reconcile_payment_event": _handle_reconcile_payment_event,
}
