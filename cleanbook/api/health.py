"""
Liveness and readiness probes.

GET /health        the process is up
GET /health/ready  Postgres answers, plus Redis and task processor status

Bookings cannot be read or written without Postgres. Redis only carries
webhook dedup keys and worker wake-ups, so losing it degrades rather than
takes the service down.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from cleanbook.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

APP_VERSION = "1.0.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Readiness: booking database unreachable: %s", str(e))
        return False
    return True


async def _redis_status() -> tuple[bool, Optional[str]]:
    """(reachable, last task processor heartbeat)"""
    from cleanbook.utils.dedup import get_redis
    from cleanbook.workers.task_processor import HEARTBEAT_KEY

    try:
        redis = await get_redis()
        await redis.ping()
    except Exception as e:
        logger.warning("Readiness: redis unreachable: %s", str(e))
        return False, None

    try:
        beat = await redis.get(HEARTBEAT_KEY)
    except Exception as e:
        logger.debug("Readiness: heartbeat read failed: %s", str(e))
        beat = None
    if isinstance(beat, bytes):
        beat = beat.decode()
    return True, beat if isinstance(beat, str) else None


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now_iso(), "version": APP_VERSION}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    redis_ok, last_heartbeat = await _redis_status()
    checks = {"database": await _database_ok(db), "redis": redis_ok}

    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "task_processor_heartbeat": last_heartbeat,
        "timestamp": _now_iso(),
    }
