"""
Async SQLAlchemy engine and sessions for the booking store.

Services own their transactions: every write path commits (or rolls back)
explicitly, so get_db only guarantees the session is closed and that a
request failing mid-transaction leaves nothing half-written.
expire_on_commit=False keeps committed bookings readable for the response.
"""
import logging
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine = None
_async_session_factory = None


class Base(DeclarativeBase):
    pass


def _engine_options(settings) -> dict:
    options = {"echo": settings.app_env == "development"}
    # SQLite (local runs) has no connection pool to size
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    return options


def _get_engine():
    global _engine
    if _engine is None:
        from cleanbook.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_options(settings))
    return _engine


def _get_session_factory():
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            _get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _async_session_factory


def async_session_factory() -> AsyncSession:
    """A fresh session outside the request cycle (task processor, deferred webhooks)."""
    return _get_session_factory()()


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a request-scoped session."""
    async with _get_session_factory()() as session:
        try:
            yield session
        except Exception as e:
            if session.in_transaction():
                logger.debug("Request failed with an open transaction, rolling back: %s", str(e))
                await session.rollback()
            raise
