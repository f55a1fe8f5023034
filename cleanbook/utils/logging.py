"""
JSON log lines that can be stitched back into one booking's story.

A correlation ID follows the work, not just the HTTP request: the middleware
binds one per request, webhook rows store it, and queued tasks carry the ID
of whatever enqueued them so a deferred reconcile logs under the original
webhook delivery.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys callers may pass through `extra=` that are worth indexing on
CONTEXT_FIELDS = (
    "booking_id",
    "subscription_id",
    "user_id",
    "payment_intent_id",
    "event_id",
    "webhook_event_id",
    "source",
    "task_id",
    "task_type",
)

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "stripe", "urllib3", "python_http_client")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: Optional[str]) -> Token:
    """Bind cid to the current context. Returns a token for reset_correlation_id."""
    return correlation_id_ctx.set(cid)


def reset_correlation_id(token: Token) -> None:
    correlation_id_ctx.reset(token)


def generate_correlation_id() -> str:
    """32-char hex (uuid4)."""
    return uuid.uuid4().hex


@contextmanager
def bound_correlation_id(cid: Optional[str] = None) -> Iterator[str]:
    """
    Run a block under cid, or a fresh ID when cid is empty.
    The previous binding is restored on exit.
    """
    cid = cid or generate_correlation_id()
    token = set_correlation_id(cid)
    try:
        yield cid
    finally:
        reset_correlation_id(token)


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per record; errors also carry their source location."""

    def __init__(self, app_env: Optional[str] = None):
        super().__init__()
        self.app_env = app_env

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": get_correlation_id(),
            "message": record.getMessage(),
        }
        if self.app_env:
            entry["env"] = self.app_env
        if record.levelno >= logging.ERROR:
            entry["location"] = f"{record.module}.{record.funcName}:{record.lineno}"

        entry.update(
            {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None}
        )

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO", app_env: Optional[str] = None) -> None:
    """Route every logger through a single JSON stdout handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter(app_env=app_env))
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
