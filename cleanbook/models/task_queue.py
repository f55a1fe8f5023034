"""
TaskQueue model - deferred work that must never block or fail a request.

Rows are written by enqueue_task and consumed by the task processor:
  send_booking_served_mail     - customer notice after a cleaning is served
  send_booking_confirmed_mail  - customer notice after scheduling or payment
  reconcile_payment_event      - replay of a webhook whose first attempt failed
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from cleanbook.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskQueue(Base):
    __tablename__ = "task_queue"
    __table_args__ = (
        Index("ix_task_queue_processing", "status", "scheduled_at", "priority"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    task_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSONB)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    priority: Mapped[int] = mapped_column(Integer, default=5)  # higher runs first

    # Correlation ID of the request or webhook that queued the task
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    error_message: Mapped[Optional[str]] = mapped_column(Text)
    result_data: Mapped[Optional[dict]] = mapped_column(JSONB)

    def __repr__(self) -> str:
        return f"<TaskQueue {self.task_type} {self.status} retry={self.retry_count}/{self.max_retries}>"
