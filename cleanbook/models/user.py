"""
ApplicationUser model - minimal identity record.

Authentication lives in the identity service; this table only backs booking
ownership and the user projection used by reporting.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from cleanbook.database import Base

ROLE_ADMIN = "admin"
ROLE_USER = "user"


class ApplicationUser(Base):
    __tablename__ = "application_users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(150))
    profile_picture: Mapped[Optional[str]] = mapped_column(String(500))
    role: Mapped[str] = mapped_column(String(20), default=ROLE_USER)  # admin, user
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    date_joined: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_application_users_role", "role"),
    )

    def __repr__(self) -> str:
        return f"<ApplicationUser {self.email} role={self.role}>"
