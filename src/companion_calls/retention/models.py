"""
SQLAlchemy models for recording deletion retries and data exports.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from companion_calls.shared.database import Base, UTCDateTime, enum_column, utcnow


class DeletionReason(str, Enum):
    RETENTION_POLICY = "retention_policy"
    USER_REQUEST = "user_request"
    ACCOUNT_DELETION = "account_deletion"


class PendingDeletion(Base):
    """A recording that still has to be deleted at the provider."""

    __tablename__ = "pending_recording_deletions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    recording_sid: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    call_session_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("call_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )
    reason: Mapped[DeletionReason] = mapped_column(
        enum_column(DeletionReason, "recording_deletion_reason"),
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)


class ExportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    EXPIRED = "expired"


class ExportRequest(Base):
    """A user's request for a copy of their data."""

    __tablename__ = "data_exports"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    format: Mapped[str] = mapped_column(String(16), nullable=False, default="json")
    status: Mapped[ExportStatus] = mapped_column(
        enum_column(ExportStatus, "export_status"),
        nullable=False,
        default=ExportStatus.PENDING,
    )
    download_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
