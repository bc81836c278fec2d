"""
SQLAlchemy models for call sessions and their event log.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from companion_calls.shared.database import Base, UTCDateTime, enum_column, utcnow


class CallStatus(str, Enum):
    """Lifecycle status of a call session."""

    CREATED = "created"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.FAILED, CallStatus.CANCELED})


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class EndReason(str, Enum):
    """Why a call session ended."""

    HANGUP = "hangup"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    ERROR = "error"
    PROVIDER_ERROR = "provider_error"
    OPTED_OUT = "opted_out"
    QUIET_HOURS = "quiet_hours"
    ACCESS_DENIED = "access_denied"
    LOST_CALLBACK = "lost_callback"


# Failures decided by our own guards. They say nothing about whether the
# person would have picked up.
DENIAL_END_REASONS = frozenset({EndReason.OPTED_OUT, EndReason.QUIET_HOURS, EndReason.ACCESS_DENIED})


class AnsweredBy(str, Enum):
    """Answering machine detection result."""

    HUMAN = "human"
    MACHINE = "machine"
    FAX = "fax"
    UNKNOWN = "unknown"


class CallEventType(str, Enum):
    DTMF = "dtmf"
    TOOL_CALL = "tool_call"
    STATE_CHANGE = "state_change"
    ERROR = "error"
    SAFETY_TIER = "safety_tier"


class CallSession(Base):
    """One phone call and its full lifecycle record."""

    __tablename__ = "call_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("lines.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    direction: Mapped[CallDirection] = mapped_column(
        enum_column(CallDirection, "call_direction"),
        nullable=False,
    )
    status: Mapped[CallStatus] = mapped_column(
        enum_column(CallStatus, "call_status"),
        nullable=False,
        default=CallStatus.CREATED,
    )
    provider_call_id: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    from_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    connected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    seconds_connected: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_reason: Mapped[EndReason | None] = mapped_column(
        enum_column(EndReason, "call_end_reason"),
        nullable=True,
    )
    answered_by: Mapped[AnsweredBy | None] = mapped_column(
        enum_column(AnsweredBy, "call_answered_by"),
        nullable=True,
    )

    reminder_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    is_reminder_call: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_test_call: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scheduler_idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True, unique=True)

    tool_invocations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    recording_sid: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    recording_deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    recording_deletion_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_call_sessions_status_created", "status", "created_at"),
    )

    @property
    def is_schedule_linked(self) -> bool:
        return bool(self.scheduler_idempotency_key) and self.scheduler_idempotency_key.startswith("schedule:")


class CallEvent(Base):
    """Append-only event log entry for a call session."""

    __tablename__ = "call_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    call_session_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("call_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[CallEventType] = mapped_column(enum_column(CallEventType, "call_event_type"), nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
