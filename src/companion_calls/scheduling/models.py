"""
SQLAlchemy models for recurring schedules and reminders.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from companion_calls.scheduling.recurrence import Recurrence, from_columns
from companion_calls.shared.database import Base, UTCDateTime, enum_column, utcnow


class RunResult(str, Enum):
    """Outcome of the latest schedule run."""

    SUCCESS = "success"
    MISSED = "missed"
    SUPPRESSED_QUIET_HOURS = "suppressed_quiet_hours"
    SUPPRESSED_OPT_OUT = "suppressed_opt_out"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    MISSED = "missed"
    CANCELED = "canceled"
    COMPLETED = "completed"


class _RecurrenceColumns:
    """Tagged-union recurrence stored as plain columns."""

    frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    interval: Mapped[int] = mapped_column("repeat_interval", Integer, nullable=False, default=1)
    days_of_week: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)

    @property
    def recurrence(self) -> Recurrence | None:
        return from_columns(self.frequency, self.interval, self.days_of_week, self.day_of_month)


class Schedule(_RecurrenceColumns, Base):
    """Recurring rule describing when outbound calls to a line are placed."""

    __tablename__ = "schedules"

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
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    time_of_day: Mapped[str] = mapped_column(String(8), nullable=False)
    # Retry policy: placement retries per occurrence; None uses the service default.
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_result: Mapped[RunResult | None] = mapped_column(
        enum_column(RunResult, "schedule_run_result"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Reminder(_RecurrenceColumns, Base):
    """A one-time or recurring reminder delivered by phone."""

    __tablename__ = "reminders"

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
    message: Mapped[str] = mapped_column(Text, nullable=False)
    due_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    time_of_day: Mapped[str | None] = mapped_column(String(8), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[ReminderStatus] = mapped_column(
        enum_column(ReminderStatus, "reminder_status"),
        nullable=False,
        default=ReminderStatus.SCHEDULED,
    )
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_call_session_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
