"""
SQLAlchemy models for the minute ledger.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from companion_calls.shared.database import Base, UTCDateTime, enum_column, utcnow


class BillableType(str, Enum):
    """How the minutes of one call are billed."""

    TRIAL = "trial"
    INCLUDED = "included"
    OVERAGE = "overage"
    PAYG = "payg"

    @property
    def is_metered(self) -> bool:
        """Minutes that must be reported to the payment processor."""
        return self in (BillableType.OVERAGE, BillableType.PAYG)


def ledger_idempotency_key(call_session_id: UUID) -> str:
    return f"call_{call_session_id}"


class MinuteLedgerEntry(Base):
    """Billable usage of one call session. At most one row per session."""

    __tablename__ = "minute_ledger"

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
    )
    call_session_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("call_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    seconds_connected: Mapped[int] = mapped_column(Integer, nullable=False)
    billable_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    billable_type: Mapped[BillableType] = mapped_column(
        enum_column(BillableType, "billable_type"),
        nullable=False,
    )
    cycle_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cycle_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reported: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reported_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    usage_record_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)
