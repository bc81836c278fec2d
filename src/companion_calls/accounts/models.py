"""
SQLAlchemy models for accounts and phone lines.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from companion_calls.shared.database import Base, UTCDateTime, enum_column, utcnow

PAYG_PLAN_ID = "payg"


class AccountStatus(str, Enum):
    """Billing status of an account."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class RetentionPeriod(str, Enum):
    """How long call recordings are kept before they are queued for deletion."""

    DAYS_30 = "30_days"
    DAYS_90 = "90_days"
    DAYS_365 = "365_days"
    INDEFINITE = "indefinite"

    @property
    def days(self) -> int | None:
        return _RETENTION_DAYS.get(self)


_RETENTION_DAYS = {
    RetentionPeriod.DAYS_30: 30,
    RetentionPeriod.DAYS_90: 90,
    RetentionPeriod.DAYS_365: 365,
}


class LineStatus(str, Enum):
    """Lifecycle status of a phone line."""

    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


class Account(Base):
    """Billing account owning one or more lines."""

    __tablename__ = "accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False, default="trial")
    status: Mapped[AccountStatus] = mapped_column(
        enum_column(AccountStatus, "account_status"),
        nullable=False,
        default=AccountStatus.TRIAL,
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    minutes_included: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Cache of the current cycle's ledger total; recomputed after every ledger write.
    minutes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cycle_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cycle_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_subscription_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    retention_period: Mapped[RetentionPeriod] = mapped_column(
        enum_column(RetentionPeriod, "retention_period"),
        nullable=False,
        default=RetentionPeriod.INDEFINITE,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    @property
    def is_payg(self) -> bool:
        return self.plan_id == PAYG_PLAN_ID

    @property
    def minutes_remaining(self) -> int:
        return max(self.minutes_included - self.minutes_used, 0)


class Line(Base):
    """A registered phone number that receives companion calls."""

    __tablename__ = "lines"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_e164: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    quiet_hours_start: Mapped[str | None] = mapped_column(String(8), nullable=True)
    quiet_hours_end: Mapped[str | None] = mapped_column(String(8), nullable=True)
    do_not_call: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    opted_out_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[LineStatus] = mapped_column(
        enum_column(LineStatus, "line_status"),
        nullable=False,
        default=LineStatus.ACTIVE,
    )
    phone_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    inbound_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    consecutive_missed_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missed_alert_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_successful_call_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_scheduled_call_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
