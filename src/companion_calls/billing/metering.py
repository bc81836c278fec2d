"""
Usage metering ledger.

Turns a completed call's connected seconds into billable minutes, classifies
them and writes exactly one ledger entry per call session. The ledger's
unique idempotency key is the at-most-once mechanism: a uniqueness violation
on insert means the call was already recorded.

Overage and pay-as-you-go minutes are reported to the payment processor
right after the insert. An entry is marked reported only once the report
succeeded, so a crash in between can lead to a second report later; the
Stripe Idempotency-Key narrows that window but does not close it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.models import Account, AccountStatus
from companion_calls.billing.models import BillableType, MinuteLedgerEntry, ledger_idempotency_key
from companion_calls.billing.payments import UsageReport, UsageReportingError
from companion_calls.calls.models import CallSession, CallStatus
from companion_calls.config import Settings, get_settings
from companion_calls.shared.exceptions import NotFoundError
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)

MIN_BILLABLE_SECONDS = 30


class UsageReporter(Protocol):
    async def report_usage(self, report: UsageReport) -> str: ...


def calculate_billable_minutes(seconds: int, min_billable_seconds: int = MIN_BILLABLE_SECONDS) -> int:
    """0 below the billable threshold, otherwise whole minutes rounded up."""
    if seconds < min_billable_seconds:
        return 0
    return math.ceil(seconds / 60)


def is_in_trial(account: Account, at: datetime) -> bool:
    if account.status != AccountStatus.TRIAL:
        return False
    return account.trial_ends_at is None or at < account.trial_ends_at


def determine_billable_type(
    account: Account,
    minutes: int,
    cycle_minutes_used: int,
    at: datetime,
) -> BillableType:
    """Classify ``minutes`` for ``account``.

    Precedence: pay-as-you-go plan, then trial window, then the included
    allotment for the cycle.
    """
    if account.is_payg:
        return BillableType.PAYG
    if is_in_trial(account, at):
        return BillableType.TRIAL
    if cycle_minutes_used + minutes > account.minutes_included:
        return BillableType.OVERAGE
    return BillableType.INCLUDED


@dataclass(frozen=True)
class UsageSummary:
    account_id: UUID
    minutes_included: int
    minutes_used: int
    minutes_remaining: int
    overage_minutes: int
    cycle_start: datetime | None
    cycle_end: datetime | None


class MeteringService:
    """Writes ledger entries and keeps cached account usage in sync."""

    def __init__(
        self,
        session: AsyncSession,
        reporter: UsageReporter | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._reporter = reporter
        self._settings = settings or get_settings()

    async def _cycle_minutes(self, account: Account, billable_type: BillableType | None = None) -> int:
        stmt = select(func.coalesce(func.sum(MinuteLedgerEntry.billable_minutes), 0)).where(
            MinuteLedgerEntry.account_id == account.id
        )
        if account.cycle_start is not None:
            stmt = stmt.where(MinuteLedgerEntry.created_at >= account.cycle_start)
        if account.cycle_end is not None:
            stmt = stmt.where(MinuteLedgerEntry.created_at < account.cycle_end)
        if billable_type is not None:
            stmt = stmt.where(MinuteLedgerEntry.billable_type == billable_type)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def record_usage(self, call: CallSession) -> MinuteLedgerEntry | None:
        """Write the ledger entry for a completed call.

        Returns None when nothing is billable or the call was already recorded.
        Raises ``UsageReportingError`` when the entry was written but the
        payment processor report failed; the entry stays unreported and is
        picked up by ``report_unreported_usage``.
        """
        if call.status != CallStatus.COMPLETED:
            return None

        session_id = call.id
        key = ledger_idempotency_key(session_id)
        seconds = call.seconds_connected or 0
        minutes = calculate_billable_minutes(seconds, self._settings.min_billable_seconds)
        if call.is_reminder_call:
            minutes = max(minutes, 1)
        if minutes == 0:
            return None

        existing = await self._session.execute(
            select(MinuteLedgerEntry.id).where(MinuteLedgerEntry.idempotency_key == key)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info("Usage already recorded", extra={"call_session_id": str(session_id)})
            return None

        account = await self._session.get(Account, call.account_id)
        if account is None:
            raise NotFoundError(message=f"Account {call.account_id} not found")

        used = await self._cycle_minutes(account)
        billable_type = determine_billable_type(account, minutes, used, call.created_at)

        entry = MinuteLedgerEntry(
            account_id=account.id,
            line_id=call.line_id,
            call_session_id=session_id,
            idempotency_key=key,
            direction=call.direction.value,
            seconds_connected=seconds,
            billable_minutes=minutes,
            billable_type=billable_type,
            cycle_start=account.cycle_start,
            cycle_end=account.cycle_end,
        )
        self._session.add(entry)
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            logger.info("Usage already recorded (concurrent insert)", extra={"call_session_id": str(session_id)})
            return None

        logger.info(
            "Usage recorded",
            extra={
                "call_session_id": str(session_id),
                "account_id": str(entry.account_id),
                "seconds_connected": seconds,
                "billable_minutes": minutes,
                "billable_type": billable_type.value,
            },
        )

        await self.recompute_account_usage(entry.account_id)

        if billable_type.is_metered:
            await self._report(entry, account.billing_subscription_id)
        return entry

    async def recompute_account_usage(self, account_id: UUID) -> int:
        """Refresh the cached ``minutes_used`` from the ledger."""
        account = await self._session.get(Account, account_id, populate_existing=True)
        if account is None:
            raise NotFoundError(message=f"Account {account_id} not found")
        used = await self._cycle_minutes(account)
        await self._session.execute(update(Account).where(Account.id == account_id).values(minutes_used=used))
        await self._session.commit()
        account.minutes_used = used
        return used

    async def _report(self, entry: MinuteLedgerEntry, subscription_id: str | None) -> None:
        if self._reporter is None:
            logger.warning("No usage reporter configured; entry left unreported", extra={"entry_id": str(entry.id)})
            return
        if not subscription_id:
            raise UsageReportingError(
                message="Account has no billing subscription",
                details={"account_id": str(entry.account_id), "entry_id": str(entry.id)},
            )

        try:
            record_id = await self._reporter.report_usage(
                UsageReport(
                    subscription_id=subscription_id,
                    quantity=entry.billable_minutes,
                    timestamp=entry.created_at,
                    idempotency_key=entry.idempotency_key,
                )
            )
        except UsageReportingError:
            logger.exception(
                "Usage reporting failed",
                extra={"entry_id": str(entry.id), "account_id": str(entry.account_id)},
            )
            raise

        await self._session.execute(
            update(MinuteLedgerEntry)
            .where(MinuteLedgerEntry.id == entry.id)
            .values(reported=True, reported_at=datetime.now(timezone.utc), usage_record_id=record_id)
        )
        await self._session.commit()
        entry.reported = True
        entry.usage_record_id = record_id

    async def report_unreported_usage(self, limit: int = 50) -> int:
        """Retry reporting metered entries that are still unreported."""
        if self._reporter is None:
            return 0
        stmt = (
            select(MinuteLedgerEntry, Account.billing_subscription_id)
            .join(Account, Account.id == MinuteLedgerEntry.account_id)
            .where(
                MinuteLedgerEntry.reported.is_(False),
                MinuteLedgerEntry.billable_type.in_([BillableType.OVERAGE, BillableType.PAYG]),
            )
            .order_by(MinuteLedgerEntry.created_at)
            .limit(limit)
        )
        rows = (await self._session.execute(stmt)).all()

        reported = 0
        for entry, subscription_id in rows:
            try:
                await self._report(entry, subscription_id)
            except UsageReportingError:
                continue
            reported += 1
        if rows:
            logger.info("Unreported usage retried", extra={"candidates": len(rows), "reported": reported})
        return reported

    async def get_usage_summary(self, account_id: UUID) -> UsageSummary:
        account = await self._session.get(Account, account_id)
        if account is None:
            raise NotFoundError(message=f"Account {account_id} not found")
        used = await self._cycle_minutes(account)
        overage = await self._cycle_minutes(account, BillableType.OVERAGE)
        return UsageSummary(
            account_id=account.id,
            minutes_included=account.minutes_included,
            minutes_used=used,
            minutes_remaining=max(account.minutes_included - used, 0),
            overage_minutes=overage,
            cycle_start=account.cycle_start,
            cycle_end=account.cycle_end,
        )

    def low_minutes_level(self, minutes_remaining: int) -> str | None:
        """``"critical"``, ``"low"`` or None for a remaining-minutes figure."""
        if minutes_remaining <= self._settings.low_minutes_critical:
            return "critical"
        if minutes_remaining <= self._settings.low_minutes_warning:
            return "low"
        return None

    async def should_warn_low_minutes(self, account_id: UUID) -> str | None:
        summary = await self.get_usage_summary(account_id)
        account = await self._session.get(Account, account_id)
        if account is not None and account.is_payg:
            return None
        return self.low_minutes_level(summary.minutes_remaining)
