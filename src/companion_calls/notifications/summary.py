"""
Weekly call summary per line.

The week is the seven local days before today in the line's timezone. Test
calls are left out. Only calls placed by a schedule count towards the answer
rate; the average duration covers every answered call.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.models import Line
from companion_calls.billing.models import MinuteLedgerEntry
from companion_calls.calls.missed import is_call_answered
from companion_calls.calls.models import CallSession
from companion_calls.calls.repository import CallSessionRepository
from companion_calls.notifications.client import WeeklySummary
from companion_calls.scheduling.timezone import resolve_local, validate_timezone
from companion_calls.shared.exceptions import NotFoundError

ANSWER_RATE_DROP_WARNING = 0.2
MIN_MISSED_FOR_WARNING = 2


def _local_midnight(day: date, tz_name: str) -> datetime:
    zone = validate_timezone(tz_name)
    return resolve_local(datetime.combine(day, time()), zone, prefer_later=False, operation="weekly_summary").instant


def _scheduled(calls: Sequence[CallSession]) -> list[CallSession]:
    return [c for c in calls if c.is_schedule_linked]


def _answered(calls: Sequence[CallSession]) -> list[CallSession]:
    return [c for c in calls if is_call_answered(c.answered_by, c.seconds_connected)]


def answer_rate(calls: Sequence[CallSession]) -> float | None:
    scheduled = _scheduled(calls)
    if not scheduled:
        return None
    return len(_answered(scheduled)) / len(scheduled)


async def build_weekly_summary(session: AsyncSession, line_id: UUID, now: datetime | None = None) -> WeeklySummary:
    line = await session.get(Line, line_id)
    if line is None:
        raise NotFoundError(message=f"Line {line_id} not found", details={"line_id": str(line_id)})

    now = now or datetime.now(timezone.utc)
    zone = validate_timezone(line.timezone)
    week_end_date = now.astimezone(zone).date() - timedelta(days=1)
    week_start_date = week_end_date - timedelta(days=6)

    start = _local_midnight(week_start_date, line.timezone)
    end = _local_midnight(week_end_date + timedelta(days=1), line.timezone)
    prior_start = _local_midnight(week_start_date - timedelta(days=7), line.timezone)

    repo = CallSessionRepository(session)
    current = [c for c in await repo.list_for_line(line_id, start, end) if not c.is_test_call]
    prior = [c for c in await repo.list_for_line(line_id, prior_start, start) if not c.is_test_call]

    scheduled = _scheduled(current)
    answered_scheduled = _answered(scheduled)
    missed = max(len(scheduled) - len(answered_scheduled), 0)

    answered_all = _answered(current)
    avg_duration = (
        round(sum(c.seconds_connected or 0 for c in answered_all) / len(answered_all) / 60)
        if answered_all
        else None
    )

    prior_rate = answer_rate(prior)
    current_rate = len(answered_scheduled) / len(scheduled) if scheduled else 0.0
    rate_drop = max(prior_rate - current_rate, 0.0) if prior_rate is not None else 0.0
    show_warning = prior_rate is not None and rate_drop >= ANSWER_RATE_DROP_WARNING and missed >= MIN_MISSED_FOR_WARNING

    billable = await session.execute(
        select(func.coalesce(func.sum(MinuteLedgerEntry.billable_minutes), 0)).where(
            MinuteLedgerEntry.line_id == line_id,
            MinuteLedgerEntry.created_at >= start,
            MinuteLedgerEntry.created_at < end,
        )
    )

    return WeeklySummary(
        line_id=line.id,
        account_id=line.account_id,
        line_name=line.display_name or line.phone_e164,
        timezone=line.timezone,
        week_start_date=week_start_date,
        week_end_date=week_end_date,
        scheduled_calls=len(scheduled),
        answered_calls=len(answered_scheduled),
        missed_calls=missed,
        show_missed_calls_warning=show_warning,
        avg_duration_minutes=avg_duration,
        billable_minutes=int(billable.scalar_one()),
    )
