"""
Schedule and reminder management.

All validation happens here, synchronously, before anything is stored: a bad
timezone, a malformed time of day, an empty weekday set or a one-time
reminder in the past is rejected with ``ValidationError``.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.access import LineRepository
from companion_calls.accounts.models import Line
from companion_calls.scheduling.models import Reminder, ReminderStatus, Schedule
from companion_calls.scheduling.recurrence import Weekly, to_columns
from companion_calls.scheduling.schemas import ReminderCreate, ScheduleCreate
from companion_calls.scheduling.timezone import (
    first_occurrence,
    format_in_timezone,
    local_to_utc,
    parse_time_of_day,
    validate_timezone,
)
from companion_calls.shared.exceptions import NotFoundError, ValidationError
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)


class ScheduleService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._lines = LineRepository(session)

    async def create_schedule(self, data: ScheduleCreate, now: datetime | None = None) -> Schedule:
        now = now or datetime.now(timezone.utc)
        line, account = await self._lines.get_line_with_account(data.line_id)
        validate_timezone(data.timezone)
        tod = parse_time_of_day(data.time_of_day)

        recurrence = data.to_recurrence()
        if recurrence is None:
            raise ValidationError(message="A schedule needs a recurrence", details={"line_id": str(data.line_id)})
        if isinstance(recurrence, Weekly) and not recurrence.days:
            raise ValidationError(
                message="days_of_week must contain at least one day",
                details={"days_of_week": data.days_of_week or []},
            )

        next_run_at = first_occurrence(recurrence, tod.normalized, data.timezone, now)
        schedule = Schedule(
            account_id=account.id,
            line_id=line.id,
            timezone=data.timezone,
            time_of_day=tod.normalized,
            max_retries=data.max_retries,
            next_run_at=next_run_at,
            **to_columns(recurrence),
        )
        self._session.add(schedule)
        await self._session.flush()
        await self.refresh_next_scheduled_call(line.id)
        await self._session.commit()

        logger.info(
            "Schedule created",
            extra={
                "schedule_id": str(schedule.id),
                "line_id": str(line.id),
                "frequency": recurrence.frequency.value,
                "next_run_at": next_run_at.isoformat(),
                "next_run_local": format_in_timezone(next_run_at, data.timezone),
            },
        )
        return schedule

    async def create_reminder(self, data: ReminderCreate, now: datetime | None = None) -> Reminder:
        now = now or datetime.now(timezone.utc)
        line, account = await self._lines.get_line_with_account(data.line_id)
        validate_timezone(data.timezone)
        recurrence = data.to_recurrence()

        due_at = local_to_utc(data.due_local, data.timezone)
        ends_at = local_to_utc(data.ends_local, data.timezone) if data.ends_local else None
        time_of_day = None

        if recurrence is None:
            if due_at <= now:
                raise ValidationError(
                    message="Reminder time must be in the future",
                    details={"due_local": data.due_local, "timezone": data.timezone},
                )
        else:
            if isinstance(recurrence, Weekly) and not recurrence.days:
                raise ValidationError(message="days_of_week must contain at least one day", details={"days_of_week": []})
            time_of_day = format_in_timezone(due_at, data.timezone, "%H:%M")
            # The first fire is the due time itself when it matches the rule,
            # otherwise the next matching instant.
            reference = max(now, due_at - timedelta(seconds=1))
            due_at = first_occurrence(recurrence, time_of_day, data.timezone, reference)
            if ends_at is not None and ends_at < due_at:
                raise ValidationError(
                    message="Reminder ends before its first occurrence",
                    details={"ends_local": data.ends_local, "due_local": data.due_local},
                )

        reminder = Reminder(
            account_id=account.id,
            line_id=line.id,
            message=data.message,
            due_at=due_at,
            timezone=data.timezone,
            time_of_day=time_of_day,
            ends_at=ends_at,
            **to_columns(recurrence),
        )
        self._session.add(reminder)
        await self._session.commit()
        logger.info(
            "Reminder created",
            extra={
                "reminder_id": str(reminder.id),
                "line_id": str(line.id),
                "due_at": due_at.isoformat(),
                "recurring": recurrence is not None,
            },
        )
        return reminder

    async def disable_schedule(self, schedule_id: UUID) -> Schedule:
        schedule = await self._session.get(Schedule, schedule_id)
        if schedule is None:
            raise NotFoundError(message=f"Schedule {schedule_id} not found", details={"schedule_id": str(schedule_id)})
        schedule.enabled = False
        schedule.next_run_at = None
        await self._session.flush()
        await self.refresh_next_scheduled_call(schedule.line_id)
        await self._session.commit()
        return schedule

    async def cancel_reminder(self, reminder_id: UUID) -> Reminder:
        reminder = await self._session.get(Reminder, reminder_id)
        if reminder is None:
            raise NotFoundError(message=f"Reminder {reminder_id} not found", details={"reminder_id": str(reminder_id)})
        if reminder.status == ReminderStatus.SCHEDULED:
            reminder.status = ReminderStatus.CANCELED
            await self._session.commit()
        return reminder

    async def list_due_schedules(self, now: datetime, limit: int) -> Sequence[Schedule]:
        stmt = (
            select(Schedule)
            .where(Schedule.enabled.is_(True), Schedule.next_run_at.is_not(None), Schedule.next_run_at <= now)
            .order_by(Schedule.next_run_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_due_reminders(self, now: datetime, limit: int) -> Sequence[Reminder]:
        stmt = (
            select(Reminder)
            .where(Reminder.status == ReminderStatus.SCHEDULED, Reminder.due_at <= now)
            .order_by(Reminder.due_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def refresh_next_scheduled_call(self, line_id: UUID) -> datetime | None:
        """Cache the line's earliest upcoming schedule run."""
        result = await self._session.execute(
            select(func.min(Schedule.next_run_at)).where(Schedule.line_id == line_id, Schedule.enabled.is_(True))
        )
        next_at = result.scalar_one_or_none()
        await self._session.execute(update(Line).where(Line.id == line_id).values(next_scheduled_call_at=next_at))
        return next_at
