"""
Schedule and reminder sweep.

Runs every ``scheduler_interval_seconds``:
- place calls for due schedules, then advance ``next_run_at``
- place calls for due reminders, then mark them sent/missed or advance them
- fail call sessions whose provider callbacks never arrived
- retry usage reports that failed earlier

Each placement carries a scheduler idempotency key derived from the
occurrence, so a sweep that runs twice for the same occurrence (restart,
second replica) finds the existing session instead of calling twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.access import DenialReason
from companion_calls.calls.factory import CallDependencies, CallServices, build_call_services
from companion_calls.calls.placement import CallDenied, CallReason, DuplicateCallError, OutboundCallRequest
from companion_calls.config import Settings, get_settings
from companion_calls.scheduling.models import Reminder, ReminderStatus, RunResult, Schedule
from companion_calls.scheduling.recurrence import Recurrence
from companion_calls.scheduling.service import ScheduleService
from companion_calls.scheduling.timezone import format_in_timezone, next_run_after
from companion_calls.shared.exceptions import NotFoundError, ValidationError
from companion_calls.shared.logging import get_logger, log_with_context
from companion_calls.telephony.interface import TelephonyProviderError

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_DENIAL_RESULT = {
    DenialReason.DO_NOT_CALL: RunResult.SUPPRESSED_OPT_OUT,
    DenialReason.QUIET_HOURS: RunResult.SUPPRESSED_QUIET_HOURS,
}


def schedule_idempotency_key(schedule_id: UUID, due: datetime) -> str:
    return f"schedule:{schedule_id}:{due.isoformat()}"


def reminder_idempotency_key(reminder_id: UUID, due: datetime) -> str:
    return f"reminder:{reminder_id}:{due.isoformat()}"


@dataclass
class SweepStats:
    schedules: int = 0
    reminders: int = 0
    stale_failed: int = 0
    usage_reported: int = 0


class ScheduleSweep:
    """Single-flight periodic sweep over schedules and reminders."""

    def __init__(
        self,
        session_factory: SessionFactory,
        deps: CallDependencies,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._deps = deps
        self._settings = settings or get_settings()
        self._running = False
        self._in_flight = False
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep background task."""
        if self._running:
            logger.warning("Schedule sweep already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Schedule sweep started", extra={"interval_seconds": self._settings.scheduler_interval_seconds})

    async def stop(self) -> None:
        """Stop the sweep background task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Schedule sweep stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Schedule sweep iteration failed")
            await asyncio.sleep(self._settings.scheduler_interval_seconds)

    async def run_once(self, now: datetime | None = None) -> SweepStats | None:
        """Run one sweep. Returns None when another sweep is still in flight."""
        if self._in_flight:
            logger.debug("Schedule sweep already in flight; skipping")
            return None
        self._in_flight = True
        try:
            return await self._sweep(now or datetime.now(timezone.utc))
        finally:
            self._in_flight = False

    async def _sweep(self, now: datetime) -> SweepStats:
        stats = SweepStats()
        async with self._session_factory() as session:
            services = build_call_services(session, self._deps)
            schedules = ScheduleService(session)

            due_schedules = [s.id for s in await schedules.list_due_schedules(now, self._settings.scheduler_batch_size)]
            for schedule_id in due_schedules:
                await self._run_schedule(session, services, schedules, schedule_id, now)
                stats.schedules += 1

            due_reminders = [r.id for r in await schedules.list_due_reminders(now, self._settings.scheduler_batch_size)]
            for reminder_id in due_reminders:
                await self._run_reminder(session, services, reminder_id, now)
                stats.reminders += 1

            stats.stale_failed = await services.calls.reconcile_stale(now)
            stats.usage_reported = await services.metering.report_unreported_usage()

        if stats.schedules or stats.reminders or stats.stale_failed or stats.usage_reported:
            log_with_context(
                logger,
                logging.INFO,
                "Schedule sweep completed",
                schedules=stats.schedules,
                reminders=stats.reminders,
                stale_failed=stats.stale_failed,
                usage_reported=stats.usage_reported,
            )
        return stats

    async def _place(self, services: CallServices, request: OutboundCallRequest) -> tuple[RunResult, UUID | None]:
        try:
            placed = await services.placement.place_outbound_call(request)
        except CallDenied as e:
            return _DENIAL_RESULT.get(e.reason, RunResult.FAILED), e.session_id
        except DuplicateCallError as e:
            return RunResult.DUPLICATE, e.existing_session_id
        return RunResult.SUCCESS, placed.session_id

    async def _run_schedule(
        self,
        session: AsyncSession,
        services: CallServices,
        schedules: ScheduleService,
        schedule_id: UUID,
        now: datetime,
    ) -> RunResult:
        schedule = await session.get(Schedule, schedule_id, populate_existing=True)
        if schedule is None or schedule.next_run_at is None:
            return RunResult.FAILED

        line_id = schedule.line_id
        due = schedule.next_run_at
        recurrence = schedule.recurrence
        time_of_day = schedule.time_of_day
        tz_name = schedule.timezone
        retry_limit = schedule.max_retries if schedule.max_retries is not None else self._settings.scheduler_max_retries
        retry_count = schedule.retry_count
        disable = False
        retry_at: datetime | None = None

        request = OutboundCallRequest(
            line_id=line_id,
            reason=CallReason.SCHEDULED,
            idempotency_key=schedule_idempotency_key(schedule_id, due),
            at=now,
        )
        try:
            result, _ = await self._place(services, request)
        except NotFoundError:
            logger.warning("Schedule line no longer exists; disabling", extra={"schedule_id": str(schedule_id)})
            result, disable = RunResult.FAILED, True
        except TelephonyProviderError:
            result = RunResult.FAILED
            if retry_count < retry_limit:
                retry_at = now + timedelta(minutes=self._settings.scheduler_retry_minutes)

        schedule = await session.get(Schedule, schedule_id, populate_existing=True)
        if schedule is None:
            return result

        schedule.last_run_at = now
        schedule.last_result = result
        if disable:
            schedule.enabled = False
            schedule.next_run_at = None
        elif retry_at is not None:
            schedule.retry_count = retry_count + 1
            schedule.next_run_at = retry_at
        else:
            schedule.retry_count = 0
            schedule.next_run_at = self._advance(recurrence, time_of_day, tz_name, due, now, schedule_id)
            if schedule.next_run_at is None:
                schedule.enabled = False
        await session.flush()
        await schedules.refresh_next_scheduled_call(line_id)
        await session.commit()

        logger.info(
            "Schedule run",
            extra={
                "schedule_id": str(schedule_id),
                "line_id": str(line_id),
                "result": result.value,
                "retry_count": schedule.retry_count,
                "next_run_at": schedule.next_run_at.isoformat() if schedule.next_run_at else None,
                "next_run_local": format_in_timezone(schedule.next_run_at, tz_name) if schedule.next_run_at else None,
            },
        )
        return result

    def _advance(
        self,
        recurrence: Recurrence | None,
        time_of_day: str,
        tz_name: str,
        due: datetime,
        now: datetime,
        owner_id: UUID,
    ) -> datetime | None:
        if recurrence is None:
            return None
        try:
            return next_run_after(recurrence, time_of_day, tz_name, due, now)
        except ValidationError:
            logger.exception("Could not advance recurrence", extra={"owner_id": str(owner_id)})
            return None

    async def _run_reminder(
        self,
        session: AsyncSession,
        services: CallServices,
        reminder_id: UUID,
        now: datetime,
    ) -> RunResult:
        reminder = await session.get(Reminder, reminder_id, populate_existing=True)
        if reminder is None or reminder.status != ReminderStatus.SCHEDULED:
            return RunResult.FAILED

        due = reminder.due_at
        tz_name = reminder.timezone
        recurrence = reminder.recurrence
        time_of_day = reminder.time_of_day or format_in_timezone(due, tz_name, "%H:%M")
        ends_at = reminder.ends_at

        request = OutboundCallRequest(
            line_id=reminder.line_id,
            reason=CallReason.REMINDER,
            idempotency_key=reminder_idempotency_key(reminder_id, due),
            reminder_id=reminder_id,
            reminder_message=reminder.message,
            at=now,
        )
        try:
            result, session_id = await self._place(services, request)
        except (NotFoundError, TelephonyProviderError) as e:
            logger.warning("Reminder call failed", extra={"reminder_id": str(reminder_id), "error": str(e)})
            result, session_id = RunResult.FAILED, None
        delivered = result in (RunResult.SUCCESS, RunResult.DUPLICATE)

        reminder = await session.get(Reminder, reminder_id, populate_existing=True)
        if reminder is None:
            return result

        if session_id is not None:
            reminder.last_call_session_id = session_id
        if recurrence is None:
            reminder.status = ReminderStatus.SENT if delivered else ReminderStatus.MISSED
        else:
            reminder.occurrence_count += 1
            next_due = self._advance(recurrence, time_of_day, tz_name, due, now, reminder_id)
            if next_due is None or (ends_at is not None and next_due > ends_at):
                reminder.status = ReminderStatus.COMPLETED
            else:
                reminder.due_at = next_due
        await session.commit()

        logger.info(
            "Reminder run",
            extra={
                "reminder_id": str(reminder_id),
                "result": result.value,
                "reminder_status": reminder.status.value,
                "due_at": reminder.due_at.isoformat(),
            },
        )
        return result
