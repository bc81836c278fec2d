"""
Bounded-retry sweep for recording deletions.

A pending deletion is retried with backoff on its attempt count:

    attempts  eligible
    0         immediately
    1         15 minutes after the last attempt
    2         60 minutes after the last attempt
    >= 3      never

A record already at ``max_attempts`` is closed without another attempt and
keeps its last error. Once a day the sweep queues recordings older than each
account's retention period. The same sweep also drives the periodic export
jobs (expired export cleanup, pending export processing); one re-entrancy flag
covers all of them so overlapping sweeps never run concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.models import Account, RetentionPeriod
from companion_calls.calls.models import CallSession
from companion_calls.calls.repository import CallSessionRepository
from companion_calls.config import Settings, get_settings
from companion_calls.retention.models import DeletionReason, ExportRequest, ExportStatus, PendingDeletion
from companion_calls.shared.logging import get_logger, log_with_context
from companion_calls.telephony.interface import TelephonyProvider

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

MAX_ATTEMPTS_ERROR = "Max attempts reached"

_BACKOFF: dict[int, timedelta] = {
    0: timedelta(0),
    1: timedelta(minutes=15),
    2: timedelta(minutes=60),
}


def backoff_for(attempts: int) -> timedelta | None:
    """Delay after the last attempt; None means never retry."""
    if attempts <= 0:
        return timedelta(0)
    return _BACKOFF.get(attempts)


def next_eligible_at(attempts: int, last_attempt_at: datetime | None, now: datetime) -> datetime | None:
    """Earliest instant the next attempt may run, or None when retries are exhausted.

    A record without a last attempt timestamp is eligible right away.
    """
    delay = backoff_for(attempts)
    if delay is None:
        return None
    if last_attempt_at is None or not delay:
        return now
    return last_attempt_at + delay


def can_attempt(record: PendingDeletion, now: datetime) -> bool:
    eligible_at = next_eligible_at(record.attempts, record.last_attempt_at, now)
    return eligible_at is not None and now >= eligible_at


def retention_cutoff(period: RetentionPeriod, now: datetime) -> datetime | None:
    """Recordings from calls created before the cutoff are past retention."""
    if period.days is None:
        return None
    return now - timedelta(days=period.days)


class ExportProcessor(Protocol):
    """Builds a pending data export. Returns False when it could not."""

    async def process(self, export_id: UUID) -> bool: ...


@dataclass
class DeletionSweepStats:
    exports_expired: int = 0
    exports_processed: int = 0
    closed_at_max: int = 0
    deleted: int = 0
    failed: int = 0
    recordings_queued: int = 0

    @property
    def any_work(self) -> bool:
        return bool(
            self.deleted or self.failed or self.closed_at_max or self.exports_expired or self.recordings_queued
        )


async def enqueue_recording_deletion(
    session: AsyncSession,
    recording_sid: str,
    account_id: UUID,
    reason: DeletionReason,
    call_session_id: UUID | None = None,
) -> bool:
    """Queue a recording for deletion. Returns False when it was already queued."""
    session.add(
        PendingDeletion(
            recording_sid=recording_sid,
            account_id=account_id,
            call_session_id=call_session_id,
            reason=reason,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.debug("Recording deletion already queued", extra={"recording_sid": recording_sid})
        return False
    logger.info(
        "Recording deletion queued",
        extra={"recording_sid": recording_sid, "account_id": str(account_id), "reason": reason.value},
    )
    return True


async def enqueue_expired_recordings(
    session: AsyncSession,
    account_id: UUID,
    cutoff: datetime,
    reason: DeletionReason = DeletionReason.RETENTION_POLICY,
) -> int:
    """Queue every recording of ``account_id`` from calls created before ``cutoff``."""
    result = await session.execute(
        select(CallSession.id, CallSession.recording_sid).where(
            CallSession.account_id == account_id,
            CallSession.recording_sid.is_not(None),
            CallSession.recording_deleted_at.is_(None),
            CallSession.created_at < cutoff,
        )
    )
    rows = result.all()
    queued = 0
    for call_session_id, recording_sid in rows:
        if await enqueue_recording_deletion(session, recording_sid, account_id, reason, call_session_id):
            queued += 1
    return queued


class DeletionRetryScheduler:
    """Periodic sweep over pending recording deletions and data exports."""

    def __init__(
        self,
        session_factory: SessionFactory,
        provider: TelephonyProvider,
        settings: Settings | None = None,
        export_processor: ExportProcessor | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._settings = settings or get_settings()
        self._export_processor = export_processor
        self._is_running = False
        self._last_export_cleanup_at: datetime | None = None
        self._last_retention_run_at: datetime | None = None
        self._loop_running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._loop_running:
            logger.warning("Deletion retry sweep already running")
            return
        self._loop_running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Deletion retry sweep started",
            extra={"interval_seconds": self._settings.deletion_sweep_interval_seconds},
        )

    async def stop(self) -> None:
        self._loop_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Deletion retry sweep stopped")

    async def _run_loop(self) -> None:
        while self._loop_running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Deletion retry sweep iteration failed")
            await asyncio.sleep(self._settings.deletion_sweep_interval_seconds)

    async def run_once(self, now: datetime | None = None) -> DeletionSweepStats | None:
        """One sweep. Returns None when a previous sweep is still running."""
        if self._is_running:
            return None
        self._is_running = True
        try:
            now = now or datetime.now(timezone.utc)
            stats = DeletionSweepStats()
            async with self._session_factory() as session:
                stats.recordings_queued = await self._maybe_queue_expired_recordings(session, now)
                stats.exports_expired = await self._maybe_cleanup_exports(session, now)
                stats.exports_processed = await self._process_pending_exports(session)
                await self._process_deletions(session, now, stats)
            if stats.any_work:
                log_with_context(
                    logger,
                    logging.INFO,
                    "Deletion retry sweep completed",
                    deleted=stats.deleted,
                    failed=stats.failed,
                    closed_at_max=stats.closed_at_max,
                    exports_expired=stats.exports_expired,
                    exports_processed=stats.exports_processed,
                    recordings_queued=stats.recordings_queued,
                )
            return stats
        finally:
            self._is_running = False

    async def _maybe_queue_expired_recordings(self, session: AsyncSession, now: datetime) -> int:
        interval = timedelta(hours=self._settings.retention_cleanup_interval_hours)
        if self._last_retention_run_at is not None and now - self._last_retention_run_at < interval:
            return 0
        self._last_retention_run_at = now

        result = await session.execute(
            select(Account.id, Account.retention_period).where(
                Account.retention_period != RetentionPeriod.INDEFINITE
            )
        )
        queued = 0
        for account_id, period in result.all():
            cutoff = retention_cutoff(period, now)
            if cutoff is not None:
                queued += await enqueue_expired_recordings(session, account_id, cutoff)
        return queued

    async def _maybe_cleanup_exports(self, session: AsyncSession, now: datetime) -> int:
        interval = timedelta(hours=self._settings.export_cleanup_interval_hours)
        if self._last_export_cleanup_at is not None and now - self._last_export_cleanup_at < interval:
            return 0
        self._last_export_cleanup_at = now

        failed_cutoff = now - timedelta(days=self._settings.failed_export_retention_days)
        expired_ready = await session.execute(
            update(ExportRequest)
            .where(ExportRequest.status == ExportStatus.READY, ExportRequest.expires_at < now)
            .values(status=ExportStatus.EXPIRED, download_url=None)
            .execution_options(synchronize_session=False)
        )
        expired_failed = await session.execute(
            update(ExportRequest)
            .where(ExportRequest.status == ExportStatus.FAILED, ExportRequest.created_at < failed_cutoff)
            .values(status=ExportStatus.EXPIRED, download_url=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return expired_ready.rowcount + expired_failed.rowcount

    async def _process_pending_exports(self, session: AsyncSession) -> int:
        if self._export_processor is None:
            return 0
        result = await session.execute(
            select(ExportRequest.id)
            .where(ExportRequest.status == ExportStatus.PENDING)
            .order_by(ExportRequest.created_at)
            .limit(self._settings.export_batch_limit)
        )
        processed = 0
        for export_id in result.scalars().all():
            if await self._export_processor.process(export_id):
                processed += 1
            else:
                logger.warning("Export processing failed in sweep", extra={"export_id": str(export_id)})
        return processed

    async def _fetch_pending(self, session: AsyncSession) -> Sequence[PendingDeletion]:
        result = await session.execute(
            select(PendingDeletion)
            .where(PendingDeletion.processed_at.is_(None))
            .order_by(PendingDeletion.created_at)
            .limit(self._settings.deletion_fetch_limit)
        )
        return result.scalars().all()

    async def _process_deletions(self, session: AsyncSession, now: datetime, stats: DeletionSweepStats) -> None:
        pending = await self._fetch_pending(session)
        if not pending:
            return

        eligible: list[PendingDeletion] = []
        for record in pending:
            if record.attempts >= record.max_attempts:
                record.processed_at = now
                record.last_error = record.last_error or MAX_ATTEMPTS_ERROR
                stats.closed_at_max += 1
                continue
            if can_attempt(record, now):
                eligible.append(record)
        await session.commit()

        repo = CallSessionRepository(session)
        for record in eligible[: self._settings.deletion_batch_limit]:
            await self._attempt(session, repo, record, now, stats)

    async def _attempt(
        self,
        session: AsyncSession,
        repo: CallSessionRepository,
        record: PendingDeletion,
        now: datetime,
        stats: DeletionSweepStats,
    ) -> None:
        attempts = record.attempts + 1
        record.attempts = attempts
        record.last_attempt_at = now
        try:
            await self._provider.delete_recording(record.recording_sid)
        except Exception as e:
            record.last_error = str(e) or type(e).__name__
            if attempts >= record.max_attempts:
                record.processed_at = now
            stats.failed += 1
            logger.warning(
                "Recording deletion failed",
                extra={
                    "recording_sid": record.recording_sid,
                    "attempts": attempts,
                    "max_attempts": record.max_attempts,
                    "error": record.last_error,
                    "error_type": type(e).__name__,
                },
            )
        else:
            await repo.mark_recording_deleted(record.recording_sid, now, record.reason.value)
            record.processed_at = now
            record.last_error = None
            stats.deleted += 1
        await session.commit()
