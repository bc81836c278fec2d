"""Tests for the recording deletion retry sweep."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.models import Account, RetentionPeriod
from companion_calls.calls.models import CallSession
from companion_calls.config import Settings
from companion_calls.retention.deletion_retry import (
    MAX_ATTEMPTS_ERROR,
    DeletionRetryScheduler,
    backoff_for,
    enqueue_expired_recordings,
    enqueue_recording_deletion,
    next_eligible_at,
    retention_cutoff,
)
from companion_calls.retention.models import DeletionReason, ExportRequest, ExportStatus, PendingDeletion
from companion_calls.telephony.interface import TelephonyProvider
from companion_calls.telephony.mock_adapter import MockTelephonyAdapter
from companion_calls.telephony.twilio_adapter import TwilioAdapter

T = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(session_scope, mock_provider: MockTelephonyAdapter, test_settings: Settings) -> DeletionRetryScheduler:
    return DeletionRetryScheduler(session_scope, mock_provider, test_settings)


async def _pending(db_session: AsyncSession, account: Account, recording_sid: str, **overrides) -> PendingDeletion:
    values = {
        "recording_sid": recording_sid,
        "account_id": account.id,
        "reason": DeletionReason.RETENTION_POLICY,
    }
    values.update(overrides)
    record = PendingDeletion(**values)
    db_session.add(record)
    await db_session.commit()
    return record


async def _fresh(db_session: AsyncSession, record_id) -> PendingDeletion:
    return await db_session.get(PendingDeletion, record_id, populate_existing=True)


class TestBackoff:
    @pytest.mark.parametrize(
        "attempts,delay",
        [(0, timedelta(0)), (1, timedelta(minutes=15)), (2, timedelta(minutes=60)), (3, None), (7, None)],
    )
    def test_backoff_for(self, attempts: int, delay) -> None:
        assert backoff_for(attempts) == delay

    def test_first_attempt_is_immediate(self) -> None:
        assert next_eligible_at(0, None, T) == T
        assert next_eligible_at(0, T - timedelta(days=1), T) == T

    def test_eligible_after_delay(self) -> None:
        assert next_eligible_at(1, T, T) == T + timedelta(minutes=15)
        assert next_eligible_at(2, T, T) == T + timedelta(minutes=60)

    def test_missing_last_attempt_is_eligible_now(self) -> None:
        assert next_eligible_at(2, None, T) == T

    def test_exhausted(self) -> None:
        assert next_eligible_at(3, T, T) is None


class TestDeletionSweep:
    @pytest.mark.asyncio
    async def test_successful_deletion_stamps_call(
        self,
        db_session: AsyncSession,
        scheduler: DeletionRetryScheduler,
        mock_provider: MockTelephonyAdapter,
        account: Account,
        line,
        make_call,
    ) -> None:
        call = await make_call(line, recording_sid="RE1")
        call_id = call.id
        record = await _pending(db_session, account, "RE1", call_session_id=call_id)
        record_id = record.id

        stats = await scheduler.run_once(now=T)

        assert stats.deleted == 1
        assert mock_provider.deleted_recordings == ["RE1"]
        record = await _fresh(db_session, record_id)
        assert record.processed_at == T
        assert record.attempts == 1
        assert record.last_error is None

        call = await db_session.get(CallSession, call_id, populate_existing=True)
        assert call.recording_deleted_at == T
        assert call.recording_deletion_reason == "retention_policy"

    @pytest.mark.asyncio
    async def test_retry_sequence_until_exhausted(
        self,
        db_session: AsyncSession,
        scheduler: DeletionRetryScheduler,
        mock_provider: MockTelephonyAdapter,
        account: Account,
    ) -> None:
        mock_provider.fail_deletion("RE2", "Recording is locked")
        record = await _pending(db_session, account, "RE2")
        record_id = record.id

        await scheduler.run_once(now=T)
        record = await _fresh(db_session, record_id)
        assert record.attempts == 1
        assert record.last_error == "Recording is locked"
        assert record.processed_at is None

        # Too early for the second attempt.
        await scheduler.run_once(now=T + timedelta(minutes=10))
        assert (await _fresh(db_session, record_id)).attempts == 1

        second = T + timedelta(minutes=15)
        await scheduler.run_once(now=second)
        assert (await _fresh(db_session, record_id)).attempts == 2

        await scheduler.run_once(now=second + timedelta(minutes=59))
        assert (await _fresh(db_session, record_id)).attempts == 2

        third = second + timedelta(minutes=60)
        stats = await scheduler.run_once(now=third)
        assert stats.failed == 1
        record = await _fresh(db_session, record_id)
        assert record.attempts == 3
        assert record.processed_at == third
        assert record.last_error == "Recording is locked"

        stats = await scheduler.run_once(now=third + timedelta(days=1))
        assert stats.failed == 0
        assert stats.closed_at_max == 0

    @pytest.mark.asyncio
    async def test_last_allowed_attempt_closes_record(
        self,
        db_session: AsyncSession,
        scheduler: DeletionRetryScheduler,
        mock_provider: MockTelephonyAdapter,
        account: Account,
    ) -> None:
        mock_provider.fail_deletion("RE3")
        record = await _pending(db_session, account, "RE3", attempts=2, last_attempt_at=T - timedelta(hours=2))
        record_id = record.id

        await scheduler.run_once(now=T)

        record = await _fresh(db_session, record_id)
        assert record.attempts == 3
        assert record.processed_at == T

    @pytest.mark.asyncio
    async def test_record_at_max_is_closed_without_attempt(
        self,
        db_session: AsyncSession,
        scheduler: DeletionRetryScheduler,
        mock_provider: MockTelephonyAdapter,
        account: Account,
    ) -> None:
        bare = await _pending(db_session, account, "RE4", attempts=3)
        with_error = await _pending(db_session, account, "RE5", attempts=3, last_error="404 from provider")
        bare_id, with_error_id = bare.id, with_error.id

        stats = await scheduler.run_once(now=T)

        assert stats.closed_at_max == 2
        assert mock_provider.deleted_recordings == []
        bare = await _fresh(db_session, bare_id)
        assert bare.processed_at == T
        assert bare.last_error == MAX_ATTEMPTS_ERROR
        assert bare.attempts == 3
        assert (await _fresh(db_session, with_error_id)).last_error == "404 from provider"

    @pytest.mark.asyncio
    async def test_batch_limit(
        self,
        db_session: AsyncSession,
        session_scope,
        mock_provider: MockTelephonyAdapter,
        test_settings: Settings,
        account: Account,
    ) -> None:
        for n in range(3):
            await _pending(db_session, account, f"RE_batch_{n}")
        settings = test_settings.model_copy(update={"deletion_batch_limit": 2})

        stats = await DeletionRetryScheduler(session_scope, mock_provider, settings).run_once(now=T)

        assert stats.deleted == 2
        assert len(mock_provider.deleted_recordings) == 2

    @pytest.mark.asyncio
    async def test_overlapping_sweep_is_skipped(self, scheduler: DeletionRetryScheduler) -> None:
        scheduler._is_running = True
        assert await scheduler.run_once(now=T) is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler: DeletionRetryScheduler) -> None:
        await scheduler.start()
        await scheduler.stop()


class TestExports:
    @pytest.mark.asyncio
    async def test_cleanup_expires_old_exports(
        self, db_session: AsyncSession, scheduler: DeletionRetryScheduler, account: Account
    ) -> None:
        ready = ExportRequest(
            account_id=account.id,
            status=ExportStatus.READY,
            download_url="https://files.example.com/export.zip",
            expires_at=T - timedelta(hours=1),
        )
        still_valid = ExportRequest(
            account_id=account.id,
            status=ExportStatus.READY,
            download_url="https://files.example.com/export2.zip",
            expires_at=T + timedelta(days=1),
        )
        old_failure = ExportRequest(account_id=account.id, status=ExportStatus.FAILED, created_at=T - timedelta(days=8))
        recent_failure = ExportRequest(account_id=account.id, status=ExportStatus.FAILED, created_at=T - timedelta(days=1))
        db_session.add_all([ready, still_valid, old_failure, recent_failure])
        await db_session.commit()
        ids = [ready.id, still_valid.id, old_failure.id, recent_failure.id]

        stats = await scheduler.run_once(now=T)

        assert stats.exports_expired == 2
        result = await db_session.execute(
            select(ExportRequest).where(ExportRequest.id.in_(ids)).execution_options(populate_existing=True)
        )
        by_id = {export.id: export for export in result.scalars()}
        assert by_id[ids[0]].status == ExportStatus.EXPIRED
        assert by_id[ids[0]].download_url is None
        assert by_id[ids[1]].status == ExportStatus.READY
        assert by_id[ids[2]].status == ExportStatus.EXPIRED
        assert by_id[ids[3]].status == ExportStatus.FAILED

    @pytest.mark.asyncio
    async def test_cleanup_is_throttled(
        self, db_session: AsyncSession, scheduler: DeletionRetryScheduler, account: Account
    ) -> None:
        await scheduler.run_once(now=T)
        db_session.add(ExportRequest(account_id=account.id, status=ExportStatus.READY, expires_at=T))
        await db_session.commit()

        stats = await scheduler.run_once(now=T + timedelta(hours=1))
        assert stats.exports_expired == 0

        stats = await scheduler.run_once(now=T + timedelta(hours=24))
        assert stats.exports_expired == 1

    @pytest.mark.asyncio
    async def test_pending_exports_are_processed(
        self,
        db_session: AsyncSession,
        session_scope,
        mock_provider: MockTelephonyAdapter,
        test_settings: Settings,
        account: Account,
    ) -> None:
        first = ExportRequest(account_id=account.id)
        second = ExportRequest(account_id=account.id)
        db_session.add_all([first, second])
        await db_session.commit()
        processor = AsyncMock()
        processor.process.side_effect = [True, False]

        stats = await DeletionRetryScheduler(session_scope, mock_provider, test_settings, processor).run_once(now=T)

        assert stats.exports_processed == 1
        assert processor.process.await_count == 2


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_once_per_recording(self, db_session: AsyncSession, account: Account) -> None:
        account_id = account.id
        assert await enqueue_recording_deletion(db_session, "RE9", account_id, DeletionReason.USER_REQUEST)
        assert not await enqueue_recording_deletion(db_session, "RE9", account_id, DeletionReason.USER_REQUEST)

        result = await db_session.execute(select(PendingDeletion).where(PendingDeletion.recording_sid == "RE9"))
        (record,) = result.scalars().all()
        assert record.reason == DeletionReason.USER_REQUEST
        assert record.attempts == 0

    @pytest.mark.asyncio
    async def test_enqueue_expired_recordings(
        self, db_session: AsyncSession, account: Account, line, make_call
    ) -> None:
        account_id = account.id
        now = datetime.now(timezone.utc)
        await make_call(line, recording_sid="RE_old", created_at=now - timedelta(days=40))
        await make_call(line, recording_sid="RE_new", created_at=now - timedelta(days=2))
        await make_call(
            line,
            recording_sid="RE_gone",
            created_at=now - timedelta(days=40),
            recording_deleted_at=now - timedelta(days=10),
        )
        await make_call(line, created_at=now - timedelta(days=40))

        queued = await enqueue_expired_recordings(db_session, account_id, now - timedelta(days=30))

        assert queued == 1
        result = await db_session.execute(select(PendingDeletion.recording_sid))
        assert result.scalars().all() == ["RE_old"]


def _unavailable(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, text="<html><body>Service Unavailable</body></html>")


class TestUnexpectedProviderErrors:
    @pytest.mark.asyncio
    async def test_html_error_body_counts_attempts(
        self,
        db_session: AsyncSession,
        session_scope,
        telephony_config,
        test_settings: Settings,
        account: Account,
    ) -> None:
        record = await _pending(db_session, account, "RE_html")
        record_id = record.id

        with httpx.Client(transport=httpx.MockTransport(_unavailable)) as http:
            adapter = TwilioAdapter(telephony_config, http_client=http)
            scheduler = DeletionRetryScheduler(session_scope, adapter, test_settings)
            for hours in (0, 2, 4, 6, 8):
                await scheduler.run_once(now=T + timedelta(hours=hours))

        record = await _fresh(db_session, record_id)
        assert record.attempts == 3
        assert record.processed_at == T + timedelta(hours=4)
        assert "Service Unavailable" in record.last_error

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_block_batch(
        self,
        db_session: AsyncSession,
        session_scope,
        test_settings: Settings,
        account: Account,
    ) -> None:
        async def delete(recording_sid: str) -> None:
            if recording_sid == "RE_bad":
                raise RuntimeError("socket closed")

        provider = AsyncMock(spec=TelephonyProvider)
        provider.delete_recording.side_effect = delete
        scheduler = DeletionRetryScheduler(session_scope, provider, test_settings)
        bad = await _pending(db_session, account, "RE_bad", created_at=T - timedelta(hours=2))
        good = await _pending(db_session, account, "RE_good", created_at=T - timedelta(hours=1))
        bad_id, good_id = bad.id, good.id

        stats = await scheduler.run_once(now=T)

        assert stats.failed == 1
        assert stats.deleted == 1
        bad = await _fresh(db_session, bad_id)
        assert bad.attempts == 1
        assert bad.last_error == "socket closed"
        assert bad.processed_at is None
        assert (await _fresh(db_session, good_id)).processed_at == T


class TestRetentionPolicy:
    @pytest.mark.parametrize(
        "period,days",
        [
            (RetentionPeriod.DAYS_30, 30),
            (RetentionPeriod.DAYS_90, 90),
            (RetentionPeriod.DAYS_365, 365),
            (RetentionPeriod.INDEFINITE, None),
        ],
    )
    def test_retention_cutoff(self, period: RetentionPeriod, days) -> None:
        expected = T - timedelta(days=days) if days is not None else None
        assert retention_cutoff(period, T) == expected

    @pytest.mark.asyncio
    async def test_sweep_queues_and_deletes_expired_recordings(
        self,
        db_session: AsyncSession,
        scheduler: DeletionRetryScheduler,
        mock_provider: MockTelephonyAdapter,
        make_account,
        make_line,
        make_call,
    ) -> None:
        short = await make_account(retention_period=RetentionPeriod.DAYS_30)
        forever = await make_account()
        short_line = await make_line(short)
        forever_line = await make_line(forever, phone_e164="+14155559999")
        old_call = await make_call(short_line, recording_sid="RE_expired", created_at=T - timedelta(days=31))
        old_call_id = old_call.id
        await make_call(short_line, recording_sid="RE_recent", created_at=T - timedelta(days=5))
        await make_call(forever_line, recording_sid="RE_kept", created_at=T - timedelta(days=400))

        stats = await scheduler.run_once(now=T)

        assert stats.recordings_queued == 1
        assert stats.deleted == 1
        assert mock_provider.deleted_recordings == ["RE_expired"]
        call = await db_session.get(CallSession, old_call_id, populate_existing=True)
        assert call.recording_deleted_at == T

    @pytest.mark.asyncio
    async def test_retention_step_is_throttled(
        self,
        scheduler: DeletionRetryScheduler,
        make_account,
        make_line,
        make_call,
    ) -> None:
        short = await make_account(retention_period=RetentionPeriod.DAYS_30)
        short_line = await make_line(short)
        await make_call(short_line, recording_sid="RE_a", created_at=T - timedelta(days=40))

        assert (await scheduler.run_once(now=T)).recordings_queued == 1

        await make_call(short_line, recording_sid="RE_b", created_at=T - timedelta(days=40))
        assert (await scheduler.run_once(now=T + timedelta(hours=1))).recordings_queued == 0
        assert (await scheduler.run_once(now=T + timedelta(hours=24))).recordings_queued == 1
