"""Tests for consecutive missed call tracking and alerts."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.models import Line
from companion_calls.calls.factory import CallServices
from companion_calls.calls.missed import MissedCallTracker, is_call_answered
from companion_calls.calls.models import AnsweredBy, CallStatus, EndReason
from companion_calls.config import Settings

T0 = datetime(2025, 1, 6, 14, 0, tzinfo=timezone.utc)


class TestIsCallAnswered:
    @pytest.mark.parametrize(
        "answered_by,seconds,expected",
        [
            (AnsweredBy.HUMAN, 0, True),
            (AnsweredBy.UNKNOWN, 10, True),
            (AnsweredBy.MACHINE, 40, False),
            (AnsweredBy.FAX, 5, False),
            (None, 12, True),
            (None, 0, False),
            (None, None, False),
        ],
    )
    def test_classification(self, answered_by, seconds, expected) -> None:
        assert is_call_answered(answered_by, seconds) is expected


async def _consecutive(db_session: AsyncSession, line_id) -> Line:
    return await db_session.get(Line, line_id, populate_existing=True)


class TestMissedCallTracking:
    @pytest.mark.asyncio
    async def test_alert_sent_once_at_threshold(
        self, db_session: AsyncSession, services: CallServices, notifier: AsyncMock, line: Line, make_call
    ) -> None:
        line_id = line.id
        for n in range(4):
            call = await make_call(line, scheduler_idempotency_key=f"schedule:s1:{n}")
            await services.calls.fail(call.id, EndReason.NO_ANSWER, ended_at=T0 + timedelta(days=n))

        refreshed = await _consecutive(db_session, line_id)
        assert refreshed.consecutive_missed_calls == 4
        assert refreshed.missed_alert_sent_at is not None

        notifier.send_missed_call_alert.assert_awaited_once()
        alert = notifier.send_missed_call_alert.await_args.args[0]
        assert alert.consecutive_missed_count == 3
        assert alert.line_id == line_id
        assert alert.line_name == "Grandma Rose"
        assert alert.last_attempt_at == T0 + timedelta(days=2)
        assert alert.dashboard_url == f"https://app.example.com/dashboard/insights?line={line_id}"

    @pytest.mark.asyncio
    async def test_answered_call_resets_counter(
        self, db_session: AsyncSession, services: CallServices, line: Line, make_call
    ) -> None:
        line_id = line.id
        for n in range(2):
            call = await make_call(line, scheduler_idempotency_key=f"schedule:s2:{n}")
            await services.calls.fail(call.id, EndReason.BUSY)
        assert (await _consecutive(db_session, line_id)).consecutive_missed_calls == 2

        answered = await make_call(line, scheduler_idempotency_key="schedule:s2:answered")
        answered_id = answered.id
        await services.calls.connect(answered_id, answered_by="human", connected_at=T0)
        await services.calls.complete(answered_id, ended_at=T0 + timedelta(seconds=300))

        refreshed = await _consecutive(db_session, line_id)
        assert refreshed.consecutive_missed_calls == 0
        assert refreshed.missed_alert_sent_at is None

    @pytest.mark.asyncio
    async def test_voicemail_counts_as_missed(
        self, db_session: AsyncSession, services: CallServices, line: Line, make_call
    ) -> None:
        line_id = line.id
        call = await make_call(line, scheduler_idempotency_key="schedule:s3:0")
        call_id = call.id
        await services.calls.connect(call_id, answered_by="machine_end_beep", connected_at=T0)
        await services.calls.complete(call_id, ended_at=T0 + timedelta(seconds=25))

        assert (await _consecutive(db_session, line_id)).consecutive_missed_calls == 1

    @pytest.mark.asyncio
    async def test_guard_denials_leave_counter_alone(
        self, db_session: AsyncSession, services: CallServices, line: Line, make_call
    ) -> None:
        line_id = line.id
        for n, reason in enumerate((EndReason.OPTED_OUT, EndReason.QUIET_HOURS, EndReason.ACCESS_DENIED)):
            call = await make_call(line, scheduler_idempotency_key=f"schedule:s4:{n}")
            await services.calls.fail(call.id, reason)

        assert (await _consecutive(db_session, line_id)).consecutive_missed_calls == 0

    @pytest.mark.asyncio
    async def test_unscheduled_calls_do_not_count(
        self, db_session: AsyncSession, services: CallServices, line: Line, make_call
    ) -> None:
        line_id = line.id
        manual = await make_call(line)
        reminder = await make_call(line, scheduler_idempotency_key="reminder:r1:0")
        await services.calls.fail(manual.id, EndReason.NO_ANSWER)
        await services.calls.fail(reminder.id, EndReason.NO_ANSWER)

        assert (await _consecutive(db_session, line_id)).consecutive_missed_calls == 0

    @pytest.mark.asyncio
    async def test_failed_delivery_retries_on_next_miss(
        self,
        db_session: AsyncSession,
        test_settings: Settings,
        line: Line,
        make_call,
    ) -> None:
        line_id = line.id
        notifier = AsyncMock()
        notifier.send_missed_call_alert.return_value = False
        tracker = MissedCallTracker(db_session, notifier, test_settings)

        for n in range(4):
            call = await make_call(
                line,
                scheduler_idempotency_key=f"schedule:s5:{n}",
                status=CallStatus.FAILED,
                end_reason=EndReason.NO_ANSWER,
                ended_at=T0,
            )
            await tracker.record_outcome(call)

        assert notifier.send_missed_call_alert.await_count == 2
        assert (await _consecutive(db_session, line_id)).missed_alert_sent_at is None

    @pytest.mark.asyncio
    async def test_record_outcome_returns_count(
        self, db_session: AsyncSession, test_settings: Settings, line: Line, make_call
    ) -> None:
        tracker = MissedCallTracker(db_session, None, test_settings)
        call = await make_call(
            line,
            scheduler_idempotency_key="schedule:s6:0",
            status=CallStatus.FAILED,
            end_reason=EndReason.NO_ANSWER,
        )
        assert await tracker.record_outcome(call) == 1
