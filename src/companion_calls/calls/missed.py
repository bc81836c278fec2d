"""
Consecutive missed call tracking for scheduled calls.

Only calls placed by the schedule sweep count. Failures caused by our own
guards (opt-out, quiet hours, access) say nothing about whether the person
would have answered, so they leave the counter alone.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.models import Line
from companion_calls.calls.models import DENIAL_END_REASONS, AnsweredBy, CallSession, CallStatus
from companion_calls.config import Settings, get_settings
from companion_calls.notifications.client import MissedCallAlert
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)


class MissedCallNotifier(Protocol):
    async def send_missed_call_alert(self, alert: MissedCallAlert) -> bool: ...


def is_call_answered(answered_by: AnsweredBy | None, seconds_connected: int | None) -> bool:
    """A person picked up.

    Without an answering-machine result, any connected time counts as
    answered.
    """
    if answered_by in (AnsweredBy.HUMAN, AnsweredBy.UNKNOWN):
        return True
    if answered_by is None:
        return (seconds_connected or 0) > 0
    return False


class MissedCallTracker:
    def __init__(
        self,
        session: AsyncSession,
        notifier: MissedCallNotifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._notifier = notifier
        self._settings = settings or get_settings()

    async def record_outcome(self, call: CallSession) -> int | None:
        """Update the line's counter for a terminal call.

        Returns the new consecutive missed count, or None when the call does
        not count.
        """
        if not call.is_schedule_linked:
            return None
        if call.status == CallStatus.FAILED and call.end_reason in DENIAL_END_REASONS:
            return None

        line_id = call.line_id
        answered = call.status == CallStatus.COMPLETED and is_call_answered(
            call.answered_by, call.seconds_connected
        )

        if answered:
            await self._session.execute(
                update(Line)
                .where(Line.id == line_id)
                .values(consecutive_missed_calls=0, missed_alert_sent_at=None)
            )
            await self._session.commit()
            return 0

        await self._session.execute(
            update(Line)
            .where(Line.id == line_id)
            .values(consecutive_missed_calls=Line.consecutive_missed_calls + 1)
        )
        await self._session.commit()

        line = await self._session.get(Line, line_id, populate_existing=True)
        if line is None:
            return None
        count = line.consecutive_missed_calls
        logger.info("Missed scheduled call", extra={"line_id": str(line_id), "consecutive_missed": count})

        if count >= self._settings.missed_call_alert_threshold and line.missed_alert_sent_at is None:
            await self._send_alert(line, count, call.ended_at or datetime.now(timezone.utc))
        return count

    async def _send_alert(self, line: Line, count: int, last_attempt_at: datetime) -> None:
        if self._notifier is None:
            return
        line_id: UUID = line.id
        base = self._settings.app_base_url.rstrip("/")
        alert = MissedCallAlert(
            line_id=line_id,
            account_id=line.account_id,
            line_name=line.display_name or line.phone_e164,
            consecutive_missed_count=count,
            last_attempt_at=last_attempt_at,
            dashboard_url=f"{base}/dashboard/insights?line={line_id}",
            settings_url=f"{base}/dashboard/lines/{line_id}/settings",
        )
        if not await self._notifier.send_missed_call_alert(alert):
            # Stamp stays unset so the next miss retries the alert.
            return

        await self._session.execute(
            update(Line).where(Line.id == line_id).values(missed_alert_sent_at=datetime.now(timezone.utc))
        )
        await self._session.commit()
        logger.info("Missed call alert sent", extra={"line_id": str(line_id), "consecutive_missed": count})
