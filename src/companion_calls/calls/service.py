"""
Call session state machine.

    created -> ringing -> in_progress -> completed | failed | canceled

Terminal states are sinks. Every transition goes through
``CallSessionRepository.transition``, a conditional UPDATE; the caller that
wins the update runs the terminal side effects, every other caller sees a
no-op. No in-process lock is held over call state.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.access import LineRepository
from companion_calls.billing.metering import MeteringService
from companion_calls.billing.payments import UsageReportingError
from companion_calls.calls.missed import MissedCallTracker, is_call_answered
from companion_calls.calls.models import (
    AnsweredBy,
    CallEvent,
    CallEventType,
    CallSession,
    CallStatus,
    EndReason,
)
from companion_calls.calls.registry import LiveCallRegistry
from companion_calls.calls.repository import CallSessionRepository
from companion_calls.config import Settings, get_settings
from companion_calls.shared.exceptions import NotFoundError
from companion_calls.shared.logging import get_logger
from companion_calls.telephony.interface import ProviderCallStatus, StatusCallback

logger = get_logger(__name__)

_OPEN = (CallStatus.CREATED, CallStatus.RINGING)
_LIVE = (CallStatus.CREATED, CallStatus.RINGING, CallStatus.IN_PROGRESS)


def parse_answered_by(raw: str | None) -> AnsweredBy | None:
    """Map a provider answering-machine result (``machine_end_beep``...)."""
    if not raw:
        return None
    value = raw.strip().lower()
    if value.startswith("machine"):
        return AnsweredBy.MACHINE
    if value == "fax":
        return AnsweredBy.FAX
    if value == "human":
        return AnsweredBy.HUMAN
    return AnsweredBy.UNKNOWN


class CallSessionService:
    """Drives call sessions through their lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        registry: LiveCallRegistry | None = None,
        metering: MeteringService | None = None,
        missed_tracker: MissedCallTracker | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._repo = CallSessionRepository(session)
        self._lines = LineRepository(session)
        self._registry = registry
        self._metering = metering
        self._missed = missed_tracker
        self._settings = settings or get_settings()

    @property
    def repository(self) -> CallSessionRepository:
        return self._repo

    async def create_session(self, call: CallSession) -> tuple[CallSession, bool]:
        """Insert a new session. ``(existing, False)`` on a duplicate scheduler key."""
        created_call, created = await self._repo.create(call)
        if created:
            logger.info(
                "Call session created",
                extra={
                    "session_id": str(created_call.id),
                    "line_id": str(created_call.line_id),
                    "direction": created_call.direction.value,
                },
            )
        return created_call, created

    async def get_session(self, session_id: UUID) -> CallSession:
        call = await self._repo.get(session_id, fresh=True)
        if call is None:
            raise NotFoundError(message=f"Call session {session_id} not found", details={"session_id": str(session_id)})
        return call

    async def _apply(
        self,
        session_id: UUID,
        to_status: CallStatus,
        allowed_from: tuple[CallStatus, ...],
        on_win: Callable[[CallSession], None] | None = None,
        **values: Any,
    ) -> CallSession | None:
        call = await self._repo.transition(session_id, to_status, allowed_from, **values)
        if call is None:
            # release the write lock taken by the unmatched UPDATE
            await self._session.commit()
            logger.debug(
                "Transition skipped",
                extra={"session_id": str(session_id), "to_status": to_status.value},
            )
            return None
        if on_win is not None:
            on_win(call)
        await self._repo.add_event(session_id, CallEventType.STATE_CHANGE, {"status": to_status.value})
        await self._session.commit()
        logger.info("Call session transitioned", extra={"session_id": str(session_id), "status": to_status.value})
        return call

    async def mark_ringing(self, session_id: UUID) -> CallSession | None:
        return await self._apply(session_id, CallStatus.RINGING, (CallStatus.CREATED,))

    async def connect(
        self,
        session_id: UUID,
        provider_call_id: str | None = None,
        answered_by: str | AnsweredBy | None = None,
        connected_at: datetime | None = None,
    ) -> CallSession | None:
        """Move to in_progress, stamping connected-at and the answered-by result.

        The answering-machine result can arrive on a later callback than the
        one that connected the call; it is then recorded without a transition.
        """
        classified = answered_by if isinstance(answered_by, AnsweredBy) else parse_answered_by(answered_by)
        values: dict[str, Any] = {}
        if classified is not None:
            values["answered_by"] = classified
            if classified in (AnsweredBy.MACHINE, AnsweredBy.FAX):
                values["end_reason"] = EndReason.NO_ANSWER

        call = await self._apply(
            session_id,
            CallStatus.IN_PROGRESS,
            _OPEN,
            connected_at=connected_at or datetime.now(timezone.utc),
            **values,
        )
        if call is None and values:
            if await self._repo.set_answered_by_if_missing(session_id, values):
                await self._session.commit()
        if provider_call_id:
            await self._repo.set_provider_call_id(session_id, provider_call_id)
            await self._session.commit()
            if call is not None:
                call = await self._repo.get(session_id, fresh=True)
        return call

    async def complete(
        self,
        session_id: UUID,
        ended_at: datetime | None = None,
        end_reason: EndReason | None = None,
    ) -> CallSession | None:
        """Move to completed; ``seconds_connected = ended_at - connected_at``.

        Duration and end reason come from the row as it stands after the
        winning update, so a connect that lands just before it is counted.
        """
        ended = ended_at or datetime.now(timezone.utc)

        def stamp(call: CallSession) -> None:
            connected_at = call.connected_at
            call.seconds_connected = max(int((ended - connected_at).total_seconds()), 0) if connected_at else 0
            if call.end_reason is None:
                call.end_reason = end_reason or EndReason.HANGUP

        call = await self._apply(session_id, CallStatus.COMPLETED, _LIVE, on_win=stamp, ended_at=ended)
        if call is not None:
            await self._finalize(call)
        return call

    async def fail(
        self,
        session_id: UUID,
        end_reason: EndReason,
        ended_at: datetime | None = None,
    ) -> CallSession | None:
        call = await self._apply(
            session_id,
            CallStatus.FAILED,
            _LIVE,
            ended_at=ended_at or datetime.now(timezone.utc),
            end_reason=end_reason,
            seconds_connected=0,
        )
        if call is not None:
            await self._finalize(call)
        return call

    async def cancel(self, session_id: UUID) -> CallSession | None:
        call = await self._apply(
            session_id,
            CallStatus.CANCELED,
            _LIVE,
            ended_at=datetime.now(timezone.utc),
        )
        if call is not None and self._registry is not None:
            await self._registry.release(session_id)
        return call

    async def _finalize(self, call: CallSession) -> None:
        """Terminal side effects. Runs once per session, after the winning update."""
        session_id = call.id
        line_id = call.line_id
        status = call.status
        answered = status == CallStatus.COMPLETED and is_call_answered(call.answered_by, call.seconds_connected)
        ended_at = call.ended_at
        billable = status == CallStatus.COMPLETED and (
            (call.seconds_connected or 0) >= self._settings.min_billable_seconds or call.is_reminder_call
        )

        try:
            if self._missed is not None:
                await self._missed.record_outcome(call)

            if billable and self._metering is not None:
                try:
                    await self._metering.record_usage(call)
                except UsageReportingError:
                    logger.warning(
                        "Usage recorded but not reported; left for the sweep",
                        extra={"session_id": str(session_id)},
                    )

            if answered and ended_at is not None:
                await self._lines.mark_successful_call(line_id, ended_at)
                await self._session.commit()
        finally:
            if self._registry is not None:
                await self._registry.release(session_id)

    async def apply_status_callback(
        self,
        callback: StatusCallback,
        session_id: UUID | None = None,
    ) -> CallSession | None:
        """Apply a provider status callback. Unknown sessions and statuses are ignored."""
        call = None
        if session_id is not None:
            call = await self._repo.get(session_id, fresh=True)
        if call is None:
            call = await self._repo.get_by_provider_call_id(callback.provider_call_id)
        if call is None:
            logger.warning(
                "Status callback for unknown session",
                extra={"provider_call_id": callback.provider_call_id, "raw_status": callback.raw_status},
            )
            return None

        target = call.id
        if call.provider_call_id is None:
            await self._repo.set_provider_call_id(target, callback.provider_call_id)
            await self._session.commit()

        match callback.status:
            case ProviderCallStatus.RINGING:
                return await self.mark_ringing(target)
            case ProviderCallStatus.IN_PROGRESS:
                return await self.connect(target, answered_by=callback.answered_by, connected_at=callback.timestamp)
            case ProviderCallStatus.COMPLETED:
                if callback.answered_by:
                    await self.connect(target, answered_by=callback.answered_by, connected_at=callback.timestamp)
                return await self.complete(target, ended_at=callback.timestamp)
            case ProviderCallStatus.BUSY:
                return await self.fail(target, EndReason.BUSY, ended_at=callback.timestamp)
            case ProviderCallStatus.NO_ANSWER:
                return await self.fail(target, EndReason.NO_ANSWER, ended_at=callback.timestamp)
            case ProviderCallStatus.FAILED:
                return await self.fail(target, EndReason.ERROR, ended_at=callback.timestamp)
            case ProviderCallStatus.CANCELED:
                return await self.cancel(target)
            case _:
                logger.info(
                    "Status callback ignored",
                    extra={"session_id": str(target), "raw_status": callback.raw_status},
                )
                return None

    async def record_call_event(
        self,
        session_id: UUID,
        event_type: CallEventType,
        payload: dict[str, Any] | None = None,
    ) -> CallEvent:
        await self.get_session(session_id)
        event = await self._repo.add_event(session_id, event_type, payload)
        await self._session.commit()
        return event

    async def increment_tool_invocations(self, session_id: UUID) -> None:
        if not await self._repo.increment_tool_invocations(session_id):
            raise NotFoundError(message=f"Call session {session_id} not found", details={"session_id": str(session_id)})
        await self._session.commit()

    async def attach_recording(self, session_id: UUID, recording_sid: str) -> bool:
        updated = await self._repo.set_recording(session_id, recording_sid)
        await self._session.commit()
        return updated

    async def reconcile_stale(self, now: datetime | None = None, limit: int = 100) -> int:
        """Fail sessions whose provider callbacks never arrived."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self._settings.stale_session_minutes)
        stale_ids = [call.id for call in await self._repo.list_stale(cutoff, limit)]
        failed = 0
        for stale_id in stale_ids:
            if await self.fail(stale_id, EndReason.LOST_CALLBACK, ended_at=now) is not None:
                failed += 1
        if failed:
            logger.warning("Stale call sessions failed", extra={"count": failed, "cutoff": cutoff.isoformat()})
        return failed
