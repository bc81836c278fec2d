"""
Repository for call session database operations.

Every status change is a conditional UPDATE guarded on the current status.
When two callbacks race, exactly one UPDATE matches a row; the loser sees a
rowcount of zero and treats the transition as already applied.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.calls.models import CallEvent, CallEventType, CallSession, CallStatus
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)


class CallSessionRepository:
    """Repository for call session database operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get(self, session_id: UUID, *, fresh: bool = False) -> CallSession | None:
        stmt = select(CallSession).where(CallSession.id == session_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_call_id(self, provider_call_id: str) -> CallSession | None:
        """Get a session by provider call identifier (e.g., Twilio CallSid)."""
        stmt = (
            select(CallSession)
            .where(CallSession.provider_call_id == provider_call_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, key: str) -> CallSession | None:
        stmt = select(CallSession).where(CallSession.scheduler_idempotency_key == key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, call: CallSession) -> tuple[CallSession, bool]:
        """Insert and commit ``call``.

        Returns ``(existing, False)`` when another session already holds the
        same scheduler idempotency key. The caller must not rely on ORM objects
        loaded before this call in that case: the failed insert rolls the
        session back.
        """
        key = call.scheduler_idempotency_key
        self._session.add(call)
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            existing = await self.get_by_idempotency_key(key) if key else None
            if existing is None:
                raise
            logger.info(
                "Duplicate call session request",
                extra={"idempotency_key": key, "existing_session_id": str(existing.id)},
            )
            return existing, False
        return call, True

    async def transition(
        self,
        session_id: UUID,
        to_status: CallStatus,
        allowed_from: Iterable[CallStatus],
        **values: Any,
    ) -> CallSession | None:
        """Apply ``to_status`` only if the current status is in ``allowed_from``.

        Returns the refreshed session, or None when the guard did not match.
        """
        stmt = (
            update(CallSession)
            .where(CallSession.id == session_id, CallSession.status.in_(list(allowed_from)))
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            return None
        return await self.get(session_id, fresh=True)

    async def set_answered_by_if_missing(self, session_id: UUID, values: dict[str, Any]) -> bool:
        """Late answering-machine result for an already connected session."""
        stmt = (
            update(CallSession)
            .where(
                CallSession.id == session_id,
                CallSession.status == CallStatus.IN_PROGRESS,
                CallSession.answered_by.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def set_provider_call_id(self, session_id: UUID, provider_call_id: str) -> None:
        await self._session.execute(
            update(CallSession)
            .where(CallSession.id == session_id, CallSession.provider_call_id.is_(None))
            .values(provider_call_id=provider_call_id)
            .execution_options(synchronize_session=False)
        )

    async def set_recording(self, session_id: UUID, recording_sid: str) -> bool:
        result = await self._session.execute(
            update(CallSession)
            .where(CallSession.id == session_id)
            .values(recording_sid=recording_sid)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_recording_deleted(self, recording_sid: str, deleted_at: datetime, reason: str) -> int:
        result = await self._session.execute(
            update(CallSession)
            .where(CallSession.recording_sid == recording_sid)
            .values(recording_deleted_at=deleted_at, recording_deletion_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def increment_tool_invocations(self, session_id: UUID) -> bool:
        result = await self._session.execute(
            update(CallSession)
            .where(CallSession.id == session_id)
            .values(tool_invocations=CallSession.tool_invocations + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def add_event(
        self,
        session_id: UUID,
        event_type: CallEventType,
        payload: dict[str, Any] | None = None,
    ) -> CallEvent:
        event = CallEvent(call_session_id=session_id, type=event_type, payload=payload)
        self._session.add(event)
        await self._session.flush()
        return event

    async def list_events(self, session_id: UUID) -> Sequence[CallEvent]:
        stmt = select(CallEvent).where(CallEvent.call_session_id == session_id).order_by(CallEvent.created_at)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_stale(self, created_before: datetime, limit: int = 100) -> Sequence[CallSession]:
        """Sessions still waiting on a provider callback."""
        stmt = (
            select(CallSession)
            .where(
                CallSession.status.in_([CallStatus.CREATED, CallStatus.RINGING]),
                CallSession.created_at < created_before,
            )
            .order_by(CallSession.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_for_line(self, line_id: UUID, start: datetime, end: datetime) -> Sequence[CallSession]:
        stmt = (
            select(CallSession)
            .where(
                CallSession.line_id == line_id,
                CallSession.created_at >= start,
                CallSession.created_at < end,
            )
            .order_by(CallSession.created_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
