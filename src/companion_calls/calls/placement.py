"""
Outbound call placement and inbound call acceptance.

``place_outbound_call`` is the single entry point used by the internal API
(outbound and test calls), the schedule sweep and the reminder sweep:

1. load line and account
2. create the session (idempotent on the scheduler key)
3. run the guards; a denial fails the session and raises ``CallDenied``
4. ask the provider to place the call; any failure fails the session and
   surfaces as a ``TelephonyProviderError``
5. store the provider call id
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.access import (
    AccessDecision,
    DenialReason,
    LineRepository,
    check_line_access,
    is_in_quiet_hours,
)
from companion_calls.calls.models import CallDirection, CallSession, EndReason
from companion_calls.calls.service import CallSessionService
from companion_calls.shared.exceptions import AppError, ConflictError
from companion_calls.shared.logging import get_logger
from companion_calls.telephony.config import TelephonyConfig
from companion_calls.telephony.interface import (
    CallInitiationError,
    CallInitiationRequest,
    TelephonyProvider,
    TelephonyProviderError,
)

logger = get_logger(__name__)

_DENIAL_END_REASON = {
    DenialReason.DO_NOT_CALL: EndReason.OPTED_OUT,
    DenialReason.QUIET_HOURS: EndReason.QUIET_HOURS,
}


class CallReason(str, Enum):
    SCHEDULED = "scheduled"
    REMINDER = "reminder"
    TEST = "test"
    MANUAL = "manual"


@dataclass
class OutboundCallRequest:
    line_id: UUID
    reason: CallReason = CallReason.MANUAL
    idempotency_key: str | None = None
    reminder_id: UUID | None = None
    reminder_message: str | None = None
    at: datetime | None = None


@dataclass(frozen=True)
class PlacedCall:
    session_id: UUID
    provider_call_id: str


@dataclass
class CallDenied(AppError):
    """A guard refused the call. The session, if any, is already failed."""

    reason: DenialReason = DenialReason.LINE_DISABLED
    session_id: UUID | None = None

    @property
    def code(self) -> str:
        return self.reason.code


@dataclass
class DuplicateCallError(ConflictError):
    """Another session already holds the scheduler idempotency key."""

    existing_session_id: UUID | None = None


@dataclass(frozen=True)
class InboundDecision:
    accepted: bool
    session_id: UUID | None = None
    reason: DenialReason | None = None
    line_id: UUID | None = None


class CallPlacementService:
    def __init__(
        self,
        session: AsyncSession,
        provider: TelephonyProvider,
        telephony_config: TelephonyConfig,
        call_service: CallSessionService,
    ) -> None:
        self._session = session
        self._provider = provider
        self._config = telephony_config
        self._calls = call_service
        self._lines = LineRepository(session)

    def _outbound_guards(self, line, account, at: datetime) -> AccessDecision:
        if line.do_not_call:
            return AccessDecision.deny(DenialReason.DO_NOT_CALL)
        if is_in_quiet_hours(line, at):
            return AccessDecision.deny(DenialReason.QUIET_HOURS)
        return check_line_access(line, account, "outbound", at)

    async def place_outbound_call(self, request: OutboundCallRequest) -> PlacedCall:
        """Place an outbound call to ``request.line_id``.

        Raises:
            NotFoundError: unknown line or account.
            DuplicateCallError: the idempotency key is already used.
            CallDenied: a guard refused the call.
            TelephonyProviderError: the provider refused the call.
        """
        now = request.at or datetime.now(timezone.utc)
        line, account = await self._lines.get_line_with_account(request.line_id)

        # Evaluated before the insert: a duplicate rolls the session back and
        # expires the loaded rows.
        decision = self._outbound_guards(line, account, now)
        line_id = line.id
        to_number = line.phone_e164
        from_number = self._config.twilio_from_number

        call, created = await self._calls.create_session(
            CallSession(
                account_id=account.id,
                line_id=line_id,
                direction=CallDirection.OUTBOUND,
                from_number=from_number or None,
                to_number=to_number,
                scheduler_idempotency_key=request.idempotency_key,
                reminder_id=request.reminder_id,
                is_reminder_call=request.reason == CallReason.REMINDER,
                reminder_message=request.reminder_message,
                is_test_call=request.reason == CallReason.TEST,
            )
        )
        session_id = call.id
        if not created:
            raise DuplicateCallError(
                message="Call already placed for this idempotency key",
                details={"idempotency_key": request.idempotency_key},
                existing_session_id=session_id,
            )

        if not decision.allowed:
            reason = decision.reason or DenialReason.LINE_DISABLED
            await self._calls.fail(session_id, _DENIAL_END_REASON.get(reason, EndReason.ACCESS_DENIED), ended_at=now)
            logger.info(
                "Outbound call denied",
                extra={"line_id": str(line_id), "session_id": str(session_id), "reason": reason.value},
            )
            raise CallDenied(
                message=f"Call denied: {reason.value}",
                details={"line_id": str(line_id), "minutes_remaining": decision.minutes_remaining},
                reason=reason,
                session_id=session_id,
            )

        base = self._config.webhook_base_url.rstrip("/")
        try:
            response = await self._provider.initiate_call(
                CallInitiationRequest(
                    to=to_number,
                    from_number=from_number,
                    voice_url=f"{base}/twilio/voice/outbound?callSessionId={session_id}",
                    status_callback_url=f"{base}/twilio/status?callSessionId={session_id}",
                    call_session_id=str(session_id),
                    machine_detection=self._config.machine_detection,
                    timeout_seconds=self._config.call_timeout_seconds,
                    metadata={"reason": request.reason.value},
                )
            )
        except TelephonyProviderError as e:
            logger.error(
                "Failed to initiate call",
                extra={"session_id": str(session_id), "error": str(e), "error_code": e.error_code},
            )
            await self._calls.fail(session_id, EndReason.PROVIDER_ERROR)
            raise
        except Exception as e:
            logger.exception("Unexpected error initiating call", extra={"session_id": str(session_id)})
            await self._calls.fail(session_id, EndReason.PROVIDER_ERROR)
            raise CallInitiationError(
                message=f"Call initiation failed: {e!s}",
                error_code="UNEXPECTED_ERROR",
            ) from e

        await self._calls.repository.set_provider_call_id(session_id, response.provider_call_id)
        await self._session.commit()
        logger.info(
            "Outbound call initiated",
            extra={
                "session_id": str(session_id),
                "line_id": str(line_id),
                "provider_call_id": response.provider_call_id,
                "reason": request.reason.value,
            },
        )
        return PlacedCall(session_id=session_id, provider_call_id=response.provider_call_id)

    async def accept_inbound_call(
        self,
        from_number: str,
        to_number: str,
        provider_call_id: str,
        at: datetime | None = None,
    ) -> InboundDecision:
        """Decide whether an inbound caller gets through.

        A denied caller leaves no session behind.
        """
        now = at or datetime.now(timezone.utc)
        existing = await self._calls.repository.get_by_provider_call_id(provider_call_id)
        if existing is not None:
            return InboundDecision(accepted=True, session_id=existing.id, line_id=existing.line_id)

        line = await self._lines.get_by_phone(from_number)
        if line is None:
            logger.info("Inbound call from unknown number", extra={"provider_call_id": provider_call_id})
            return InboundDecision(accepted=False)

        _, account = await self._lines.get_line_with_account(line.id)
        decision = check_line_access(line, account, "inbound", now)
        line_id = line.id
        if not decision.allowed:
            logger.info(
                "Inbound call denied",
                extra={"line_id": str(line_id), "reason": decision.reason.value if decision.reason else None},
            )
            return InboundDecision(accepted=False, reason=decision.reason, line_id=line_id)

        call, _ = await self._calls.create_session(
            CallSession(
                account_id=account.id,
                line_id=line_id,
                direction=CallDirection.INBOUND,
                provider_call_id=provider_call_id,
                from_number=from_number,
                to_number=to_number,
            )
        )
        session_id = call.id
        await self._calls.connect(session_id, connected_at=now)
        return InboundDecision(accepted=True, session_id=session_id, line_id=line_id)
