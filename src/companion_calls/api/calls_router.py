"""
Internal trigger surface for calls, lines and usage.

Every route here requires the shared ``X-Webhook-Secret`` header.
"""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.access import LineRepository
from companion_calls.api.dependencies import get_call_dependencies, get_call_services, require_internal_secret
from companion_calls.calls.factory import CallDependencies, CallServices
from companion_calls.calls.models import CallEventType
from companion_calls.calls.placement import CallDenied, CallReason, DuplicateCallError, OutboundCallRequest
from companion_calls.notifications.summary import build_weekly_summary
from companion_calls.shared.database import get_db_session
from companion_calls.shared.logging import get_logger
from companion_calls.telephony.interface import TelephonyProviderError

logger = get_logger(__name__)

router = APIRouter(tags=["calls"], dependencies=[Depends(require_internal_secret)])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OutboundCallBody(_CamelModel):
    line_id: UUID
    reason: CallReason = CallReason.MANUAL
    idempotency_key: str | None = Field(None, max_length=200)


class OutboundCallResponse(_CamelModel):
    success: bool = True
    session_id: UUID
    call_sid: str


class CallEventBody(_CamelModel):
    type: CallEventType
    payload: dict[str, Any] | None = None


class UsageResponse(_CamelModel):
    account_id: UUID
    minutes_included: int
    minutes_used: int
    minutes_remaining: int
    overage_minutes: int
    warning_level: str | None = Field(None, description='"low", "critical" or null')


async def _place(services: CallServices, body: OutboundCallBody, reason: CallReason) -> Any:
    try:
        placed = await services.placement.place_outbound_call(
            OutboundCallRequest(line_id=body.line_id, reason=reason, idempotency_key=body.idempotency_key)
        )
    except CallDenied as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": e.message,
                "code": e.code,
                "sessionId": str(e.session_id) if e.session_id else None,
            },
        )
    except DuplicateCallError as e:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "error": e.message,
                "existingSessionId": str(e.existing_session_id) if e.existing_session_id else None,
            },
        )
    except TelephonyProviderError as e:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": "Failed to place call", "code": e.error_code},
        )

    return OutboundCallResponse(session_id=placed.session_id, call_sid=placed.provider_call_id).model_dump(
        mode="json", by_alias=True
    )


@router.post("/calls/outbound")
async def place_outbound_call(
    body: OutboundCallBody,
    services: Annotated[CallServices, Depends(get_call_services)],
) -> Any:
    """Place an outbound companion call to a line."""
    return await _place(services, body, body.reason)


@router.post("/calls/test")
async def place_test_call(
    body: OutboundCallBody,
    services: Annotated[CallServices, Depends(get_call_services)],
) -> Any:
    """Same as ``/calls/outbound``; the session is flagged as a test call."""
    return await _place(services, body, CallReason.TEST)


@router.post("/calls/{session_id}/events", status_code=status.HTTP_201_CREATED)
async def record_call_event(
    session_id: UUID,
    body: CallEventBody,
    services: Annotated[CallServices, Depends(get_call_services)],
) -> dict[str, Any]:
    event = await services.calls.record_call_event(session_id, body.type, body.payload)
    return {"id": str(event.id), "type": event.type.value}


@router.post("/calls/{session_id}/tool-invocations", status_code=status.HTTP_204_NO_CONTENT)
async def increment_tool_invocations(
    session_id: UUID,
    services: Annotated[CallServices, Depends(get_call_services)],
) -> None:
    await services.calls.increment_tool_invocations(session_id)


@router.post("/lines/{line_id}/opt-out", status_code=status.HTTP_204_NO_CONTENT)
async def opt_out_line(
    line_id: UUID,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> None:
    lines = LineRepository(session)
    if await lines.get_line(line_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Line {line_id} not found")
    await lines.record_opt_out(line_id)
    await session.commit()


@router.post("/internal/lines/{line_id}/weekly-summary")
async def send_weekly_summary(
    line_id: UUID,
    session: Annotated[AsyncSession, Depends(get_db_session)],
    deps: Annotated[CallDependencies, Depends(get_call_dependencies)],
) -> dict[str, Any]:
    summary = await build_weekly_summary(session, line_id)
    sent = False
    if deps.notifier is not None:
        sent = await deps.notifier.send_weekly_summary(summary)
    logger.info("Weekly summary built", extra={"line_id": str(line_id), "sent": sent})
    return {"sent": sent, "summary": summary.model_dump(mode="json", by_alias=True)}


@router.get("/accounts/{account_id}/usage")
async def get_account_usage(
    account_id: UUID,
    services: Annotated[CallServices, Depends(get_call_services)],
) -> dict[str, Any]:
    summary = await services.metering.get_usage_summary(account_id)
    level = await services.metering.should_warn_low_minutes(account_id)
    return UsageResponse(
        account_id=summary.account_id,
        minutes_included=summary.minutes_included,
        minutes_used=summary.minutes_used,
        minutes_remaining=summary.minutes_remaining,
        overage_minutes=summary.overage_minutes,
        warning_level=level,
    ).model_dump(mode="json", by_alias=True)
