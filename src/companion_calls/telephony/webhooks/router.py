"""
FastAPI router for Twilio webhooks.

Key constraints:
- Twilio must always get a fast answer; no provider calls happen here
- Every request is signature-checked against the public URL Twilio called
- Status callbacks for unknown sessions are acknowledged and ignored
"""

from __future__ import annotations

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.access import LineRepository
from companion_calls.api.dependencies import get_call_dependencies, get_call_services
from companion_calls.calls.factory import CallDependencies, CallServices
from companion_calls.calls.models import AnsweredBy
from companion_calls.calls.service import parse_answered_by
from companion_calls.shared.database import get_db_session
from companion_calls.shared.logging import get_logger
from companion_calls.telephony.interface import WebhookParseError

logger = get_logger(__name__)

router = APIRouter(prefix="/twilio", tags=["webhooks"])

VOICEMAIL_MESSAGE = "Hi, this is your companion calling to check in. I'll try you again later. Take care!"
INBOUND_DENIED_MESSAGE = "Sorry, we can't take your call right now. Goodbye."


def _twiml(s: str) -> str:
    return '<?xml version="1.0" encoding="UTF-8"?>\n<Response>\n' + s + "\n</Response>"


def _xml_escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def _xml(body: str) -> Response:
    return Response(content=_twiml(body), media_type="application/xml")


def _hangup(message: str | None = None) -> Response:
    if message:
        return _xml(f"<Say>{_xml_escape(message)}</Say>\n<Hangup/>")
    return _xml("<Hangup/>")


def _stream(media_stream_url: str, session_id: UUID, extra: dict[str, str] | None = None) -> Response:
    params = {"callSessionId": str(session_id), **(extra or {})}
    parameters = "\n".join(
        f'<Parameter name="{_xml_escape(k)}" value="{_xml_escape(v)}"/>' for k, v in params.items()
    )
    return _xml(
        f'<Connect>\n<Stream url="{_xml_escape(media_stream_url)}">\n{parameters}\n</Stream>\n</Connect>'
    )


def _parse_session_id(raw: str | None) -> UUID | None:
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        logger.warning("Malformed callSessionId on webhook", extra={"call_session_id": raw})
        return None


async def verified_form(
    request: Request,
    deps: Annotated[CallDependencies, Depends(get_call_dependencies)],
) -> dict[str, Any]:
    """Signature-checked form payload with the query params merged in."""
    body = await request.body()
    cfg = deps.telephony_config
    url = cfg.get_webhook_url(request.url.path)
    if request.url.query:
        url = f"{url}?{request.url.query}"
    signature = request.headers.get("X-Twilio-Signature", "")

    if not deps.provider.validate_webhook_signature(body, signature, url):
        logger.warning("Invalid Twilio signature", extra={"path": request.url.path})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    form = dict(await request.form())
    payload = {k: str(v) for k, v in form.items()}
    payload.update(dict(request.query_params))
    return payload


@router.post("/status")
async def status_callback(
    payload: Annotated[dict[str, Any], Depends(verified_form)],
    deps: Annotated[CallDependencies, Depends(get_call_dependencies)],
    services: Annotated[CallServices, Depends(get_call_services)],
) -> Response:
    try:
        callback = deps.provider.parse_status_callback(payload)
    except WebhookParseError as e:
        logger.warning("Unparseable status callback", extra={"error": str(e)})
        return Response(status_code=status.HTTP_400_BAD_REQUEST)

    try:
        await services.calls.apply_status_callback(callback, _parse_session_id(payload.get("callSessionId")))
    except Exception:
        # Twilio retries on 5xx.
        logger.exception(
            "Status callback processing failed",
            extra={"provider_call_id": callback.provider_call_id, "raw_status": callback.raw_status},
        )
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return Response(status_code=status.HTTP_200_OK)


@router.post("/voice/outbound")
async def outbound_voice(
    payload: Annotated[dict[str, Any], Depends(verified_form)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
    deps: Annotated[CallDependencies, Depends(get_call_dependencies)],
    services: Annotated[CallServices, Depends(get_call_services)],
) -> Response:
    """Answered outbound call: hand it to the media stream, or leave a voicemail."""
    session_id = _parse_session_id(payload.get("callSessionId"))
    if session_id is None:
        return _hangup()

    call = await services.calls.repository.get(session_id, fresh=True)
    if call is None:
        logger.warning("Voice webhook for unknown session", extra={"session_id": str(session_id)})
        return _hangup()

    answered_by = parse_answered_by(payload.get("AnsweredBy"))
    await services.calls.connect(session_id, provider_call_id=payload.get("CallSid"), answered_by=answered_by)

    if answered_by == AnsweredBy.MACHINE:
        return _hangup(VOICEMAIL_MESSAGE)
    if answered_by == AnsweredBy.FAX:
        return _hangup()

    # The person may have opted out while the phone was ringing.
    line = await LineRepository(session).get_line(call.line_id)
    if line is None or line.do_not_call:
        logger.info("Line opted out before answer; hanging up", extra={"session_id": str(session_id)})
        return _hangup()

    extra = {"reminder": "true"} if call.is_reminder_call else None
    return _stream(deps.telephony_config.media_stream_url, session_id, extra)


@router.post("/voice/inbound")
async def inbound_voice(
    payload: Annotated[dict[str, Any], Depends(verified_form)],
    deps: Annotated[CallDependencies, Depends(get_call_dependencies)],
    services: Annotated[CallServices, Depends(get_call_services)],
) -> Response:
    """Inbound call: accept a known, allowed caller onto the media stream."""
    call_sid = payload.get("CallSid")
    from_number = payload.get("From")
    if not call_sid or not from_number:
        return _hangup(INBOUND_DENIED_MESSAGE)

    decision = await services.placement.accept_inbound_call(
        from_number=from_number,
        to_number=payload.get("To") or "",
        provider_call_id=call_sid,
    )
    if not decision.accepted or decision.session_id is None:
        return _hangup(INBOUND_DENIED_MESSAGE)
    return _stream(deps.telephony_config.media_stream_url, decision.session_id, {"direction": "inbound"})


@router.post("/recording")
async def recording_callback(
    payload: Annotated[dict[str, Any], Depends(verified_form)],
    services: Annotated[CallServices, Depends(get_call_services)],
) -> dict[str, Any]:
    recording_sid = payload.get("RecordingSid")
    session_id = _parse_session_id(payload.get("callSessionId"))
    if session_id is None and payload.get("CallSid"):
        call = await services.calls.repository.get_by_provider_call_id(payload["CallSid"])
        session_id = call.id if call is not None else None

    if not recording_sid or session_id is None:
        logger.warning("Recording callback without a session", extra={"recording_sid": recording_sid})
        return {"ok": False}

    attached = await services.calls.attach_recording(session_id, recording_sid)
    return {"ok": attached}
