"""
Twilio telephony provider adapter.

Talks to the Twilio REST API directly over httpx.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from base64 import b64encode
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import parse_qs

import httpx

from companion_calls.telephony.config import TelephonyConfig, get_telephony_config
from companion_calls.telephony.interface import (
    CallInitiationError,
    CallInitiationRequest,
    CallInitiationResponse,
    ProviderCallStatus,
    RecordingDeletionError,
    StatusCallback,
    TelephonyProvider,
    WebhookParseError,
)

logger = logging.getLogger(__name__)

TWILIO_STATUS_MAP: dict[str, ProviderCallStatus] = {
    "queued": ProviderCallStatus.QUEUED,
    "initiated": ProviderCallStatus.INITIATED,
    "ringing": ProviderCallStatus.RINGING,
    "in-progress": ProviderCallStatus.IN_PROGRESS,
    "completed": ProviderCallStatus.COMPLETED,
    "busy": ProviderCallStatus.BUSY,
    "no-answer": ProviderCallStatus.NO_ANSWER,
    "failed": ProviderCallStatus.FAILED,
    "canceled": ProviderCallStatus.CANCELED,
}


def _parse_timestamp(value: str | None) -> datetime:
    """Twilio sends RFC 2822 timestamps; accept ISO 8601 as well."""
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _error_body(response: httpx.Response) -> dict[str, Any]:
    """Twilio error JSON, or the raw text when a proxy answers with HTML."""
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text[:500]}
    return data if isinstance(data, dict) else {"message": str(data)}


class TwilioAdapter(TelephonyProvider):
    """Twilio telephony provider adapter."""

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=httpx.Timeout(30.0))
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def _get_auth(self) -> tuple[str, str]:
        return (self._config.twilio_account_sid, self._config.twilio_auth_token)

    def _get_api_url(self, endpoint: str) -> str:
        base = self._config.twilio_api_base.rstrip("/")
        return f"{base}/Accounts/{self._config.twilio_account_sid}{endpoint}"

    def initiate_call_sync(self, request: CallInitiationRequest) -> CallInitiationResponse:
        """Initiate an outbound call via Twilio."""
        client = self._get_client()

        payload: dict[str, Any] = {
            "To": request.to,
            "From": request.from_number,
            "Url": request.voice_url,
            "Method": "POST",
            "StatusCallback": request.status_callback_url,
            "StatusCallbackEvent": ["initiated", "ringing", "answered", "completed"],
            "StatusCallbackMethod": "POST",
            "Timeout": str(request.timeout_seconds),
        }
        if request.machine_detection:
            payload["MachineDetection"] = "Enable"

        logger.info(
            "Initiating Twilio call",
            extra={"to": request.to, "call_session_id": request.call_session_id},
        )

        try:
            response = client.post(
                self._get_api_url("/Calls.json"),
                data=payload,
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            logger.exception(
                "HTTP error during Twilio call initiation",
                extra={"call_session_id": request.call_session_id},
            )
            raise CallInitiationError(
                message=f"HTTP error: {e!s}",
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code >= 400:
            error_data = _error_body(response)
            logger.error(
                "Twilio call initiation failed",
                extra={
                    "status_code": response.status_code,
                    "error": error_data,
                    "call_session_id": request.call_session_id,
                },
            )
            raise CallInitiationError(
                message=error_data.get("message", "Call initiation failed"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
            )

        try:
            data = response.json()
            provider_call_id = data["sid"]
        except (ValueError, KeyError, TypeError) as e:
            raise CallInitiationError(
                message="Unreadable call initiation response",
                error_code="INVALID_RESPONSE",
                provider_response={"body": response.text[:500]},
            ) from e
        return CallInitiationResponse(
            provider_call_id=provider_call_id,
            status=TWILIO_STATUS_MAP.get(data.get("status", ""), ProviderCallStatus.QUEUED),
            created_at=_parse_timestamp(data.get("date_created")),
            raw_response=data,
        )

    def delete_recording_sync(self, recording_sid: str) -> None:
        client = self._get_client()
        try:
            response = client.delete(
                self._get_api_url(f"/Recordings/{recording_sid}.json"),
                auth=self._get_auth(),
            )
        except httpx.HTTPError as e:
            raise RecordingDeletionError(
                message=f"HTTP error: {e!s}",
                error_code="HTTP_ERROR",
            ) from e

        if response.status_code == 404:
            logger.info("Recording already deleted", extra={"recording_sid": recording_sid})
            return

        if response.status_code >= 400:
            error_data = _error_body(response)
            raise RecordingDeletionError(
                message=error_data.get("message", f"Recording deletion failed ({response.status_code})"),
                error_code=str(error_data.get("code", response.status_code)),
                provider_response=error_data,
            )

        logger.info("Recording deleted", extra={"recording_sid": recording_sid})

    def parse_status_callback(self, payload: dict[str, Any]) -> StatusCallback:
        call_sid = payload.get("CallSid")
        raw_status = (payload.get("CallStatus") or "").lower()

        if not call_sid:
            raise WebhookParseError(
                message="Missing CallSid in webhook payload",
                error_code="MISSING_CALL_SID",
                provider_response=payload,
            )
        if not raw_status:
            raise WebhookParseError(
                message="Missing CallStatus in webhook payload",
                error_code="MISSING_CALL_STATUS",
                provider_response=payload,
            )

        duration_seconds = None
        if payload.get("CallDuration"):
            try:
                duration_seconds = int(payload["CallDuration"])
            except (TypeError, ValueError):
                logger.warning("Unparseable CallDuration", extra={"call_sid": call_sid})

        return StatusCallback(
            provider_call_id=call_sid,
            status=TWILIO_STATUS_MAP.get(raw_status),
            raw_status=raw_status,
            timestamp=_parse_timestamp(payload.get("Timestamp")),
            duration_seconds=duration_seconds,
            answered_by=payload.get("AnsweredBy") or None,
            direction=payload.get("Direction"),
            error_code=payload.get("ErrorCode"),
            error_message=payload.get("ErrorMessage"),
            raw_payload=payload,
        )

    def validate_webhook_signature(self, payload: bytes, signature: str, url: str) -> bool:
        if self._config.skip_signature_validation:
            logger.warning("Twilio signature validation skipped (development mode)")
            return True
        if not self._config.twilio_auth_token:
            logger.error("No Twilio auth token configured; rejecting webhook")
            return False
        if not signature:
            return False

        params = parse_qs(payload.decode("utf-8"), keep_blank_values=True)
        data_str = url
        for key in sorted(params.keys()):
            for value in params[key]:
                data_str += key + value

        computed = hmac.new(
            self._config.twilio_auth_token.encode("utf-8"),
            data_str.encode("utf-8"),
            hashlib.sha1,
        ).digest()
        return hmac.compare_digest(b64encode(computed).decode("utf-8"), signature)
