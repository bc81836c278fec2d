"""
Mock telephony provider adapter for local development and tests.
"""

import logging
from datetime import datetime, timezone
from typing import Any

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
from companion_calls.telephony.twilio_adapter import TWILIO_STATUS_MAP

logger = logging.getLogger(__name__)


class MockTelephonyAdapter(TelephonyProvider):
    """In-memory provider that records every request it receives."""

    def __init__(self) -> None:
        self._calls: list[CallInitiationRequest] = []
        self._deleted: list[str] = []
        self._next_call_id: int = 1
        self._call_failure: CallInitiationError | None = None
        self._deletion_failures: dict[str, str] = {}

    def reset(self) -> None:
        self._calls.clear()
        self._deleted.clear()
        self._next_call_id = 1
        self._call_failure = None
        self._deletion_failures.clear()

    def configure_failure(
        self,
        should_fail: bool = True,
        error_message: str = "Mock failure",
        error_code: str = "MOCK_ERROR",
    ) -> None:
        self._call_failure = (
            CallInitiationError(message=error_message, error_code=error_code) if should_fail else None
        )

    def fail_deletion(self, recording_sid: str, error_message: str = "Mock deletion failure") -> None:
        self._deletion_failures[recording_sid] = error_message

    @property
    def calls(self) -> list[CallInitiationRequest]:
        return self._calls.copy()

    @property
    def deleted_recordings(self) -> list[str]:
        return self._deleted.copy()

    def get_last_call(self) -> CallInitiationRequest | None:
        return self._calls[-1] if self._calls else None

    def initiate_call_sync(self, request: CallInitiationRequest) -> CallInitiationResponse:
        logger.info(
            "Mock: Initiating call",
            extra={"to": request.to, "call_session_id": request.call_session_id},
        )
        if self._call_failure is not None:
            raise self._call_failure

        self._calls.append(request)
        provider_call_id = f"MOCK_CALL_{self._next_call_id:06d}"
        self._next_call_id += 1

        return CallInitiationResponse(
            provider_call_id=provider_call_id,
            status=ProviderCallStatus.QUEUED,
            created_at=datetime.now(timezone.utc),
            raw_response={"mock": True, "sid": provider_call_id},
        )

    def delete_recording_sync(self, recording_sid: str) -> None:
        if recording_sid in self._deletion_failures:
            raise RecordingDeletionError(message=self._deletion_failures[recording_sid], error_code="MOCK_ERROR")
        self._deleted.append(recording_sid)

    def parse_status_callback(self, payload: dict[str, Any]) -> StatusCallback:
        call_sid = payload.get("CallSid")
        raw_status = (payload.get("CallStatus") or "").lower()
        if not call_sid or not raw_status:
            raise WebhookParseError(
                message="Missing CallSid or CallStatus in payload",
                error_code="MISSING_FIELDS",
                provider_response=payload,
            )
        duration = payload.get("CallDuration")
        return StatusCallback(
            provider_call_id=call_sid,
            status=TWILIO_STATUS_MAP.get(raw_status),
            raw_status=raw_status,
            timestamp=datetime.now(timezone.utc),
            duration_seconds=int(duration) if duration else None,
            answered_by=payload.get("AnsweredBy") or None,
            raw_payload=payload,
        )

    def validate_webhook_signature(self, payload: bytes, signature: str, url: str) -> bool:
        return True
