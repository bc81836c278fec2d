"""
Telephony provider interface definition.

The call session layer only talks to providers through ``TelephonyProvider``:
place a call, delete a recording, parse a status callback and validate a
webhook signature.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import anyio


class ProviderCallStatus(str, Enum):
    """Call status values reported by a provider."""

    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(frozen=True)
class CallInitiationRequest:
    """Request to initiate an outbound call."""

    to: str
    from_number: str
    voice_url: str
    status_callback_url: str
    call_session_id: str
    machine_detection: bool = True
    timeout_seconds: int = 60
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallInitiationResponse:
    """Response from call initiation."""

    provider_call_id: str
    status: ProviderCallStatus
    created_at: datetime
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusCallback:
    """Parsed status callback from a telephony provider."""

    provider_call_id: str
    status: ProviderCallStatus | None
    raw_status: str
    timestamp: datetime
    duration_seconds: int | None = None
    answered_by: str | None = None
    direction: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


class TelephonyProviderError(Exception):
    """Base exception for telephony provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.provider_response = provider_response or {}


class CallInitiationError(TelephonyProviderError):
    """Error during call initiation."""


class RecordingDeletionError(TelephonyProviderError):
    """Error deleting a stored recording."""


class WebhookParseError(TelephonyProviderError):
    """Error parsing webhook event."""


class TelephonyProvider(ABC):
    """Abstract interface for telephony providers.

    Adapters implement the blocking ``*_sync`` methods; the async entrypoints
    run them in a worker thread.
    """

    async def initiate_call(self, request: CallInitiationRequest) -> CallInitiationResponse:
        return await anyio.to_thread.run_sync(self.initiate_call_sync, request)

    async def delete_recording(self, recording_sid: str) -> None:
        await anyio.to_thread.run_sync(self.delete_recording_sync, recording_sid)

    @abstractmethod
    def initiate_call_sync(self, request: CallInitiationRequest) -> CallInitiationResponse:
        """Place an outbound call."""
        ...

    @abstractmethod
    def delete_recording_sync(self, recording_sid: str) -> None:
        """Delete a recording; an already-deleted recording is not an error."""
        ...

    @abstractmethod
    def parse_status_callback(self, payload: dict[str, Any]) -> StatusCallback:
        """Parse a status callback payload from the provider."""
        ...

    @abstractmethod
    def validate_webhook_signature(self, payload: bytes, signature: str, url: str) -> bool:
        """Validate webhook signature for authenticity."""
        ...
