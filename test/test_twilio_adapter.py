"""Tests for the Twilio telephony adapter (sync, no DB)."""

import hashlib
import hmac
from base64 import b64encode
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from companion_calls.telephony.config import ProviderType, TelephonyConfig
from companion_calls.telephony.interface import (
    CallInitiationError,
    CallInitiationRequest,
    ProviderCallStatus,
    RecordingDeletionError,
    WebhookParseError,
)
from companion_calls.telephony.twilio_adapter import TwilioAdapter


@pytest.fixture
def twilio_config() -> TelephonyConfig:
    return TelephonyConfig(
        provider_type=ProviderType.TWILIO,
        twilio_account_sid="AC_TEST_ACCOUNT_SID",
        twilio_auth_token="test_auth_token_12345",
        twilio_from_number="+14155550000",
        webhook_base_url="https://example.com",
        call_timeout_seconds=60,
    )


@pytest.fixture
def call_request() -> CallInitiationRequest:
    return CallInitiationRequest(
        to="+14155551234",
        from_number="+14155550000",
        voice_url="https://example.com/twilio/voice/outbound?callSessionId=abc",
        status_callback_url="https://example.com/twilio/status?callSessionId=abc",
        call_session_id="abc",
        timeout_seconds=45,
    )


class TestTwilioAdapterInitiateCallSync:
    def test_initiate_call_success(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_response = httpx.Response(
            status_code=201,
            json={
                "sid": "CA_TEST_CALL_SID_123",
                "status": "queued",
                "date_created": "Mon, 15 Jan 2024 10:30:00 +0000",
            },
        )

        mock_client = MagicMock(spec=httpx.Client)
        mock_client.post.return_value = mock_response

        adapter = TwilioAdapter(config=twilio_config, http_client=mock_client)
        response = adapter.initiate_call_sync(call_request)

        assert response.provider_call_id == "CA_TEST_CALL_SID_123"
        assert response.status == ProviderCallStatus.QUEUED
        assert response.created_at == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

        call_args = mock_client.post.call_args
        assert call_args[0][0] == "https://api.twilio.com/2010-04-01/Accounts/AC_TEST_ACCOUNT_SID/Calls.json"
        assert call_args[1]["auth"] == ("AC_TEST_ACCOUNT_SID", "test_auth_token_12345")
        data = call_args[1]["data"]
        assert data["Url"] == call_request.voice_url
        assert data["StatusCallback"] == call_request.status_callback_url
        assert data["Timeout"] == "45"
        assert data["MachineDetection"] == "Enable"

    def test_machine_detection_disabled(self, twilio_config: TelephonyConfig) -> None:
        request = CallInitiationRequest(
            to="+14155551234",
            from_number="+14155550000",
            voice_url="https://example.com/v",
            status_callback_url="https://example.com/s",
            call_session_id="abc",
            machine_detection=False,
        )
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.post.return_value = httpx.Response(status_code=201, json={"sid": "CA1", "status": "queued"})

        TwilioAdapter(config=twilio_config, http_client=mock_client).initiate_call_sync(request)

        assert "MachineDetection" not in mock_client.post.call_args[1]["data"]

    def test_initiate_call_api_error(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_response = httpx.Response(
            status_code=400,
            json={"code": 21211, "message": "Invalid 'To' Phone Number"},
        )

        mock_client = MagicMock(spec=httpx.Client)
        mock_client.post.return_value = mock_response

        adapter = TwilioAdapter(config=twilio_config, http_client=mock_client)

        with pytest.raises(CallInitiationError) as exc_info:
            adapter.initiate_call_sync(call_request)

        assert "Invalid 'To' Phone Number" in str(exc_info.value)
        assert exc_info.value.error_code == "21211"

    def test_initiate_call_http_error(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.post.side_effect = httpx.ConnectError("Connection refused")

        adapter = TwilioAdapter(config=twilio_config, http_client=mock_client)

        with pytest.raises(CallInitiationError) as exc_info:
            adapter.initiate_call_sync(call_request)

        assert exc_info.value.error_code == "HTTP_ERROR"

    def test_initiate_call_html_error_body(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.post.return_value = httpx.Response(status_code=503, text="<html>Service Unavailable</html>")

        with pytest.raises(CallInitiationError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=mock_client).initiate_call_sync(call_request)

        assert exc_info.value.error_code == "503"
        assert "Service Unavailable" in str(exc_info.value)

    def test_initiate_call_unreadable_success_body(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.post.return_value = httpx.Response(status_code=201, text="accepted")

        with pytest.raises(CallInitiationError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=mock_client).initiate_call_sync(call_request)

        assert exc_info.value.error_code == "INVALID_RESPONSE"

    @pytest.mark.asyncio
    async def test_async_entrypoint_runs_sync_call(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.post.return_value = httpx.Response(status_code=201, json={"sid": "CA_ASYNC", "status": "queued"})

        response = await TwilioAdapter(config=twilio_config, http_client=mock_client).initiate_call(call_request)

        assert response.provider_call_id == "CA_ASYNC"


class TestTwilioAdapterDeleteRecording:
    def test_delete_success(self, twilio_config: TelephonyConfig) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.delete.return_value = httpx.Response(status_code=204)

        TwilioAdapter(config=twilio_config, http_client=mock_client).delete_recording_sync("RE123")

        assert mock_client.delete.call_args[0][0].endswith("/Accounts/AC_TEST_ACCOUNT_SID/Recordings/RE123.json")

    def test_already_deleted_is_not_an_error(self, twilio_config: TelephonyConfig) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.delete.return_value = httpx.Response(status_code=404, json={"code": 20404})

        TwilioAdapter(config=twilio_config, http_client=mock_client).delete_recording_sync("RE123")

    def test_provider_error(self, twilio_config: TelephonyConfig) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.delete.return_value = httpx.Response(
            status_code=500, json={"code": 20500, "message": "Internal Server Error"}
        )

        with pytest.raises(RecordingDeletionError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=mock_client).delete_recording_sync("RE123")

        assert str(exc_info.value) == "Internal Server Error"
        assert exc_info.value.error_code == "20500"

    def test_http_error(self, twilio_config: TelephonyConfig) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.delete.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(RecordingDeletionError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=mock_client).delete_recording_sync("RE123")

        assert exc_info.value.error_code == "HTTP_ERROR"

    def test_html_error_body(self, twilio_config: TelephonyConfig) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.delete.return_value = httpx.Response(status_code=502, text="<html>Bad Gateway</html>")

        with pytest.raises(RecordingDeletionError) as exc_info:
            TwilioAdapter(config=twilio_config, http_client=mock_client).delete_recording_sync("RE123")

        assert exc_info.value.error_code == "502"
        assert exc_info.value.provider_response == {"message": "<html>Bad Gateway</html>"}


class TestTwilioAdapterParseStatusCallback:
    @pytest.fixture
    def adapter(self, twilio_config: TelephonyConfig) -> TwilioAdapter:
        return TwilioAdapter(config=twilio_config)

    def test_parse_in_progress(self, adapter: TwilioAdapter) -> None:
        callback = adapter.parse_status_callback(
            {
                "CallSid": "CA_TEST_123",
                "CallStatus": "in-progress",
                "AnsweredBy": "human",
                "Timestamp": "Mon, 06 Jan 2025 15:00:00 +0000",
            }
        )

        assert callback.provider_call_id == "CA_TEST_123"
        assert callback.status == ProviderCallStatus.IN_PROGRESS
        assert callback.answered_by == "human"
        assert callback.timestamp == datetime(2025, 1, 6, 15, 0, tzinfo=timezone.utc)

    def test_parse_completed_with_duration(self, adapter: TwilioAdapter) -> None:
        callback = adapter.parse_status_callback(
            {"CallSid": "CA_TEST_456", "CallStatus": "completed", "CallDuration": "180"}
        )

        assert callback.status == ProviderCallStatus.COMPLETED
        assert callback.duration_seconds == 180

    def test_unknown_status_is_kept_raw(self, adapter: TwilioAdapter) -> None:
        callback = adapter.parse_status_callback({"CallSid": "CA1", "CallStatus": "Something-New"})

        assert callback.status is None
        assert callback.raw_status == "something-new"

    def test_bad_duration_is_ignored(self, adapter: TwilioAdapter) -> None:
        callback = adapter.parse_status_callback({"CallSid": "CA1", "CallStatus": "completed", "CallDuration": "abc"})
        assert callback.duration_seconds is None

    def test_parse_missing_call_sid_raises_error(self, adapter: TwilioAdapter) -> None:
        with pytest.raises(WebhookParseError) as exc_info:
            adapter.parse_status_callback({"CallStatus": "completed"})

        assert exc_info.value.error_code == "MISSING_CALL_SID"

    def test_parse_missing_status_raises_error(self, adapter: TwilioAdapter) -> None:
        with pytest.raises(WebhookParseError) as exc_info:
            adapter.parse_status_callback({"CallSid": "CA1"})

        assert exc_info.value.error_code == "MISSING_CALL_STATUS"


class TestTwilioAdapterSignatureValidation:
    URL = "https://example.com/twilio/status?callSessionId=abc"
    BODY = b"CallSid=CA1&CallStatus=completed"

    def _sign(self, token: str) -> str:
        data = self.URL + "CallSidCA1" + "CallStatuscompleted"
        return b64encode(hmac.new(token.encode(), data.encode(), hashlib.sha1).digest()).decode()

    def test_valid_signature(self, twilio_config: TelephonyConfig) -> None:
        adapter = TwilioAdapter(config=twilio_config)
        assert adapter.validate_webhook_signature(self.BODY, self._sign("test_auth_token_12345"), self.URL)

    def test_wrong_signature(self, twilio_config: TelephonyConfig) -> None:
        adapter = TwilioAdapter(config=twilio_config)
        assert not adapter.validate_webhook_signature(self.BODY, self._sign("other_token"), self.URL)
        assert not adapter.validate_webhook_signature(self.BODY, "", self.URL)

    def test_no_auth_token_rejects(self) -> None:
        config = TelephonyConfig(provider_type=ProviderType.TWILIO, twilio_account_sid="AC_TEST", twilio_auth_token="")

        adapter = TwilioAdapter(config=config)

        assert not adapter.validate_webhook_signature(self.BODY, "any_signature", self.URL)

    def test_skip_in_development(self) -> None:
        config = TelephonyConfig(
            provider_type=ProviderType.TWILIO,
            twilio_auth_token="",
            skip_signature_validation=True,
        )
        assert TwilioAdapter(config=config).validate_webhook_signature(self.BODY, "", self.URL)
