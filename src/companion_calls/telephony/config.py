"""
Telephony provider configuration.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported telephony provider types."""

    TWILIO = "twilio"
    MOCK = "mock"


class TelephonyConfig(BaseSettings):
    """Telephony provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider selection
    provider_type: ProviderType = Field(default=ProviderType.TWILIO)

    # Provider credentials
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_from_number: str = Field(default="")
    twilio_api_base: str = Field(default="https://api.twilio.com/2010-04-01")

    # Public base URL the provider uses for voice and status callbacks
    webhook_base_url: str = Field(default="http://localhost:8000")

    # Public WSS URL of the media bridge that carries the conversation
    media_stream_url: str = Field(
        default="wss://localhost:8000/media",
        description="WebSocket URL the voice webhook connects answered calls to.",
    )

    call_timeout_seconds: int = Field(default=60, ge=10, le=300)
    machine_detection: bool = Field(default=True)
    skip_signature_validation: bool = Field(
        default=False,
        description="Development only: accept provider webhooks without a valid signature.",
    )

    def get_webhook_url(self, path: str = "/twilio/status") -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}{path}"


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
