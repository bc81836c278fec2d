"""
Telephony provider factory.

Configuration comes from TelephonyConfig (pydantic-settings), never from raw
environment reads here.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from companion_calls.telephony.config import ProviderType, TelephonyConfig
from companion_calls.telephony.config import get_telephony_config as _load_telephony_config
from companion_calls.telephony.interface import TelephonyProvider
from companion_calls.telephony.mock_adapter import MockTelephonyAdapter
from companion_calls.telephony.twilio_adapter import TwilioAdapter

logger = logging.getLogger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


@lru_cache(maxsize=1)
def get_telephony_config() -> TelephonyConfig:
    """Return the cached TelephonyConfig."""
    return _load_telephony_config()


def build_telephony_provider(cfg: TelephonyConfig) -> TelephonyProvider:
    logger.info(
        "Telephony config resolved",
        extra={
            "provider_type": cfg.provider_type.value,
            "twilio_account_sid": _mask(cfg.twilio_account_sid),
            "twilio_from_number": cfg.twilio_from_number,
            "webhook_base_url": cfg.webhook_base_url,
        },
    )

    if cfg.provider_type == ProviderType.TWILIO:
        return TwilioAdapter(cfg)

    if cfg.provider_type == ProviderType.MOCK:
        return MockTelephonyAdapter()

    raise ValueError(f"Unsupported telephony provider_type: {cfg.provider_type}")


@lru_cache(maxsize=1)
def get_telephony_provider() -> TelephonyProvider:
    """Create and cache the telephony provider."""
    return build_telephony_provider(get_telephony_config())
