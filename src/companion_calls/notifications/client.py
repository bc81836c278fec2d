"""
HTTP client for the notification layer.

The notification layer composes and delivers email/SMS. This service only
hands it structured payloads over an internal authenticated call. A non-2xx
response means "try again later", never "sent".
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from companion_calls.config import Settings, get_settings
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)

MISSED_CALLS_PATH = "/api/telephony/missed-calls"
WEEKLY_SUMMARY_PATH = "/api/telephony/weekly-summary"


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MissedCallAlert(_Payload):
    line_id: UUID
    account_id: UUID
    line_name: str
    consecutive_missed_count: int
    last_attempt_at: datetime
    dashboard_url: str
    settings_url: str


class WeeklySummary(_Payload):
    line_id: UUID
    account_id: UUID
    line_name: str
    timezone: str
    week_start_date: date
    week_end_date: date
    scheduled_calls: int
    answered_calls: int
    missed_calls: int
    show_missed_calls_warning: bool
    avg_duration_minutes: int | None
    billable_minutes: int


class NotificationClient:
    """Posts structured payloads to the notification layer."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def base_url(self) -> str:
        return self._settings.app_base_url.rstrip("/")

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.notification_timeout_seconds)
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _post(self, path: str, body: dict[str, Any], kind: str) -> bool:
        url = f"{self.base_url}{path}"
        try:
            response = await self._get_client().post(
                url,
                json=body,
                headers={"X-Webhook-Secret": self._settings.internal_api_secret},
            )
        except httpx.HTTPError as e:
            logger.error(f"{kind} request failed", extra={"url": url, "error": str(e)})
            return False

        if not response.is_success:
            logger.error(
                f"{kind} rejected",
                extra={"url": url, "status_code": response.status_code, "body": response.text[:500]},
            )
            return False
        return True

    async def send_missed_call_alert(self, alert: MissedCallAlert) -> bool:
        return await self._post(
            MISSED_CALLS_PATH,
            alert.model_dump(mode="json", by_alias=True),
            "Missed call alert",
        )

    async def send_weekly_summary(self, summary: WeeklySummary) -> bool:
        return await self._post(
            WEEKLY_SUMMARY_PATH,
            summary.model_dump(mode="json", by_alias=True),
            "Weekly summary",
        )
