"""
Payment processor integration: metered usage reporting to Stripe.

Uses the Stripe REST API over httpx. Overage and pay-as-you-go minutes are
reported as a usage record on the subscription item priced with the
configured overage price.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from companion_calls.config import Settings, get_settings
from companion_calls.shared.exceptions import AppError
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)


class UsageReportingError(AppError):
    """Usage could not be reported to the payment processor."""


@dataclass(frozen=True)
class UsageReport:
    subscription_id: str
    quantity: int
    timestamp: datetime
    idempotency_key: str


class StripeUsageReporter:
    """Reports metered minutes as Stripe usage records (``action=increment``)."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(20.0))
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _url(self, path: str) -> str:
        return f"{self._settings.stripe_api_base.rstrip('/')}{path}"

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._settings.stripe_secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._get_client().request(method, self._url(path), **kwargs)
        except httpx.HTTPError as e:
            raise UsageReportingError(message=f"Stripe request failed: {e!s}", details={"path": path}) from e

        try:
            body = response.json() if response.content else {}
        except ValueError as e:
            raise UsageReportingError(
                message=f"Stripe returned an unreadable body ({response.status_code})",
                details={"path": path, "status_code": response.status_code},
            ) from e
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            error = body.get("error") or {}
            raise UsageReportingError(
                message=error.get("message", f"Stripe returned {response.status_code}"),
                details={"path": path, "status_code": response.status_code, "code": error.get("code")},
            )
        return body

    async def _find_overage_item(self, subscription_id: str) -> str:
        price_id = self._settings.stripe_overage_price_id
        if not price_id:
            raise UsageReportingError(message="Overage price is not configured")

        subscription = await self._request("GET", f"/subscriptions/{subscription_id}", headers=self._headers())
        for item in subscription.get("items", {}).get("data", []):
            if item.get("price", {}).get("id") == price_id:
                return item["id"]

        raise UsageReportingError(
            message="Subscription has no overage item",
            details={"subscription_id": subscription_id, "price_id": price_id},
        )

    async def report_usage(self, report: UsageReport) -> str:
        """Report usage and return the usage record id."""
        if not self._settings.stripe_secret_key:
            raise UsageReportingError(message="Stripe is not configured")

        item_id = await self._find_overage_item(report.subscription_id)
        record = await self._request(
            "POST",
            f"/subscription_items/{item_id}/usage_records",
            headers=self._headers(report.idempotency_key),
            data={
                "quantity": str(report.quantity),
                "timestamp": str(int(report.timestamp.timestamp())),
                "action": "increment",
            },
        )
        record_id = record.get("id")
        if not record_id:
            raise UsageReportingError(message="Stripe usage record has no id", details={"subscription_item_id": item_id})
        logger.info(
            "Usage reported to Stripe",
            extra={
                "subscription_id": report.subscription_id,
                "subscription_item_id": item_id,
                "quantity": report.quantity,
                "usage_record_id": record_id,
            },
        )
        return record_id
