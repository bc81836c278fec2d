"""
Per-session wiring of the call services.

Request handlers and background sweeps each open their own database session
and build the service graph around it; the process-wide collaborators
(provider, live call registry, notification client, usage reporter) are
shared.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.billing.metering import MeteringService, UsageReporter
from companion_calls.calls.missed import MissedCallTracker
from companion_calls.calls.placement import CallPlacementService
from companion_calls.calls.registry import LiveCallRegistry
from companion_calls.calls.service import CallSessionService
from companion_calls.config import Settings, get_settings
from companion_calls.notifications.client import NotificationClient
from companion_calls.telephony.config import TelephonyConfig
from companion_calls.telephony.interface import TelephonyProvider


@dataclass(frozen=True)
class CallDependencies:
    """Collaborators shared by every database session."""

    provider: TelephonyProvider
    telephony_config: TelephonyConfig
    registry: LiveCallRegistry
    notifier: NotificationClient | None = None
    reporter: UsageReporter | None = None
    settings: Settings | None = None


@dataclass(frozen=True)
class CallServices:
    metering: MeteringService
    calls: CallSessionService
    placement: CallPlacementService


def build_call_services(session: AsyncSession, deps: CallDependencies) -> CallServices:
    settings = deps.settings or get_settings()
    metering = MeteringService(session, deps.reporter, settings)
    missed = MissedCallTracker(session, deps.notifier, settings)
    calls = CallSessionService(session, deps.registry, metering, missed, settings)
    placement = CallPlacementService(session, deps.provider, deps.telephony_config, calls)
    return CallServices(metering=metering, calls=calls, placement=placement)
