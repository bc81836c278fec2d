"""
Pytest configuration and shared fixtures.

Database tests run against an in-memory SQLite database created from the ORM
metadata. A single ``AsyncSession`` is shared by the test body and by any
sweep or router under test, so every side effect is visible without
cross-connection surprises.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import companion_calls.billing.models  # noqa: F401
import companion_calls.retention.models  # noqa: F401
import companion_calls.scheduling.models  # noqa: F401
from companion_calls.accounts.models import Account, AccountStatus, Line, LineStatus
from companion_calls.calls.factory import CallDependencies, CallServices, build_call_services
from companion_calls.calls.models import CallDirection, CallSession
from companion_calls.calls.registry import LiveCallRegistry
from companion_calls.config import Settings
from companion_calls.notifications.client import NotificationClient
from companion_calls.shared.database import Base
from companion_calls.telephony.config import ProviderType, TelephonyConfig
from companion_calls.telephony.mock_adapter import MockTelephonyAdapter

LINE_PHONE = "+14155551234"
FROM_NUMBER = "+14155550000"
MEDIA_STREAM_URL = "wss://media.example.com/stream"
WEBHOOK_BASE_URL = "https://calls.example.com"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        app_env="dev",
        database_url="sqlite+aiosqlite://",
        internal_api_secret="test-secret",
        app_base_url="https://app.example.com",
        stripe_secret_key="",
    )


@pytest.fixture
def telephony_config() -> TelephonyConfig:
    return TelephonyConfig(
        provider_type=ProviderType.MOCK,
        twilio_account_sid="AC_TEST",
        twilio_auth_token="test_auth_token",
        twilio_from_number=FROM_NUMBER,
        webhook_base_url=WEBHOOK_BASE_URL,
        media_stream_url=MEDIA_STREAM_URL,
        machine_detection=True,
    )


@pytest.fixture
def mock_provider() -> MockTelephonyAdapter:
    return MockTelephonyAdapter()


@pytest.fixture
def notifier() -> AsyncMock:
    client = AsyncMock(spec=NotificationClient)
    client.send_missed_call_alert.return_value = True
    client.send_weekly_summary.return_value = True
    return client


@pytest.fixture
def registry() -> LiveCallRegistry:
    return LiveCallRegistry()


@pytest.fixture
def call_deps(
    mock_provider: MockTelephonyAdapter,
    telephony_config: TelephonyConfig,
    registry: LiveCallRegistry,
    notifier: AsyncMock,
    test_settings: Settings,
) -> CallDependencies:
    return CallDependencies(
        provider=mock_provider,
        telephony_config=telephony_config,
        registry=registry,
        notifier=notifier,
        reporter=None,
        settings=test_settings,
    )


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
def session_scope(db_session: AsyncSession) -> Callable[[], Any]:
    """Session factory for sweeps that hands out the shared test session."""

    @asynccontextmanager
    async def _scope() -> AsyncIterator[AsyncSession]:
        yield db_session

    return _scope


@pytest.fixture
def services(db_session: AsyncSession, call_deps: CallDependencies) -> CallServices:
    return build_call_services(db_session, call_deps)


@pytest.fixture
def make_account(db_session: AsyncSession) -> Callable[..., Awaitable[Account]]:
    async def _make(**overrides: Any) -> Account:
        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "name": "Test Account",
            "plan_id": "companion_monthly",
            "status": AccountStatus.ACTIVE,
            "minutes_included": 100,
            "minutes_used": 0,
            "cycle_start": now - timedelta(days=10),
            "cycle_end": now + timedelta(days=20),
            "billing_subscription_id": "sub_123",
        }
        values.update(overrides)
        account = Account(**values)
        db_session.add(account)
        await db_session.commit()
        return account

    return _make


@pytest.fixture
def make_line(db_session: AsyncSession) -> Callable[..., Awaitable[Line]]:
    async def _make(account: Account, **overrides: Any) -> Line:
        values: dict[str, Any] = {
            "account_id": account.id,
            "display_name": "Grandma Rose",
            "phone_e164": LINE_PHONE,
            "timezone": "America/New_York",
            "status": LineStatus.ACTIVE,
            "do_not_call": False,
            "inbound_allowed": True,
            "phone_verified_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "consecutive_missed_calls": 0,
        }
        values.update(overrides)
        line = Line(**values)
        db_session.add(line)
        await db_session.commit()
        return line

    return _make


@pytest_asyncio.fixture
async def account(make_account: Callable[..., Awaitable[Account]]) -> Account:
    return await make_account()


@pytest_asyncio.fixture
async def line(make_line: Callable[..., Awaitable[Line]], account: Account) -> Line:
    return await make_line(account)


@pytest.fixture
def make_call(db_session: AsyncSession) -> Callable[..., Awaitable[CallSession]]:
    """Insert a call session row directly, bypassing the state machine."""

    async def _make(line: Line, **overrides: Any) -> CallSession:
        values: dict[str, Any] = {
            "account_id": line.account_id,
            "line_id": line.id,
            "direction": CallDirection.OUTBOUND,
            "to_number": line.phone_e164,
        }
        values.update(overrides)
        call = CallSession(**values)
        db_session.add(call)
        await db_session.commit()
        return call

    return _make
