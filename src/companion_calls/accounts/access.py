"""
Guards evaluated before a call is placed or accepted.

Guards run once, at placement time. Callbacks for a call that is already
in flight never re-check them, so a call is not cut short when the account
changes status while the phone is ringing.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from companion_calls.accounts.models import Account, AccountStatus, Line, LineStatus
from companion_calls.scheduling.timezone import is_in_local_window
from companion_calls.shared.exceptions import NotFoundError
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)


class DenialReason(str, Enum):
    """Why a call was not placed."""

    DO_NOT_CALL = "do_not_call"
    QUIET_HOURS = "quiet_hours"
    LINE_DISABLED = "line_disabled"
    ACCOUNT_CANCELED = "account_canceled"
    INBOUND_BLOCKED = "inbound_blocked"
    NOT_VERIFIED = "not_verified"
    TRIAL_EXPIRED = "trial_expired"
    MINUTES_EXHAUSTED = "minutes_exhausted"

    @property
    def code(self) -> str:
        """Upper-case code returned to API callers."""
        return self.value.upper()


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: DenialReason | None = None
    minutes_remaining: int | None = None

    @classmethod
    def deny(cls, reason: DenialReason, minutes_remaining: int | None = None) -> "AccessDecision":
        return cls(allowed=False, reason=reason, minutes_remaining=minutes_remaining)


def is_in_quiet_hours(line: Line, at: datetime | None = None) -> bool:
    """True when the line's local time is inside its quiet hours window.

    The window start is inclusive, the end exclusive, and it may wrap past
    midnight (``21:00`` to ``08:00``). A line without quiet hours is never quiet.
    """
    if not line.quiet_hours_start or not line.quiet_hours_end:
        return False
    return is_in_local_window(line.quiet_hours_start, line.quiet_hours_end, line.timezone, at)


def check_line_access(
    line: Line,
    account: Account,
    direction: str = "outbound",
    at: datetime | None = None,
) -> AccessDecision:
    """Account-level access check for a call in ``direction``.

    Opt-out is part of the outbound check; quiet hours are evaluated
    separately by the caller since they are a scheduling concern rather than
    an account state.
    """
    now = at or datetime.now(timezone.utc)

    if line.status == LineStatus.DISABLED:
        return AccessDecision.deny(DenialReason.LINE_DISABLED)

    if account.status == AccountStatus.CANCELED:
        return AccessDecision.deny(DenialReason.ACCOUNT_CANCELED)

    if direction == "inbound" and not line.inbound_allowed:
        return AccessDecision.deny(DenialReason.INBOUND_BLOCKED)

    if direction == "outbound" and line.do_not_call:
        return AccessDecision.deny(DenialReason.DO_NOT_CALL)

    if line.phone_verified_at is None:
        return AccessDecision.deny(DenialReason.NOT_VERIFIED)

    remaining = account.minutes_remaining
    if account.status == AccountStatus.TRIAL:
        if account.trial_ends_at is not None and account.trial_ends_at <= now:
            return AccessDecision.deny(DenialReason.TRIAL_EXPIRED, minutes_remaining=remaining)
        # Trials stop hard at the allotment; paid plans roll into overage.
        if remaining <= 0:
            return AccessDecision.deny(DenialReason.MINUTES_EXHAUSTED, minutes_remaining=0)

    return AccessDecision(allowed=True, minutes_remaining=remaining)


class LineRepository:
    """Read/update access to lines and their accounts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_line(self, line_id: UUID) -> Line | None:
        return await self._session.get(Line, line_id)

    async def get_line_with_account(self, line_id: UUID) -> tuple[Line, Account]:
        line = await self._session.get(Line, line_id)
        if line is None:
            raise NotFoundError(message=f"Line {line_id} not found", details={"line_id": str(line_id)})
        account = await self._session.get(Account, line.account_id)
        if account is None:
            raise NotFoundError(message=f"Account for line {line_id} not found", details={"line_id": str(line_id)})
        return line, account

    async def get_by_phone(self, phone_e164: str) -> Line | None:
        stmt = (
            select(Line)
            .where(Line.phone_e164 == phone_e164, Line.status != LineStatus.DISABLED)
            .order_by(Line.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_successful_call(self, line_id: UUID, at: datetime) -> None:
        await self._session.execute(
            update(Line).where(Line.id == line_id).values(last_successful_call_at=at)
        )

    async def record_opt_out(self, line_id: UUID, at: datetime | None = None) -> None:
        """Stop all outbound calls to the line."""
        await self._session.execute(
            update(Line)
            .where(Line.id == line_id)
            .values(do_not_call=True, opted_out_at=at or datetime.now(timezone.utc))
        )
        logger.info("Line opted out", extra={"line_id": str(line_id)})
