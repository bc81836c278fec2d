"""
Recurrence rules for schedules and reminders.

A recurrence is decided once, when the schedule or reminder is created, and
stored as plain columns. The RRULE text form is only kept so that payloads
written by older clients can still be read and written back.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from companion_calls.shared.exceptions import ValidationError


class Frequency(str, Enum):
    """Recurrence frequency."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def _check_interval(interval: int) -> None:
    if not isinstance(interval, int) or interval < 1:
        raise ValidationError(
            message=f"Recurrence interval must be a positive integer, got {interval!r}",
            details={"interval": interval},
        )


@dataclass(frozen=True)
class Daily:
    interval: int = 1

    frequency: ClassVar[Frequency] = Frequency.DAILY

    def __post_init__(self) -> None:
        _check_interval(self.interval)


@dataclass(frozen=True)
class Weekly:
    """Weekly recurrence. Weekdays use 0=Sunday through 6=Saturday."""

    days: tuple[int, ...] = field(default_factory=tuple)
    interval: int = 1

    frequency: ClassVar[Frequency] = Frequency.WEEKLY

    def __post_init__(self) -> None:
        _check_interval(self.interval)
        days = tuple(sorted(set(self.days)))
        for day in days:
            if not isinstance(day, int) or not 0 <= day <= 6:
                raise ValidationError(
                    message=f"Weekday must be between 0 (Sunday) and 6 (Saturday), got {day!r}",
                    details={"days": list(self.days)},
                )
        object.__setattr__(self, "days", days)


@dataclass(frozen=True)
class Monthly:
    """Monthly recurrence. ``day=None`` keeps the day of the current occurrence."""

    day: int | None = None
    interval: int = 1

    frequency: ClassVar[Frequency] = Frequency.MONTHLY

    def __post_init__(self) -> None:
        _check_interval(self.interval)
        if self.day is not None and not 1 <= self.day <= 31:
            raise ValidationError(
                message=f"Day of month must be between 1 and 31, got {self.day!r}",
                details={"day": self.day},
            )


Recurrence = Daily | Weekly | Monthly


def to_columns(recurrence: Recurrence | None) -> dict[str, Any]:
    """Flatten a recurrence into the column values used by ORM models."""
    if recurrence is None:
        return {"frequency": None, "interval": 1, "days_of_week": None, "day_of_month": None}

    match recurrence:
        case Daily(interval=interval):
            return {"frequency": Frequency.DAILY.value, "interval": interval,
                    "days_of_week": None, "day_of_month": None}
        case Weekly(days=days, interval=interval):
            return {"frequency": Frequency.WEEKLY.value, "interval": interval,
                    "days_of_week": list(days), "day_of_month": None}
        case Monthly(day=day, interval=interval):
            return {"frequency": Frequency.MONTHLY.value, "interval": interval,
                    "days_of_week": None, "day_of_month": day}
    raise TypeError(f"Unsupported recurrence: {recurrence!r}")


def from_columns(
    frequency: str | None,
    interval: int | None = 1,
    days_of_week: list[int] | None = None,
    day_of_month: int | None = None,
) -> Recurrence | None:
    """Rebuild a recurrence from stored columns; ``None`` frequency means one-time."""
    if frequency is None:
        return None

    interval = interval or 1
    match Frequency(frequency):
        case Frequency.DAILY:
            return Daily(interval=interval)
        case Frequency.WEEKLY:
            return Weekly(days=tuple(days_of_week or ()), interval=interval)
        case Frequency.MONTHLY:
            return Monthly(day=day_of_month, interval=interval)


# ---------------------------------------------------------------------------
# Legacy RRULE text
# ---------------------------------------------------------------------------

_RRULE_DAYS = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")
_RRULE_PART = re.compile(r"^[A-Z]+=[A-Z0-9,+-]+$")


def parse_rrule(
    text: str,
    days_of_week: list[int] | None = None,
    day_of_month: int | None = None,
) -> Recurrence:
    """Parse ``FREQ=...;INTERVAL=...`` text into a recurrence.

    ``days_of_week`` and ``day_of_month`` fill in what older rows kept in
    separate columns instead of BYDAY / BYMONTHDAY.
    """
    raw = (text or "").strip().upper()
    if raw.startswith("RRULE:"):
        raw = raw[len("RRULE:"):]

    parts: dict[str, str] = {}
    for chunk in filter(None, raw.split(";")):
        if not _RRULE_PART.match(chunk):
            raise ValidationError(message=f"Malformed RRULE component: {chunk!r}", details={"rrule": text})
        key, value = chunk.split("=", 1)
        parts[key] = value

    freq = parts.get("FREQ")
    if freq is None:
        raise ValidationError(message="RRULE is missing FREQ", details={"rrule": text})

    try:
        interval = int(parts.get("INTERVAL", "1"))
    except ValueError as e:
        raise ValidationError(message="RRULE INTERVAL is not a number", details={"rrule": text}) from e

    match freq:
        case "DAILY":
            return Daily(interval=interval)
        case "WEEKLY":
            days = list(days_of_week or [])
            if "BYDAY" in parts:
                try:
                    days = [_RRULE_DAYS.index(token[-2:]) for token in parts["BYDAY"].split(",")]
                except ValueError as e:
                    raise ValidationError(message="RRULE BYDAY is invalid", details={"rrule": text}) from e
            return Weekly(days=tuple(days), interval=interval)
        case "MONTHLY":
            day = day_of_month
            if "BYMONTHDAY" in parts:
                try:
                    day = int(parts["BYMONTHDAY"])
                except ValueError as e:
                    raise ValidationError(message="RRULE BYMONTHDAY is invalid", details={"rrule": text}) from e
            return Monthly(day=day, interval=interval)

    raise ValidationError(message=f"Unsupported RRULE frequency: {freq}", details={"rrule": text})


def to_rrule(recurrence: Recurrence) -> str:
    match recurrence:
        case Daily(interval=interval):
            return f"FREQ=DAILY;INTERVAL={interval}"
        case Weekly(days=days, interval=interval):
            rule = f"FREQ=WEEKLY;INTERVAL={interval}"
            if days:
                rule += ";BYDAY=" + ",".join(_RRULE_DAYS[d] for d in days)
            return rule
        case Monthly(day=day, interval=interval):
            rule = f"FREQ=MONTHLY;INTERVAL={interval}"
            if day is not None:
                rule += f";BYMONTHDAY={day}"
            return rule
    raise TypeError(f"Unsupported recurrence: {recurrence!r}")
