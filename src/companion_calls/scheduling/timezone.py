"""
Time zone engine for scheduled and reminder calls.

Pure calendar math: turns a local time-of-day, a recurrence and an IANA zone
into the absolute instant a call should fire.

DST policy:
- A local time that does not exist (spring-forward gap) is moved forward one
  hour at a time, at most three hours, until it exists.
- A local time that exists twice (fall-back overlap) resolves to the later
  instant for recurring work and to the earlier one for one-time conversion.

Weekdays use 0=Sunday through 6=Saturday everywhere in this module.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

from dateutil.relativedelta import relativedelta

from companion_calls.scheduling.recurrence import Daily, Monthly, Recurrence, Weekly
from companion_calls.shared.exceptions import ValidationError
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)

TIME_OF_DAY_RE = re.compile(r"^(\d{2}):(\d{2})(?::(\d{2}))?$")
LOCAL_DATETIME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2})(?::(\d{2}))?$")

MAX_GAP_SHIFT_HOURS = 3
_MAX_CATCH_UP_STEPS = 1000


@dataclass(frozen=True)
class TimeOfDay:
    hour: int
    minute: int
    second: int = 0

    @property
    def normalized(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"

    def as_time(self) -> time:
        return time(self.hour, self.minute, self.second)


@dataclass(frozen=True)
class ResolvedLocalTime:
    """Outcome of pinning a local wall-clock time to an instant."""

    instant: datetime
    local: datetime
    shifted_hours: int = 0
    ambiguous: bool = False

    @property
    def is_dst(self) -> bool:
        return bool(self.local.dst())


def parse_time_of_day(value: str) -> TimeOfDay:
    """Parse ``HH:mm`` or ``HH:mm:ss``. Anything else is a validation error."""
    match = TIME_OF_DAY_RE.match(value or "")
    if not match:
        raise ValidationError(
            message=f'Invalid time of day: "{value}". Expected "HH:mm".',
            details={"time_of_day": value},
        )
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    if hour > 23 or minute > 59 or second > 59:
        raise ValidationError(
            message=f'Time of day out of range: "{value}".',
            details={"time_of_day": value},
        )
    return TimeOfDay(hour, minute, second)


def weekday_of(day: date | datetime) -> int:
    """Weekday with Sunday as 0."""
    return (day.weekday() + 1) % 7


# ---------------------------------------------------------------------------
# Zone validation
# ---------------------------------------------------------------------------

def is_valid_timezone(tz_name: str) -> bool:
    """Return True for a real IANA region zone (or UTC).

    Bare abbreviations such as ``EST`` exist in the database but are rejected.
    """
    name = (tz_name or "").strip()
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # OSError: a tzdata directory such as "America" rather than a zone file
        return False
    return "/" in name or name in ("UTC", "Etc/UTC")


def validate_timezone(tz_name: str) -> ZoneInfo:
    """Return the zone for ``tz_name`` or raise ``ValidationError``."""
    if not is_valid_timezone(tz_name):
        raise ValidationError(
            message=(
                f'Invalid timezone: "{tz_name}". Must be a valid IANA timezone '
                'identifier (e.g., "America/New_York").'
            ),
            details={"timezone": tz_name},
        )
    return ZoneInfo(tz_name.strip())


def validate_timezone_support(tz_names: Iterable[str]) -> None:
    """Health check: every zone in ``tz_names`` must load from the tz database."""
    tz_names = list(tz_names)
    known = available_timezones()
    failed = [name for name in tz_names if name not in known and name != "UTC"]
    if failed:
        raise RuntimeError(
            f"Timezone support check failed for: {', '.join(failed)}. "
            "Install the tzdata package or system zoneinfo files."
        )
    logger.info("Timezone support validated", extra={"timezones": tz_names})


def _require_aware(value: datetime, name: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(message=f"{name} must be timezone-aware", details={name: value.isoformat()})
    return value


# ---------------------------------------------------------------------------
# Local -> absolute resolution
# ---------------------------------------------------------------------------

def _exists(naive: datetime, zone: ZoneInfo) -> bool:
    aware = naive.replace(tzinfo=zone)
    round_trip = aware.astimezone(timezone.utc).astimezone(zone)
    return round_trip.replace(tzinfo=None) == naive


def resolve_local(
    naive: datetime,
    zone: ZoneInfo,
    prefer_later: bool = True,
    operation: str = "resolve_local",
) -> ResolvedLocalTime:
    """Pin a naive local wall-clock time in ``zone`` to a UTC instant."""
    candidate = naive.replace(tzinfo=None, fold=0)
    shifted = 0
    while not _exists(candidate, zone):
        shifted += 1
        if shifted > MAX_GAP_SHIFT_HOURS:
            raise ValidationError(
                message=f'Invalid datetime for timezone "{zone.key}": {naive.isoformat()}.',
                details={"timezone": zone.key, "local": naive.isoformat()},
            )
        candidate = naive.replace(fold=0) + timedelta(hours=shifted)

    earlier = candidate.replace(tzinfo=zone, fold=0)
    later = candidate.replace(tzinfo=zone, fold=1)
    ambiguous = earlier.utcoffset() != later.utcoffset()
    chosen = later if (ambiguous and prefer_later) else earlier

    note: str | None = None
    if shifted:
        note = f"spring-forward-shifted-{shifted}h"
    elif ambiguous:
        note = "ambiguous-fall-back-used-later" if prefer_later else "ambiguous-fall-back-used-earlier"

    if note:
        logger.info(
            "DST adjustment applied",
            extra={
                "operation": operation,
                "timezone": zone.key,
                "local_input": naive.replace(tzinfo=None).isoformat(),
                "local_interpretation": chosen.isoformat(),
                "utc_offset": chosen.strftime("%z"),
                "is_dst": bool(chosen.dst()),
                "dst_note": note,
            },
        )

    return ResolvedLocalTime(
        instant=chosen.astimezone(timezone.utc),
        local=chosen,
        shifted_hours=shifted,
        ambiguous=ambiguous,
    )


def _at_time(day: date, tod: TimeOfDay) -> datetime:
    return datetime.combine(day, tod.as_time())


def next_occurrence(
    time_of_day: str,
    tz_name: str,
    days_of_week: Iterable[int],
    after: datetime | None = None,
) -> datetime:
    """Earliest instant strictly after ``after`` matching the local time and weekdays.

    Ambiguous local times resolve to the later instant so a recurring call
    never fires twice on a fall-back night.
    """
    zone = validate_timezone(tz_name)
    days = set(days_of_week or ())
    if not days:
        raise ValidationError(message="days_of_week must contain at least one day", details={"days_of_week": []})
    if any(not isinstance(d, int) or not 0 <= d <= 6 for d in days):
        raise ValidationError(
            message="days_of_week entries must be between 0 (Sunday) and 6 (Saturday)",
            details={"days_of_week": sorted(days, key=str)},
        )
    tod = parse_time_of_day(time_of_day)
    reference = _require_aware(after, "after") if after is not None else datetime.now(timezone.utc)

    start = reference.astimezone(zone).date()
    # A week plus one day covers "today already passed, same weekday next week".
    for offset in range(0, 9):
        day = start + timedelta(days=offset)
        if weekday_of(day) not in days:
            continue
        resolved = resolve_local(_at_time(day, tod), zone, prefer_later=True, operation="next_occurrence")
        if resolved.instant > reference:
            logger.debug(
                "Calculated next occurrence",
                extra={
                    "time_of_day": time_of_day,
                    "timezone": zone.key,
                    "after": reference.isoformat(),
                    "local_interpretation": resolved.local.isoformat(),
                    "result_utc": resolved.instant.isoformat(),
                },
            )
            return resolved.instant

    raise ValidationError(
        message=f"Could not find a matching day in days_of_week: {sorted(days)}",
        details={"days_of_week": sorted(days)},
    )


def advance_occurrence(
    recurrence: Recurrence,
    time_of_day: str,
    tz_name: str,
    current_due: datetime,
) -> datetime:
    """Move ``current_due`` forward by one step of ``recurrence``.

    The step is taken on the local calendar, then the wall-clock time is
    re-resolved so DST changes between the two dates are honored.
    """
    zone = validate_timezone(tz_name)
    tod = parse_time_of_day(time_of_day)
    current = _require_aware(current_due, "current_due").astimezone(zone).date()

    match recurrence:
        case Daily(interval=interval):
            target = current + timedelta(days=interval)
        case Weekly(days=days, interval=interval) if days:
            target = current + timedelta(days=1)
            for _ in range(14):
                if weekday_of(target) in days:
                    break
                target += timedelta(days=1)
            if interval > 1:
                target += timedelta(weeks=interval - 1)
        case Weekly(interval=interval):
            target = current + timedelta(weeks=interval)
        case Monthly(day=day, interval=interval):
            # relativedelta clamps an absolute day past month end to the last day.
            target = current + relativedelta(months=interval, day=day or current.day)
        case _:
            raise TypeError(f"Unsupported recurrence: {recurrence!r}")

    resolved = resolve_local(_at_time(target, tod), zone, prefer_later=True, operation="advance_occurrence")
    logger.debug(
        "Calculated next recurrence",
        extra={
            "frequency": recurrence.frequency.value,
            "interval": recurrence.interval,
            "timezone": zone.key,
            "current_due": current_due.isoformat(),
            "result_utc": resolved.instant.isoformat(),
        },
    )
    return resolved.instant


def next_run_after(
    recurrence: Recurrence,
    time_of_day: str,
    tz_name: str,
    current_due: datetime,
    after: datetime,
) -> datetime:
    """Advance ``current_due`` until it is strictly after ``after``.

    Used after a run so a schedule that fell behind skips the missed
    occurrences instead of firing once per missed step.
    """
    _require_aware(after, "after")
    due = advance_occurrence(recurrence, time_of_day, tz_name, current_due)
    steps = 1
    while due <= after:
        if steps >= _MAX_CATCH_UP_STEPS:
            raise ValidationError(
                message="Recurrence does not advance past the reference instant",
                details={"current_due": current_due.isoformat(), "after": after.isoformat()},
            )
        due = advance_occurrence(recurrence, time_of_day, tz_name, due)
        steps += 1
    return due


def first_occurrence(
    recurrence: Recurrence,
    time_of_day: str,
    tz_name: str,
    after: datetime | None = None,
) -> datetime:
    """First instant a freshly created recurrence should fire."""
    reference = _require_aware(after, "after") if after is not None else datetime.now(timezone.utc)

    match recurrence:
        case Daily():
            return next_occurrence(time_of_day, tz_name, range(7), reference)
        case Weekly(days=days) if days:
            return next_occurrence(time_of_day, tz_name, days, reference)
        case Weekly():
            zone = validate_timezone(tz_name)
            return next_occurrence(time_of_day, tz_name, [weekday_of(reference.astimezone(zone))], reference)
        case Monthly(day=day, interval=interval):
            zone = validate_timezone(tz_name)
            tod = parse_time_of_day(time_of_day)
            local_ref = reference.astimezone(zone).date()
            target_day = day or local_ref.day
            month_start = local_ref.replace(day=1)
            for step in range(0, 13 * interval + 1, interval):
                target = month_start + relativedelta(months=step, day=target_day)
                resolved = resolve_local(_at_time(target, tod), zone, prefer_later=True, operation="first_occurrence")
                if resolved.instant > reference:
                    return resolved.instant
    raise TypeError(f"Unsupported recurrence: {recurrence!r}")


def local_time_to_utc(
    hours: int,
    minutes: int,
    tz_name: str,
    target_date: datetime | None = None,
    prefer_later: bool = True,
) -> datetime:
    """Pin ``hours:minutes`` on the local date of ``target_date`` (default today)."""
    zone = validate_timezone(tz_name)
    if not 0 <= hours <= 23 or not 0 <= minutes <= 59:
        raise ValidationError(message=f"Invalid time values: {hours}:{minutes}.", details={"hours": hours, "minutes": minutes})

    base = _require_aware(target_date, "target_date") if target_date is not None else datetime.now(timezone.utc)
    local_day = base.astimezone(zone).date()
    naive = datetime(local_day.year, local_day.month, local_day.day, hours, minutes)
    return resolve_local(naive, zone, prefer_later=prefer_later, operation="local_time_to_utc").instant


def local_to_utc(local_datetime: str, tz_name: str) -> datetime:
    """Convert ``YYYY-MM-DDTHH:mm[:ss]`` local text to a UTC instant.

    One-time conversion: an ambiguous local time resolves to the earlier instant.
    """
    zone = validate_timezone(tz_name)
    match = LOCAL_DATETIME_RE.match(local_datetime or "")
    if not match:
        raise ValidationError(message=f'Invalid datetime format: "{local_datetime}".', details={"local": local_datetime})

    year, month, day, hour, minute = (int(match.group(i)) for i in range(1, 6))
    second = int(match.group(6) or 0)
    if not 1900 <= year <= 3000:
        raise ValidationError(message=f'Invalid year in datetime: "{local_datetime}".', details={"local": local_datetime})
    try:
        naive = datetime(year, month, day, hour, minute, second)
    except ValueError as e:
        raise ValidationError(message=f'Invalid datetime: "{local_datetime}".', details={"local": local_datetime}) from e

    return resolve_local(naive, zone, prefer_later=False, operation="local_to_utc").instant


def format_in_timezone(instant: datetime, tz_name: str, fmt: str = "%Y-%m-%d %H:%M") -> str:
    zone = validate_timezone(tz_name)
    return _require_aware(instant, "instant").astimezone(zone).strftime(fmt)


def is_in_local_window(start: str, end: str, tz_name: str, at: datetime | None = None) -> bool:
    """True when the local time at ``at`` falls inside ``[start, end)``.

    A window whose start is after its end wraps past midnight.
    """
    zone = validate_timezone(tz_name)
    reference = _require_aware(at, "at") if at is not None else datetime.now(timezone.utc)
    current = reference.astimezone(zone).time().replace(tzinfo=None)
    window_start = parse_time_of_day(start).as_time()
    window_end = parse_time_of_day(end).as_time()

    if window_start == window_end:
        return False
    if window_start < window_end:
        return window_start <= current < window_end
    return current >= window_start or current < window_end
