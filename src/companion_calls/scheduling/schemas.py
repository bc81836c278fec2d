"""
Pydantic schemas for creating schedules and reminders.
"""

from uuid import UUID

from pydantic import BaseModel, Field

from companion_calls.scheduling.recurrence import (
    Daily,
    Frequency,
    Monthly,
    Recurrence,
    Weekly,
    parse_rrule,
)


class RecurrenceInput(BaseModel):
    """Recurrence as sent by clients: structured fields or legacy RRULE text."""

    frequency: Frequency | None = Field(None, description="None means one-time (reminders only)")
    interval: int = Field(default=1, ge=1, le=52)
    days_of_week: list[int] | None = Field(None, description="0=Sunday through 6=Saturday")
    day_of_month: int | None = Field(None, ge=1, le=31)
    rrule: str | None = Field(None, max_length=200, description="Legacy FREQ=...;INTERVAL=... text")

    def to_recurrence(self) -> Recurrence | None:
        if self.rrule:
            return parse_rrule(self.rrule, self.days_of_week, self.day_of_month)
        match self.frequency:
            case Frequency.DAILY:
                return Daily(interval=self.interval)
            case Frequency.WEEKLY:
                return Weekly(days=tuple(self.days_of_week or ()), interval=self.interval)
            case Frequency.MONTHLY:
                return Monthly(day=self.day_of_month, interval=self.interval)
        return None


class ScheduleCreate(RecurrenceInput):
    """Schema for creating a recurring call schedule."""

    line_id: UUID
    timezone: str = Field(..., min_length=1, max_length=64, description="IANA timezone")
    time_of_day: str = Field(..., description="Local time of day (HH:MM or HH:MM:SS)")
    frequency: Frequency | None = Field(default=Frequency.WEEKLY)
    max_retries: int | None = Field(None, ge=0, le=5, description="Placement retries per occurrence")


class ReminderCreate(RecurrenceInput):
    """Schema for creating a reminder call."""

    line_id: UUID
    message: str = Field(..., min_length=1, max_length=500)
    timezone: str = Field(..., min_length=1, max_length=64, description="IANA timezone")
    due_local: str = Field(..., description="Local due date/time, YYYY-MM-DDTHH:MM[:SS]")
    ends_local: str | None = Field(None, description="Local end of the recurrence, YYYY-MM-DDTHH:MM[:SS]")
