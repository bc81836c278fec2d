"""Tests for recurrence values and the legacy RRULE text form."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from companion_calls.scheduling.recurrence import (
    Daily,
    Frequency,
    Monthly,
    Weekly,
    from_columns,
    parse_rrule,
    to_columns,
    to_rrule,
)
from companion_calls.scheduling.schemas import RecurrenceInput, ScheduleCreate
from companion_calls.shared.exceptions import ValidationError


class TestRecurrenceValues:
    def test_weekly_days_sorted_and_deduplicated(self) -> None:
        assert Weekly(days=(5, 1, 3, 1)).days == (1, 3, 5)

    def test_frequency_is_class_level(self) -> None:
        assert Daily().frequency == Frequency.DAILY
        assert Weekly().frequency == Frequency.WEEKLY
        assert Monthly().frequency == Frequency.MONTHLY

    @pytest.mark.parametrize("interval", [0, -1])
    def test_interval_must_be_positive(self, interval: int) -> None:
        with pytest.raises(ValidationError):
            Daily(interval=interval)

    def test_weekday_out_of_range(self) -> None:
        with pytest.raises(ValidationError):
            Weekly(days=(7,))

    @pytest.mark.parametrize("day", [0, 32])
    def test_day_of_month_out_of_range(self, day: int) -> None:
        with pytest.raises(ValidationError):
            Monthly(day=day)


class TestColumns:
    def test_one_time(self) -> None:
        columns = to_columns(None)
        assert columns["frequency"] is None
        assert from_columns(**columns) is None

    @pytest.mark.parametrize(
        "recurrence",
        [Daily(interval=3), Weekly(days=(0, 6), interval=2), Monthly(day=31), Monthly()],
    )
    def test_columns_rebuild_same_value(self, recurrence) -> None:
        assert from_columns(**to_columns(recurrence)) == recurrence

    def test_weekly_columns(self) -> None:
        assert to_columns(Weekly(days=(1, 3))) == {
            "frequency": "weekly",
            "interval": 1,
            "days_of_week": [1, 3],
            "day_of_month": None,
        }


class TestParseRrule:
    def test_daily(self) -> None:
        assert parse_rrule("FREQ=DAILY;INTERVAL=2") == Daily(interval=2)

    def test_prefix_and_case(self) -> None:
        assert parse_rrule("rrule:freq=daily") == Daily()

    def test_weekly_byday(self) -> None:
        assert parse_rrule("FREQ=WEEKLY;BYDAY=MO,WE,FR") == Weekly(days=(1, 3, 5))

    def test_weekly_days_from_separate_column(self) -> None:
        assert parse_rrule("FREQ=WEEKLY;INTERVAL=1", days_of_week=[2]) == Weekly(days=(2,))

    def test_monthly_bymonthday(self) -> None:
        assert parse_rrule("FREQ=MONTHLY;BYMONTHDAY=15") == Monthly(day=15)

    def test_monthly_day_from_separate_column(self) -> None:
        assert parse_rrule("FREQ=MONTHLY", day_of_month=3) == Monthly(day=3)

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "INTERVAL=2",
            "FREQ=YEARLY",
            "FREQ=DAILY;INTERVAL=two",
            "FREQ=WEEKLY;BYDAY=XX",
            "FREQ=MONTHLY;BYMONTHDAY=1,15",
            "FREQ DAILY",
        ],
    )
    def test_malformed(self, text: str) -> None:
        with pytest.raises(ValidationError):
            parse_rrule(text)

    def test_to_rrule(self) -> None:
        assert to_rrule(Daily(interval=2)) == "FREQ=DAILY;INTERVAL=2"
        assert to_rrule(Weekly(days=(1, 3))) == "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE"
        assert to_rrule(Monthly(day=31, interval=2)) == "FREQ=MONTHLY;INTERVAL=2;BYMONTHDAY=31"

    def test_text_form_reads_back(self) -> None:
        weekly = Weekly(days=(0, 4), interval=3)
        assert parse_rrule(to_rrule(weekly)) == weekly


class TestRecurrenceInput:
    def test_structured_fields(self) -> None:
        data = RecurrenceInput(frequency=Frequency.WEEKLY, days_of_week=[3, 1])
        assert data.to_recurrence() == Weekly(days=(1, 3))

    def test_rrule_wins_over_structured_fields(self) -> None:
        data = RecurrenceInput(frequency=Frequency.WEEKLY, rrule="FREQ=DAILY;INTERVAL=2")
        assert data.to_recurrence() == Daily(interval=2)

    def test_no_frequency_is_one_time(self) -> None:
        assert RecurrenceInput().to_recurrence() is None

    def test_interval_bounds(self) -> None:
        with pytest.raises(PydanticValidationError):
            RecurrenceInput(frequency=Frequency.DAILY, interval=0)

    def test_schedule_defaults_to_weekly(self) -> None:
        data = ScheduleCreate(
            line_id="7c9e6679-7425-40de-944b-e07fc1f90ae7",
            timezone="America/New_York",
            time_of_day="09:00",
            days_of_week=[1],
        )
        assert data.to_recurrence() == Weekly(days=(1,))
