"""Fiscal calendar arithmetic, including the month-11 rollover."""

from datetime import UTC, date, datetime

import pytest

from billing_kernel.domain.fiscal_calendar import (
    FiscalCalendar,
    FiscalPeriodKey,
    add_months,
)
from billing_kernel.exceptions import (
    ConfigurationError,
    InvalidDateError,
    InvalidFiscalMonthError,
)


@pytest.fixture
def july() -> FiscalCalendar:
    return FiscalCalendar(fiscal_year_start_month=7, due_day=10, timezone="America/Cancun")


class TestCalendarToFiscal:
    def test_start_month_is_month_zero_of_next_named_year(self, july):
        assert july.calendar_to_fiscal(2025, 7) == FiscalPeriodKey(2026, 0)

    def test_month_before_start(self, july):
        assert july.calendar_to_fiscal(2026, 6) == FiscalPeriodKey(2026, 11)

    def test_january_in_middle_of_year(self, july):
        assert july.calendar_to_fiscal(2026, 1) == FiscalPeriodKey(2026, 6)

    def test_january_start_matches_calendar(self):
        cal = FiscalCalendar(fiscal_year_start_month=1)
        assert cal.calendar_to_fiscal(2025, 1) == FiscalPeriodKey(2025, 0)
        assert cal.calendar_to_fiscal(2025, 12) == FiscalPeriodKey(2025, 11)

    def test_round_trip_every_month(self, july):
        for month in range(12):
            year, cal_month = july.fiscal_to_calendar(2026, month)
            assert july.calendar_to_fiscal(year, cal_month) == FiscalPeriodKey(2026, month)

    def test_invalid_calendar_month(self, july):
        with pytest.raises(InvalidFiscalMonthError):
            july.calendar_to_fiscal(2025, 13)


class TestFiscalToCalendar:
    def test_month_zero(self, july):
        assert july.fiscal_to_calendar(2026, 0) == (2025, 7)

    def test_month_eleven(self, july):
        assert july.fiscal_to_calendar(2026, 11) == (2026, 6)

    def test_invalid_fiscal_month(self, july):
        with pytest.raises(InvalidFiscalMonthError):
            july.fiscal_to_calendar(2026, 12)


class TestPeriodBoundaries:
    def test_bill_and_due_date(self, july):
        b = july.period_boundaries(2026, 3)
        assert b.bill_date == date(2025, 10, 1)
        assert b.due_date == date(2025, 10, 10)

    def test_due_day_is_clamped(self):
        cal = FiscalCalendar(fiscal_year_start_month=1, due_day=31)
        assert cal.period_boundaries(2025, 1).due_date == date(2025, 2, 28)
        assert cal.period_boundaries(2024, 1).due_date == date(2024, 2, 29)

    def test_invalid_due_day(self):
        with pytest.raises(InvalidFiscalMonthError):
            FiscalCalendar(due_day=0)


class TestRollover:
    def test_month_eleven_rolls_into_next_year(self):
        assert FiscalCalendar.next_period(FiscalPeriodKey(2026, 11)) == FiscalPeriodKey(2027, 0)

    def test_next_within_year(self):
        assert FiscalCalendar.next_period(FiscalPeriodKey(2026, 3)) == FiscalPeriodKey(2026, 4)

    def test_previous_from_month_zero(self):
        assert FiscalCalendar.previous_period(FiscalPeriodKey(2027, 0)) == FiscalPeriodKey(2026, 11)

    def test_rollover_dates_are_consecutive_months(self, july):
        last = july.period_boundaries(2026, 11)
        first = july.period_boundaries(2027, 0)
        assert add_months(last.bill_date, 1) == first.bill_date

    def test_key_rejects_month_twelve(self):
        with pytest.raises(InvalidFiscalMonthError):
            FiscalPeriodKey(2026, 12)


class TestTimezoneAnchoring:
    def test_utc_instant_after_midnight_is_previous_local_day(self, july):
        instant = datetime(2025, 11, 1, 3, 0, tzinfo=UTC)
        assert july.local_date(instant) == date(2025, 10, 31)
        assert july.period_for_date(july.local_date(instant)) == FiscalPeriodKey(2026, 3)

    def test_naive_datetime_rejected(self, july):
        with pytest.raises(InvalidDateError):
            july.local_date(datetime(2025, 11, 1, 3, 0))

    def test_unknown_timezone(self):
        with pytest.raises(ConfigurationError):
            FiscalCalendar(timezone="Mars/Olympus")


class TestHelpers:
    def test_add_months_clamps(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2025, 12, 10), 1) == date(2026, 1, 10)
        assert add_months(date(2025, 3, 10), -3) == date(2024, 12, 10)

    def test_labels(self, july):
        assert july.month_name(0) == "Jul"
        assert july.period_label(FiscalPeriodKey(2026, 3)) == "Oct 2025"
        assert str(FiscalPeriodKey(2026, 3)) == "FY2026-03"
