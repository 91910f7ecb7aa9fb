"""
Fiscal Calendar -- client fiscal-year arithmetic.

Responsibility:
    Maps calendar months to (fiscal_year, fiscal_month_index) pairs for a
    client whose fiscal year starts in an arbitrary month, and back again.
    Derives each billing period's bill date and due date from the period
    itself, never from the moment a bill happens to be generated or
    imported.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Conventions:
    - Fiscal years are named by the calendar year in which they END. With a
      July start, July 2025 is FY2026 month 0 and June 2026 is FY2026
      month 11. With a January start fiscal and calendar years coincide.
    - fiscal_month_index runs 0..11. Advancing past 11 rolls to month 0 of
      the next fiscal year.
    - Bill date is the first calendar day of the period's month; due date is
      ``due_day`` of the same month, clamped to the month's last day.
    - Instants are converted to dates in the client's configured timezone.
      Naive datetimes are rejected.

Failure modes:
    - InvalidFiscalMonthError for out-of-range months or due day.
    - InvalidDateError for naive datetimes.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from billing_kernel.exceptions import (
    ConfigurationError,
    InvalidDateError,
    InvalidFiscalMonthError,
)

MONTH_ABBREVIATIONS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


@dataclass(frozen=True, slots=True, order=True)
class FiscalPeriodKey:
    """(fiscal_year, fiscal_month) identifying one billing period."""

    fiscal_year: int
    fiscal_month: int

    def __post_init__(self) -> None:
        if not 0 <= self.fiscal_month <= 11:
            raise InvalidFiscalMonthError("fiscal_month", self.fiscal_month)

    def __str__(self) -> str:
        return f"FY{self.fiscal_year}-{self.fiscal_month:02d}"


@dataclass(frozen=True, slots=True)
class PeriodBoundaries:
    """Calendar dates that bound a billing period."""

    bill_date: date
    due_date: date


def add_months(d: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the target month."""
    index = d.year * 12 + (d.month - 1) + months
    year, month0 = divmod(index, 12)
    last_day = calendar.monthrange(year, month0 + 1)[1]
    return date(year, month0 + 1, min(d.day, last_day))


class FiscalCalendar:
    """
    Fiscal-period arithmetic for one client.

    Args:
        fiscal_year_start_month: Calendar month (1-12) in which FY starts.
        due_day: Day of month bills fall due (1-31, clamped per month).
        timezone: IANA timezone that anchors all date conversions.
    """

    def __init__(
        self,
        fiscal_year_start_month: int = 1,
        due_day: int = 10,
        timezone: str = "America/Cancun",
    ):
        if not isinstance(fiscal_year_start_month, int) or not 1 <= fiscal_year_start_month <= 12:
            raise InvalidFiscalMonthError("fiscal_year_start_month", fiscal_year_start_month)
        if not isinstance(due_day, int) or not 1 <= due_day <= 31:
            raise InvalidFiscalMonthError("due_day", due_day)
        try:
            self._zone = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError("", [f"unknown timezone {timezone!r}"]) from exc
        self.fiscal_year_start_month = fiscal_year_start_month
        self.due_day = due_day
        self.timezone = timezone

    def __repr__(self) -> str:
        return (
            f"FiscalCalendar(start_month={self.fiscal_year_start_month}, "
            f"due_day={self.due_day}, timezone={self.timezone!r})"
        )

    # ------------------------------------------------------------------
    # Calendar <-> fiscal
    # ------------------------------------------------------------------

    def calendar_to_fiscal(self, calendar_year: int, calendar_month: int) -> FiscalPeriodKey:
        """Map a calendar (year, month) to its fiscal period key."""
        if not 1 <= calendar_month <= 12:
            raise InvalidFiscalMonthError("calendar_month", calendar_month)
        start = self.fiscal_year_start_month
        index = (calendar_month - start) % 12
        if start == 1 or calendar_month < start:
            fiscal_year = calendar_year
        else:
            fiscal_year = calendar_year + 1
        return FiscalPeriodKey(fiscal_year, index)

    def fiscal_to_calendar(self, fiscal_year: int, fiscal_month: int) -> tuple[int, int]:
        """Map a fiscal period to its calendar (year, month)."""
        if not 0 <= fiscal_month <= 11:
            raise InvalidFiscalMonthError("fiscal_month", fiscal_month)
        start = self.fiscal_year_start_month
        calendar_month = (start - 1 + fiscal_month) % 12 + 1
        if start == 1 or calendar_month < start:
            calendar_year = fiscal_year
        else:
            calendar_year = fiscal_year - 1
        return calendar_year, calendar_month

    def period_boundaries(self, fiscal_year: int, fiscal_month: int) -> PeriodBoundaries:
        """Bill date and due date for a fiscal period."""
        year, month = self.fiscal_to_calendar(fiscal_year, fiscal_month)
        last_day = calendar.monthrange(year, month)[1]
        return PeriodBoundaries(
            bill_date=date(year, month, 1),
            due_date=date(year, month, min(self.due_day, last_day)),
        )

    def period_for_date(self, d: date) -> FiscalPeriodKey:
        """Fiscal period containing a calendar date."""
        return self.calendar_to_fiscal(d.year, d.month)

    def fiscal_year_for_date(self, d: date) -> int:
        return self.period_for_date(d).fiscal_year

    # ------------------------------------------------------------------
    # Period stepping
    # ------------------------------------------------------------------

    @staticmethod
    def next_period(key: FiscalPeriodKey) -> FiscalPeriodKey:
        """Month 11 rolls into month 0 of the next fiscal year."""
        if key.fiscal_month == 11:
            return FiscalPeriodKey(key.fiscal_year + 1, 0)
        return FiscalPeriodKey(key.fiscal_year, key.fiscal_month + 1)

    @staticmethod
    def previous_period(key: FiscalPeriodKey) -> FiscalPeriodKey:
        if key.fiscal_month == 0:
            return FiscalPeriodKey(key.fiscal_year - 1, 11)
        return FiscalPeriodKey(key.fiscal_year, key.fiscal_month - 1)

    def periods_in_year(self, fiscal_year: int) -> list[FiscalPeriodKey]:
        return [FiscalPeriodKey(fiscal_year, m) for m in range(12)]

    # ------------------------------------------------------------------
    # Timezone anchoring
    # ------------------------------------------------------------------

    def local_date(self, instant: datetime) -> date:
        """Calendar date of an aware instant in the client's timezone."""
        if instant.tzinfo is None or instant.utcoffset() is None:
            raise InvalidDateError("instant", instant.isoformat(), "naive datetime; timezone required")
        return instant.astimezone(self._zone).date()

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    def month_name(self, fiscal_month: int) -> str:
        """Abbreviated calendar month name for a fiscal month index."""
        _, month = self.fiscal_to_calendar(2000, fiscal_month)
        return MONTH_ABBREVIATIONS[month - 1]

    def period_label(self, key: FiscalPeriodKey) -> str:
        """Human label such as ``"Jul 2025"``."""
        year, month = self.fiscal_to_calendar(key.fiscal_year, key.fiscal_month)
        return f"{MONTH_ABBREVIATIONS[month - 1]} {year}"
