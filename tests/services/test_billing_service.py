"""Bill generation and period purge."""

from datetime import date

import pytest

from billing_kernel.exceptions import (
    AccountNotFoundError,
    DuplicatePeriodError,
    InvalidAmountError,
    InvalidFiscalMonthError,
    PeriodHasPaymentsError,
)
from billing_kernel.services.billing_service import MeterReading
from tests.conftest import FY, OCT, TODAY


@pytest.fixture
def accounts(billing):
    for account_id in ("A-101", "A-102", "A-103"):
        billing.ensure_account(account_id, owner_name=f"Owner {account_id}")


class TestCreatePeriod:
    def test_dates_come_from_calendar(self, seed_period):
        period = seed_period("A-101")
        assert period.bill_date == date(2025, 10, 1)
        assert period.due_date == date(2025, 10, 10)
        assert period.status == "unpaid"

    def test_zero_charge_is_paid(self, seed_period):
        assert seed_period("A-101", base_charge=0).status == "paid"

    def test_duplicate(self, seed_period):
        seed_period("A-101")
        with pytest.raises(DuplicatePeriodError):
            seed_period("A-101")

    def test_unknown_account(self, billing):
        with pytest.raises(AccountNotFoundError):
            billing.create_period("NOPE", FY, OCT, 100)

    def test_negative_charge(self, billing, accounts):
        with pytest.raises(InvalidAmountError):
            billing.create_period("A-101", FY, OCT, -1)

    def test_fiscal_month_range(self, billing, accounts):
        with pytest.raises(InvalidFiscalMonthError):
            billing.create_period("A-101", FY, 12, 100)

    def test_ensure_account_is_idempotent(self, billing):
        first = billing.ensure_account("A-101", owner_name="Ana")
        assert billing.ensure_account("A-101", owner_name="Other") is first
        assert first.owner_name == "Ana"


class TestGenerateBills:
    def test_charges_from_consumption(self, billing, accounts):
        result = billing.generate_bills(
            FY, OCT,
            [MeterReading("A-101", 100, 110), MeterReading("A-102", 50, 52), MeterReading("A-103", 7, 7)],
            rate_per_unit=5000,
        )
        assert result.created == ("A-101", "A-102")
        assert result.skipped_zero_charge == ("A-103",)
        assert result.total_billed == 60000
        assert result.due_date == date(2025, 10, 10)

    def test_minimum_charge(self, billing, accounts):
        result = billing.generate_bills(FY, OCT, [MeterReading("A-103", 7, 7)], 5000, minimum_charge=15000)
        assert result.created == ("A-103",)
        assert result.total_billed == 15000

    def test_duplicate_rejects_whole_batch(self, billing, seed_period, accounts):
        seed_period("A-102")
        with pytest.raises(DuplicatePeriodError):
            billing.generate_bills(FY, OCT, [MeterReading("A-101", 0, 1), MeterReading("A-102", 0, 1)], 5000)
        assert billing._selector.get_period("A-101", FY, OCT) is None

    def test_negative_consumption(self, billing, accounts):
        with pytest.raises(InvalidAmountError):
            billing.generate_bills(FY, OCT, [MeterReading("A-101", 10, 9)], 5000)

    def test_readings_stored(self, billing, accounts):
        billing.generate_bills(FY, OCT, [MeterReading("A-101", 100, 110)], 5000)
        period = billing._selector.get_period("A-101", FY, OCT)
        assert (period.prior_reading, period.current_reading, period.consumption) == (100, 110, 10)


class TestPurge:
    def test_purge_month(self, billing, seed_period):
        seed_period("A-101")
        seed_period("A-102")
        seed_period("A-101", fiscal_month=OCT + 1)
        assert billing.purge_period(FY, OCT) == 2
        assert billing._selector.periods_for_month(FY, OCT) == []
        assert billing._selector.get_period("A-101", FY, OCT + 1) is not None

    def test_purge_with_payments_refused(self, billing, seed_period, payments):
        seed_period("A-101")
        seed_period("A-102")
        payments.apply_payment("A-101", 100, TODAY)
        with pytest.raises(PeriodHasPaymentsError):
            billing.purge_period(FY, OCT)
        assert len(billing._selector.periods_for_month(FY, OCT)) == 2
