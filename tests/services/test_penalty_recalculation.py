"""PenaltyRecalculationService: scope filtering, paid freeze, idempotence."""

from datetime import date, datetime

import pytest

from billing_kernel.domain.dtos import PeriodStatus
from billing_kernel.exceptions import InvalidDateError, InvalidScopeError
from billing_kernel.services.penalty_service import normalize_scope
from tests.conftest import TODAY


class TestScope:
    def test_all(self):
        assert normalize_scope("all") is None

    def test_list_is_sorted_and_deduplicated(self):
        assert normalize_scope(["B", "A", "B"]) == ["A", "B"]

    def test_other_string_rejected(self):
        with pytest.raises(InvalidScopeError):
            normalize_scope("A-101")

    def test_non_string_members_rejected(self):
        with pytest.raises(InvalidScopeError):
            normalize_scope([1, 2])


class TestRecalculate:
    def test_scenario_one_penalty(self, seed_period, penalties):
        period = seed_period("A-101", base_charge=50000)
        result = penalties.recalculate("all", TODAY)
        assert period.penalty_amount == 2500
        assert period.penalty_as_of == TODAY
        assert result.periods_processed == 1
        assert result.periods_updated == 1
        assert result.total_penalty == 2500
        assert result.account_ids_touched == ("A-101",)

    def test_before_due_date_no_penalty(self, seed_period, penalties):
        period = seed_period("A-101")
        penalties.recalculate("all", date(2025, 10, 10))
        assert period.penalty_amount == 0

    def test_idempotent(self, seed_period, penalties):
        seed_period("A-101")
        seed_period("A-102", fiscal_month=1)
        penalties.recalculate("all", TODAY)
        second = penalties.recalculate("all", TODAY)
        assert second.periods_updated == 0
        assert second.account_ids_touched == ()

    def test_earlier_as_of_lowers_penalty(self, seed_period, penalties):
        period = seed_period("A-101")
        penalties.recalculate("all", date(2025, 12, 20))
        assert period.penalty_amount > 2500
        penalties.recalculate("all", TODAY)
        assert period.penalty_amount == 2500

    def test_paid_period_is_skipped(self, seed_period, penalties):
        period = seed_period("A-101", base_charge=1000)
        period.paid_amount = 1000
        period.refresh_status()
        result = penalties.recalculate("all", date(2026, 6, 1))
        assert period.penalty_amount == 0
        assert period.status == PeriodStatus.PAID.value
        assert result.periods_skipped_paid == 1
        assert result.periods_processed == 0

    def test_scoped_run_leaves_other_accounts_alone(self, seed_period, penalties):
        mine = seed_period("A-101")
        other = seed_period("A-102")
        result = penalties.recalculate(["A-101"], TODAY)
        assert mine.penalty_amount == 2500
        assert other.penalty_amount == 0
        assert result.periods_skipped_out_of_scope == 1
        assert result.scope == "A-101"

    def test_malformed_period_is_counted_not_raised(self, seed_period, penalties, captured_logs):
        broken = seed_period("A-101")
        broken.due_date = None
        seed_period("A-102")
        result = penalties.recalculate("all", TODAY)
        assert result.periods_failed == 1
        assert result.periods_processed == 1
        assert any(r["message"] == "penalty_period_malformed" for r in captured_logs())

    def test_status_follows_new_penalty(self, seed_period, penalties):
        period = seed_period("A-101", base_charge=50000)
        period.paid_amount = 50000
        period.refresh_status()
        assert period.status == PeriodStatus.PAID.value
        # Paid before any penalty existed: frozen.
        penalties.recalculate("all", TODAY)
        assert period.status == PeriodStatus.PAID.value

    def test_datetime_as_of_rejected(self, penalties):
        with pytest.raises(InvalidDateError):
            penalties.recalculate("all", datetime(2025, 10, 20, 12, 0))

    def test_completion_logged(self, seed_period, penalties, captured_logs):
        seed_period("A-101")
        penalties.recalculate("all", TODAY)
        records = [r for r in captured_logs() if r["message"] == "penalty_recalc_completed"]
        assert records and records[0]["periods_processed"] == 1
