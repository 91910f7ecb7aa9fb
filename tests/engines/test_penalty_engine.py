"""PenaltyCalculator: cycle counting, compounding and determinism."""

from datetime import date
from decimal import Decimal

import pytest

from billing_engines.penalty import PenaltyCalculator, PenaltyPolicy
from billing_kernel.domain.dtos import DatedPayment

DUE = date(2025, 10, 10)


@pytest.fixture
def calc() -> PenaltyCalculator:
    return PenaltyCalculator()


def five_percent(**kw) -> PenaltyPolicy:
    return PenaltyPolicy(rate=Decimal("0.05"), **kw)


class TestCycles:
    def test_nothing_before_due(self, calc):
        r = calc.calculate(base_charge=50000, due_date=DUE, as_of_date=date(2025, 10, 5), policy=five_percent())
        assert r.penalty_amount == 0
        assert r.cycles == 0

    def test_nothing_on_due_date(self, calc):
        r = calc.calculate(base_charge=50000, due_date=DUE, as_of_date=DUE, policy=five_percent())
        assert r.penalty_amount == 0

    def test_one_cycle_day_after_due(self, calc):
        r = calc.calculate(base_charge=50000, due_date=DUE, as_of_date=date(2025, 10, 11), policy=five_percent())
        assert r.penalty_amount == 2500
        assert r.cycles == 1

    def test_compounding_second_cycle(self, calc):
        r = calc.calculate(base_charge=50000, due_date=DUE, as_of_date=date(2025, 11, 11), policy=five_percent())
        # 2500 + 5% of 52500
        assert r.penalty_amount == 2500 + 2625
        assert [s.balance for s in r.steps] == [50000, 52500]

    def test_simple_interest(self, calc):
        r = calc.calculate(
            base_charge=50000, due_date=DUE, as_of_date=date(2025, 12, 11),
            policy=five_percent(compounding=False),
        )
        assert r.penalty_amount == 3 * 2500

    def test_grace_days_shift_first_cycle(self, calc):
        policy = five_percent(grace_days=10)
        assert calc.calculate(
            base_charge=50000, due_date=DUE, as_of_date=date(2025, 10, 20), policy=policy
        ).penalty_amount == 0
        assert calc.calculate(
            base_charge=50000, due_date=DUE, as_of_date=date(2025, 10, 21), policy=policy
        ).penalty_amount == 2500

    def test_max_cycles_caps_accrual(self, calc):
        r = calc.calculate(
            base_charge=50000, due_date=DUE, as_of_date=date(2026, 10, 11),
            policy=five_percent(max_cycles=2),
        )
        assert r.cycles == 2

    def test_elapsed_cycles(self, calc):
        assert calc.elapsed_cycles(DUE, date(2026, 1, 11), five_percent()) == 4


class TestPayments:
    def test_payment_on_due_date_accrues_nothing(self, calc):
        paid = DatedPayment(DUE, 50000, 50000, 0)
        r = calc.calculate(
            base_charge=50000, due_date=DUE, as_of_date=date(2026, 3, 1),
            policy=five_percent(), payments=[paid],
        )
        assert r.penalty_amount == 0

    def test_partial_payment_reduces_later_cycles(self, calc):
        paid = DatedPayment(date(2025, 10, 5), 30000, 30000, 0)
        r = calc.calculate(
            base_charge=50000, due_date=DUE, as_of_date=date(2025, 10, 11),
            policy=five_percent(), payments=[paid],
        )
        assert r.penalty_amount == 1000

    def test_payment_after_boundary_does_not_count_for_it(self, calc):
        late = DatedPayment(date(2025, 10, 15), 50000, 50000, 0)
        r = calc.calculate(
            base_charge=50000, due_date=DUE, as_of_date=date(2025, 12, 1),
            policy=five_percent(), payments=[late],
        )
        # First cycle accrued on 2025-10-10; by 2025-11-10 only 2500 remained.
        assert r.penalty_amount == 2500 + 125

    def test_payment_order_does_not_matter(self, calc):
        a = DatedPayment(date(2025, 10, 1), 10000, 10000, 0)
        b = DatedPayment(date(2025, 11, 1), 10000, 10000, 0)
        kwargs = dict(base_charge=50000, due_date=DUE, as_of_date=date(2026, 1, 1), policy=five_percent())
        assert (
            calc.calculate(payments=[a, b], **kwargs).penalty_amount
            == calc.calculate(payments=[b, a], **kwargs).penalty_amount
        )


class TestDeterminismAndValidation:
    def test_same_inputs_same_integer(self, calc):
        kwargs = dict(base_charge=12345, due_date=DUE, as_of_date=date(2026, 6, 30), policy=five_percent())
        assert calc.calculate(**kwargs) == calc.calculate(**kwargs)

    def test_rounds_half_up(self, calc):
        r = calc.calculate(base_charge=50, due_date=DUE, as_of_date=date(2025, 10, 11), policy=five_percent())
        assert r.penalty_amount == 3

    def test_negative_base_rejected(self, calc):
        with pytest.raises(ValueError):
            calc.calculate(base_charge=-1, due_date=DUE, as_of_date=DUE, policy=five_percent())

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError):
            PenaltyPolicy(rate=Decimal("-0.01"))

    def test_policy_coerces_rate_to_decimal(self):
        assert PenaltyPolicy(rate="0.05").rate == Decimal("0.05")

    def test_emits_engine_trace(self, calc, captured_logs):
        calc.calculate(base_charge=100, due_date=DUE, as_of_date=DUE, policy=five_percent())
        traces = [r for r in captured_logs() if r["message"] == "BILLING_ENGINE_TRACE"]
        assert traces and traces[0]["engine_name"] == "penalty"
        assert len(traces[0]["input_fingerprint"]) == 16
