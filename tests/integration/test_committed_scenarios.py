"""
Payment scenarios driven through the orchestrator, with every check read
back from a fresh session after the transaction has committed.
"""

import pytest

from billing_kernel.invariants import check_credit_balance, check_period
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_services.aggregation_service import AggregationCacheEngine
from billing_services.orchestrator import BillingStatus
from tests.conftest import CLIENT_ID, FY, OCT, TODAY


def committed_state(session_factory, account_id="A-101", fiscal_year=FY, fiscal_month=OCT):
    """Period, allocation tuples and credit history as stored, checked for consistency."""
    with session_factory() as sess:
        selector = BillingSelector(sess, CLIENT_ID)
        period = selector.get_period(account_id, fiscal_year, fiscal_month)
        check_period(period)
        allocations = sorted(period.allocations, key=lambda a: a.sequence)
        credit = selector.credit_balance(account_id)
        if credit is not None:
            check_credit_balance(credit)
        history = [] if credit is None else [
            (e.delta, e.source, e.external_transaction_id)
            for e in sorted(credit.history, key=lambda e: e.sequence)
        ]
        return {
            "paid": period.paid_amount,
            "penalty": period.penalty_amount,
            "status": period.status,
            "allocations": [
                (
                    a.amount_applied,
                    a.base_charge_portion,
                    a.penalty_portion,
                    a.credit_balance_delta,
                    a.external_transaction_id,
                )
                for a in allocations
            ],
            "credit": 0 if credit is None else credit.balance,
            "history": history,
        }


@pytest.fixture
def account(seed_committed):
    seed_committed([("A-101", FY, OCT, 50000)])


def pay(orchestrator, amount, **kwargs):
    result = orchestrator.record_payment("A-101", amount, TODAY, **kwargs)
    assert result.status == BillingStatus.SUCCESS
    return result.data["external_transaction_id"]


def test_partial_payment_is_stored(orchestrator, account, session_factory):
    txn = pay(orchestrator, 30000)

    state = committed_state(session_factory)
    assert (state["paid"], state["penalty"], state["status"]) == (30000, 2500, "partial")
    assert state["allocations"] == [(30000, 28571, 1429, 0, txn)]
    assert (state["credit"], state["history"]) == (0, [])


def test_second_payment_settles_exactly(orchestrator, account, session_factory):
    first = pay(orchestrator, 30000)
    second = pay(orchestrator, 22500)

    state = committed_state(session_factory)
    assert (state["paid"], state["status"]) == (52500, "paid")
    assert [a[-1] for a in state["allocations"]] == [first, second]
    assert sum(a[1] for a in state["allocations"]) == 50000
    assert sum(a[2] for a in state["allocations"]) == 2500
    assert state["credit"] == 0


def test_overpayment_stores_credit_history(orchestrator, account, session_factory):
    txn = pay(orchestrator, 60000)

    state = committed_state(session_factory)
    assert (state["paid"], state["status"]) == (52500, "paid")
    assert state["allocations"] == [(52500, 50000, 2500, 7500, txn)]
    assert state["credit"] == 7500
    assert state["history"] == [(7500, "overpayment", txn)]


def test_reversal_is_stored(orchestrator, account, session_factory):
    txn = pay(orchestrator, 60000)
    assert orchestrator.delete_payment(txn).status == BillingStatus.SUCCESS

    state = committed_state(session_factory)
    assert (state["paid"], state["penalty"], state["status"]) == (0, 2500, "unpaid")
    assert state["allocations"] == []
    assert (state["credit"], state["history"]) == (0, [])


class TestCreditAcrossCachedYears:
    @pytest.fixture
    def two_years(self, seed_committed, orchestrator):
        seed_committed([("A-101", FY - 1, 11, 10000), ("A-101", FY, OCT, 50000)])
        orchestrator.get_aggregated_data(FY - 1)
        orchestrator.get_aggregated_data(FY)

    def test_overpayment_refreshes_every_cached_year(self, orchestrator, two_years):
        result = orchestrator.record_payment(
            "A-101", 60000, TODAY, periods_oldest_first=[(FY, OCT)]
        )
        assert result.status == BillingStatus.SUCCESS
        assert set(result.cache_versions) == {FY - 1, FY}

        for fiscal_year in (FY - 1, FY):
            document = orchestrator.get_aggregated_data(fiscal_year).data
            assert document["accounts"]["A-101"]["creditBalance"] == 7500
            assert document["summary"]["totalCreditBalance"] == 7500

    def test_cached_years_show_no_drift(self, orchestrator, two_years, session_factory, clock):
        txn = orchestrator.record_payment(
            "A-101", 60000, TODAY, periods_oldest_first=[(FY, OCT)]
        ).data["external_transaction_id"]
        orchestrator.delete_payment(txn)

        for fiscal_year in (FY - 1, FY):
            with session_factory.begin() as sess:
                outcome = AggregationCacheEngine(sess, CLIENT_ID, clock=clock).rebuild_full(fiscal_year)
            assert outcome.drift == {}
