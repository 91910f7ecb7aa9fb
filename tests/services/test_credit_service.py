"""Credit ledger: signed history, non-negative balance, exact entry removal."""

import pytest

from billing_kernel.exceptions import AccountNotFoundError, CreditBalanceOverdrawError
from billing_kernel.invariants import check_credit_balance


@pytest.fixture
def account(billing):
    return billing.ensure_account("A-101", owner_name="Owner")


def test_balance_defaults_to_zero(credit, account):
    assert credit.get_balance("A-101") == 0
    assert credit.get_history("A-101") == []


def test_row_created_lazily(credit, account):
    row = credit.get_or_create("A-101")
    assert row.balance == 0
    assert credit.get_or_create("A-101") is row


def test_unknown_account(credit):
    with pytest.raises(AccountNotFoundError):
        credit.get_or_create("NOPE")


def test_deltas_accumulate_with_history(credit, account):
    credit.apply_delta("A-101", 5000, source="overpayment")
    credit.apply_delta("A-101", -2000, source="credit_used")
    history = credit.get_history("A-101")
    assert credit.get_balance("A-101") == 3000
    assert [(e.sequence, e.delta, e.balance_after) for e in history] == [(1, 5000, 5000), (2, -2000, 3000)]
    check_credit_balance(credit.get_or_create("A-101"))


def test_overdraw_refused_without_write(credit, account):
    credit.apply_delta("A-101", 1000, source="adjustment")
    with pytest.raises(CreditBalanceOverdrawError):
        credit.apply_delta("A-101", -1001, source="credit_used")
    assert credit.get_balance("A-101") == 1000
    assert len(credit.get_history("A-101")) == 1


def test_remove_entry_inverts_delta(credit, account):
    first = credit.apply_delta("A-101", 5000, source="overpayment")
    credit.apply_delta("A-101", 1000, source="adjustment")
    assert credit.remove_entry(first) == 1000
    assert [e.delta for e in credit.get_history("A-101")] == [1000]


def test_remove_entry_that_would_overdraw(credit, account):
    credit.apply_delta("A-101", 5000, source="overpayment")
    spend = credit.apply_delta("A-101", -5000, source="credit_used")
    assert spend.balance_after == 0
    first = credit.get_history("A-101")[0]
    with pytest.raises(CreditBalanceOverdrawError):
        credit.remove_entry(first)


def test_adjustment_logged_with_actor(credit, account, captured_logs):
    entry = credit.adjust_balance("A-101", 2500, note="goodwill", actor="ops")
    assert entry.source == "adjustment"
    records = [r for r in captured_logs() if r["message"] == "credit_balance_adjusted"]
    assert records[0]["actor_id"] == "ops"
    assert records[0]["delta"] == 2500
