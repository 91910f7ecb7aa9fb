"""
Billing Invariants Contract.

Structural rules that hold for every account at every commit.  No client
configuration can relax them.  The checks below are run by the payment
service after every apply/reverse and by the invariant test suite.
"""

from enum import Enum, unique

from billing_kernel.exceptions import InvariantViolationError
from billing_kernel.models.billing_period import BillingPeriod
from billing_kernel.models.credit_balance import CreditBalance


@unique
class BillingInvariant(str, Enum):
    """Non-configurable invariants enforced by the billing kernel."""

    PAID_EQUALS_ALLOCATIONS = "paid_equals_allocations"
    """paid_amount == sum(allocations.amount_applied) for every period."""

    SPLIT_EQUALS_PAID = "split_equals_paid"
    """sum(base portions) + sum(penalty portions) == paid_amount."""

    CREDIT_EQUALS_HISTORY = "credit_equals_history"
    """CreditBalance.balance == sum(history.delta)."""

    CREDIT_NON_NEGATIVE = "credit_non_negative"
    """CreditBalance.balance >= 0."""

    PAID_IS_FROZEN = "paid_is_frozen"
    """Penalty recalculation never touches a paid period.  Enforced by
    PenaltyRecalculationService skipping status == paid."""

    STATUS_DERIVED = "status_derived"
    """status always equals PeriodStatus.derive(base, penalty, paid)."""


ALL_BILLING_INVARIANTS: frozenset[BillingInvariant] = frozenset(BillingInvariant)

# The kernel package may not import from these packages.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "billing_services",
    "billing_config",
    "billing_api",
    "billing_batch",
    "billing_ingestion",
)


def check_period(period: BillingPeriod) -> None:
    """Raise InvariantViolationError if a period's totals disagree with its allocations."""
    from billing_kernel.domain.dtos import PeriodStatus

    applied = sum(a.amount_applied for a in period.allocations)
    if applied != period.paid_amount:
        raise InvariantViolationError(
            BillingInvariant.PAID_EQUALS_ALLOCATIONS.value, str(period.id),
            period.paid_amount, applied,
        )
    split = sum(a.base_charge_portion + a.penalty_portion for a in period.allocations)
    if split != period.paid_amount:
        raise InvariantViolationError(
            BillingInvariant.SPLIT_EQUALS_PAID.value, str(period.id),
            period.paid_amount, split,
        )
    derived = PeriodStatus.derive(period.base_charge, period.penalty_amount, period.paid_amount)
    if period.status != derived.value:
        raise InvariantViolationError(
            BillingInvariant.STATUS_DERIVED.value, str(period.id),
            derived.value, period.status,
        )


def check_credit_balance(credit: CreditBalance) -> None:
    """Raise InvariantViolationError if a credit balance disagrees with its history."""
    if credit.balance < 0:
        raise InvariantViolationError(
            BillingInvariant.CREDIT_NON_NEGATIVE.value, credit.account_id, ">= 0", credit.balance,
        )
    total = sum(e.delta for e in credit.history)
    if total != credit.balance:
        raise InvariantViolationError(
            BillingInvariant.CREDIT_EQUALS_HISTORY.value, credit.account_id, credit.balance, total,
        )
