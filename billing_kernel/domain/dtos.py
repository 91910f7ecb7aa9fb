"""
DTOs -- Pure billing data transfer objects.

Responsibility:
    Immutable structures that cross the boundary between the ORM-backed
    kernel services and the pure engines: period snapshots going in, closed
    allocation lines and operation results coming out.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    ``from_model()`` converters are only invoked from the service layer.

Invariants enforced:
    - AllocationLine.base_charge_portion + penalty_portion == amount_applied,
      checked at construction (AllocationSplitError). A line that violates
      the split cannot exist.
    - PeriodStatus is derived from amounts; nothing sets it by hand.

Data flow:
    BillingPeriod (ORM) -> PeriodSnapshot -> engines -> AllocationLine
    -> PaymentAllocation (ORM)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from billing_kernel.domain.values import DEFAULT_TOLERANCE_MINOR_UNITS
from billing_kernel.exceptions import AllocationSplitError, InvalidAmountError

if TYPE_CHECKING:
    from billing_kernel.models.billing_period import BillingPeriod as BillingPeriodModel


class PeriodStatus(str, Enum):
    """Payment state of a billing period."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"

    @classmethod
    def derive(cls, base_charge: int, penalty_amount: int, paid_amount: int) -> PeriodStatus:
        """
        Status from amounts: paid iff paid covers base + penalty (within the
        legacy rounding tolerance), unpaid iff nothing is paid.
        """
        due = base_charge + penalty_amount
        if Decimal(paid_amount) + DEFAULT_TOLERANCE_MINOR_UNITS >= Decimal(due):
            return cls.PAID
        if paid_amount <= 0:
            return cls.UNPAID
        return cls.PARTIAL


@dataclass(frozen=True, slots=True)
class DatedPayment:
    """An amount applied to a period on a given date."""

    payment_date: date
    amount: int
    base_portion: int = 0
    penalty_portion: int = 0
    external_transaction_id: str | None = None


@dataclass(frozen=True)
class PeriodSnapshot:
    """
    Read-only view of one billing period for the engines.

    base_paid/penalty_paid are the sums of the period's allocation portions.
    """

    period_id: UUID
    account_id: str
    fiscal_year: int
    fiscal_month: int
    bill_date: date | None
    due_date: date | None
    base_charge: int
    penalty_amount: int
    paid_amount: int
    base_paid: int = 0
    penalty_paid: int = 0
    consumption: int | None = None
    status: PeriodStatus = PeriodStatus.UNPAID
    payments: tuple[DatedPayment, ...] = ()

    @property
    def total_due(self) -> int:
        return self.base_charge + self.penalty_amount

    @property
    def outstanding(self) -> int:
        return max(0, self.total_due - self.paid_amount)

    @property
    def outstanding_base(self) -> int:
        return max(0, self.base_charge - self.base_paid)

    @property
    def outstanding_penalty(self) -> int:
        return max(0, self.penalty_amount - self.penalty_paid)

    @classmethod
    def from_model(cls, model: BillingPeriodModel) -> PeriodSnapshot:
        """Create from ORM model."""
        allocations = list(model.allocations)
        return cls(
            period_id=model.id,
            account_id=model.account_id,
            fiscal_year=model.fiscal_year,
            fiscal_month=model.fiscal_month,
            bill_date=model.bill_date,
            due_date=model.due_date,
            base_charge=model.base_charge,
            penalty_amount=model.penalty_amount,
            paid_amount=model.paid_amount,
            base_paid=sum(a.base_charge_portion for a in allocations),
            penalty_paid=sum(a.penalty_portion for a in allocations),
            consumption=model.consumption,
            status=PeriodStatus(model.status),
            payments=tuple(
                DatedPayment(
                    a.payment_date,
                    a.amount_applied,
                    a.base_charge_portion,
                    a.penalty_portion,
                    a.external_transaction_id,
                )
                for a in allocations
            ),
        )


@dataclass(frozen=True)
class AllocationLine:
    """
    One payment's share of one period. Closed structure.

    Contract:
        Every field is required; the split is validated on construction so a
        mismatched line can never be persisted or passed to the ledger.
        ``external_transaction_id`` is None only while a plan has not yet
        been posted to the external ledger.
    """

    period_id: UUID
    fiscal_year: int
    fiscal_month: int
    amount_applied: int
    base_charge_portion: int
    penalty_portion: int
    credit_balance_delta: int = 0
    payment_date: date | None = None
    external_transaction_id: str | None = None

    def __post_init__(self) -> None:
        for name in ("amount_applied", "base_charge_portion", "penalty_portion"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidAmountError(value, f"{name} must be a non-negative integer")
        if self.base_charge_portion + self.penalty_portion != self.amount_applied:
            raise AllocationSplitError(
                self.amount_applied, self.base_charge_portion, self.penalty_portion
            )
        if isinstance(self.credit_balance_delta, bool) or not isinstance(self.credit_balance_delta, int):
            raise InvalidAmountError(self.credit_balance_delta, "credit_balance_delta must be an integer")

    def with_transaction(self, transaction_id: str, payment_date: date) -> AllocationLine:
        return replace(self, external_transaction_id=transaction_id, payment_date=payment_date)

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_id": str(self.period_id),
            "fiscal_year": self.fiscal_year,
            "fiscal_month": self.fiscal_month,
            "amount_applied": self.amount_applied,
            "base_charge_portion": self.base_charge_portion,
            "penalty_portion": self.penalty_portion,
            "credit_balance_delta": self.credit_balance_delta,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "external_transaction_id": self.external_transaction_id,
        }


@dataclass(frozen=True)
class AllocationPlan:
    """
    Output of the allocation engine before anything is written.

    cash_applied + credit_used == sum(lines.amount_applied);
    credit_created is the unallocated cash remainder.
    """

    lines: tuple[AllocationLine, ...]
    cash_amount: int
    cash_applied: int
    credit_used: int
    credit_created: int

    def __post_init__(self) -> None:
        applied = sum(line.amount_applied for line in self.lines)
        if applied != self.cash_applied + self.credit_used:
            raise AllocationSplitError(applied, self.cash_applied, self.credit_used)
        if self.cash_applied + self.credit_created != self.cash_amount:
            raise AllocationSplitError(self.cash_amount, self.cash_applied, self.credit_created)
        if self.credit_used and self.credit_created:
            raise AllocationSplitError(self.cash_amount, -self.credit_used, self.credit_created)

    @property
    def credit_balance_delta(self) -> int:
        """Net signed change to the account's credit balance."""
        return self.credit_created - self.credit_used

    @property
    def total_base(self) -> int:
        return sum(line.base_charge_portion for line in self.lines)

    @property
    def total_penalty(self) -> int:
        return sum(line.penalty_portion for line in self.lines)


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of a successfully applied payment."""

    payment_id: UUID
    account_id: str
    external_transaction_id: str
    payment_date: date
    amount: int
    credit_used: int
    credit_created: int
    credit_balance_after: int
    allocations: tuple[AllocationLine, ...]

    @property
    def credit_balance_delta(self) -> int:
        return self.credit_created - self.credit_used

    @property
    def periods_touched(self) -> tuple[tuple[int, int], ...]:
        return tuple((a.fiscal_year, a.fiscal_month) for a in self.allocations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": str(self.payment_id),
            "account_id": self.account_id,
            "external_transaction_id": self.external_transaction_id,
            "payment_date": self.payment_date.isoformat(),
            "amount": self.amount,
            "credit_used": self.credit_used,
            "credit_created": self.credit_created,
            "credit_balance_delta": self.credit_balance_delta,
            "credit_balance_after": self.credit_balance_after,
            "allocations": [a.to_dict() for a in self.allocations],
        }


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of an exact payment reversal."""

    payment_id: UUID
    account_id: str
    external_transaction_id: str
    amount_reversed: int
    credit_balance_delta_reversed: int
    credit_balance_after: int
    periods_restored: tuple[tuple[int, int], ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": str(self.payment_id),
            "account_id": self.account_id,
            "external_transaction_id": self.external_transaction_id,
            "amount_reversed": self.amount_reversed,
            "credit_balance_delta_reversed": self.credit_balance_delta_reversed,
            "credit_balance_after": self.credit_balance_after,
            "periods_restored": [list(p) for p in self.periods_restored],
        }


@dataclass(frozen=True)
class RecalcResult:
    """Counters from one penalty recalculation run."""

    as_of_date: date
    scope: str
    periods_processed: int
    periods_updated: int
    periods_skipped_paid: int
    periods_skipped_out_of_scope: int
    periods_failed: int
    total_penalty: int
    duration_ms: float
    account_ids_touched: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of_date": self.as_of_date.isoformat(),
            "scope": self.scope,
            "periods_processed": self.periods_processed,
            "periods_updated": self.periods_updated,
            "periods_skipped_paid": self.periods_skipped_paid,
            "periods_skipped_out_of_scope": self.periods_skipped_out_of_scope,
            "periods_failed": self.periods_failed,
            "total_penalty": self.total_penalty,
            "duration_ms": self.duration_ms,
            "account_ids_touched": list(self.account_ids_touched),
        }
