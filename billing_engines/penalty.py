"""
Module: billing_engines.penalty
Responsibility:
    Compute late-payment penalty interest for one billing period as of a
    given date, from the period's base charge, due date and dated payments.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel.domain.

Algorithm:
    Penalty cycles start once the grace window (due_date + grace_days) has
    passed.  Cycle k begins at ``add_months(grace_end, k)`` and counts when
    that boundary is strictly before ``as_of_date``.  At each counted
    boundary the balance still owed is

        compounding:  base + penalty_so_far - payments dated on/before boundary
        simple:       base - base paid on/before boundary

    and ``rate * balance`` (ROUND_HALF_UP to a whole minor unit) is added to
    the penalty.  Because the result depends only on the inputs, recomputing
    as of the same date always yields the same integer, and a payment dated
    on or before the due date accrues no penalty however late it is
    recorded.

Invariants enforced:
    - Deterministic: identical inputs give identical penalty integers.
    - Non-negative: a cycle whose balance is <= 0 adds nothing.
    - Purity: the as-of date is always a parameter; no clock access.

Failure modes:
    - ValueError on negative rate, negative grace days or negative base.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from billing_engines.tracer import traced_engine
from billing_kernel.domain.dtos import DatedPayment
from billing_kernel.domain.fiscal_calendar import add_months
from billing_kernel.domain.values import round_half_up
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.penalty")


@dataclass(frozen=True)
class PenaltyPolicy:
    """
    Client penalty terms.

    Guarantees:
        - rate is a non-negative Decimal fraction per cycle (0.05 = 5%).
        - max_cycles, when set, caps how many cycles ever accrue.
    """

    rate: Decimal
    grace_days: int = 0
    compounding: bool = True
    max_cycles: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.rate, Decimal):
            object.__setattr__(self, "rate", Decimal(str(self.rate)))
        if self.rate < 0:
            raise ValueError(f"Penalty rate cannot be negative: {self.rate}")
        if self.grace_days < 0:
            raise ValueError(f"Grace days cannot be negative: {self.grace_days}")
        if self.max_cycles is not None and self.max_cycles < 0:
            raise ValueError(f"max_cycles cannot be negative: {self.max_cycles}")


@dataclass(frozen=True)
class PenaltyCycle:
    """One accrual step."""

    index: int
    boundary: date
    balance: int
    charge: int


@dataclass(frozen=True)
class PenaltyComputation:
    """Penalty owed on a period as of one date."""

    penalty_amount: int
    cycles: int
    as_of_date: date
    steps: tuple[PenaltyCycle, ...] = ()


class PenaltyCalculator:
    """
    Pure penalty accrual.

    Contract:
        ``calculate`` takes keyword arguments only so the tracer can
        fingerprint them.
    """

    @staticmethod
    def grace_end(due_date: date, grace_days: int = 0) -> date:
        return due_date + timedelta(days=grace_days)

    def cycle_boundaries(
        self, due_date: date, as_of_date: date, policy: PenaltyPolicy
    ) -> list[date]:
        """Start dates of every cycle that has begun before ``as_of_date``."""
        start = self.grace_end(due_date, policy.grace_days)
        boundaries: list[date] = []
        k = 0
        while True:
            if policy.max_cycles is not None and k >= policy.max_cycles:
                break
            boundary = add_months(start, k)
            if boundary >= as_of_date:
                break
            boundaries.append(boundary)
            k += 1
        return boundaries

    def elapsed_cycles(self, due_date: date, as_of_date: date, policy: PenaltyPolicy) -> int:
        return len(self.cycle_boundaries(due_date, as_of_date, policy))

    @traced_engine(
        "penalty", "1.0",
        fingerprint_fields=("base_charge", "due_date", "as_of_date", "payments", "policy"),
    )
    def calculate(
        self,
        *,
        base_charge: int,
        due_date: date,
        as_of_date: date,
        policy: PenaltyPolicy,
        payments: Sequence[DatedPayment] = (),
    ) -> PenaltyComputation:
        """
        Penalty owed as of ``as_of_date``.

        Args:
            base_charge: Pre-penalty amount in minor units.
            due_date: Period due date.
            as_of_date: Date to compute the penalty at (may be in the past).
            policy: Rate, grace and compounding terms.
            payments: Amounts applied to this period with their dates.

        Returns:
            PenaltyComputation with the integer penalty and per-cycle steps.
        """
        if base_charge < 0:
            raise ValueError(f"base_charge cannot be negative: {base_charge}")

        ordered = sorted(payments, key=lambda p: p.payment_date)
        penalty = 0
        steps: list[PenaltyCycle] = []

        for index, boundary in enumerate(self.cycle_boundaries(due_date, as_of_date, policy)):
            paid_by_boundary = [p for p in ordered if p.payment_date <= boundary]
            if policy.compounding:
                balance = base_charge + penalty - sum(p.amount for p in paid_by_boundary)
            else:
                base_paid = sum(p.base_portion for p in paid_by_boundary)
                balance = base_charge - base_paid
            charge = round_half_up(policy.rate * Decimal(balance)) if balance > 0 else 0
            penalty += charge
            steps.append(PenaltyCycle(index, boundary, balance, charge))

        logger.debug(
            "penalty_calculated",
            extra={
                "due_date": due_date.isoformat(),
                "as_of_date": as_of_date.isoformat(),
                "cycles": len(steps),
                "penalty_amount": penalty,
            },
        )
        return PenaltyComputation(
            penalty_amount=penalty,
            cycles=len(steps),
            as_of_date=as_of_date,
            steps=tuple(steps),
        )
