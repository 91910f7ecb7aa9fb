"""
Module: billing_engines.allocation
Responsibility:
    Plan how one payment (plus, by policy, the account's standing credit)
    is spread across an account's outstanding billing periods.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel.domain.

Rules:
    - Periods are covered oldest-first; each takes up to its outstanding
      ``base + penalty - paid``.
    - Each allocation is split between base and penalty in proportion to
      the period's own outstanding base/penalty.  The base share is rounded
      ROUND_HALF_UP and the penalty share takes the remainder; both are
      clamped to what is actually outstanding.
    - With ``use_credit_balance`` the standing credit covers only the
      shortfall between the cash and the total outstanding, never more
      than the available balance.  Cash is consumed before credit.
    - Cash left after every period is covered becomes new credit and is
      recorded as a positive delta on the last line (or on the payment
      alone when nothing was outstanding).

Invariants enforced:
    - Every AllocationLine satisfies base + penalty == amount_applied.
    - cash_applied + credit_created == cash_amount.
    - credit_used <= credit_available.

Failure modes:
    - ValueError on non-positive cash or negative credit available.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from decimal import Decimal

from billing_engines.tracer import traced_engine
from billing_kernel.domain.dtos import AllocationLine, AllocationPlan, PeriodSnapshot
from billing_kernel.domain.values import round_half_up
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")


def split_base_penalty(amount: int, period: PeriodSnapshot) -> tuple[int, int]:
    """
    Proportional base/penalty split of ``amount`` against a period.

    Returns:
        (base_portion, penalty_portion), summing to ``amount``.
    """
    base_out = period.outstanding_base
    penalty_out = period.outstanding_penalty
    pool = base_out + penalty_out
    if pool <= 0:
        return amount, 0

    base = round_half_up(Decimal(amount) * Decimal(base_out) / Decimal(pool))
    base = min(base, base_out, amount)
    penalty = amount - base
    if penalty > penalty_out:
        penalty = penalty_out
        base = amount - penalty
    return base, penalty


class PaymentAllocationEngine:
    """
    Oldest-first payment allocation.

    Contract:
        Pure and deterministic.  Callers pass period snapshots already
        ordered oldest-first and already carrying current penalties.
    """

    @traced_engine(
        "payment_allocation", "1.0",
        fingerprint_fields=("cash_amount", "credit_available", "use_credit_balance"),
    )
    def allocate(
        self,
        *,
        cash_amount: int,
        credit_available: int,
        periods: Sequence[PeriodSnapshot],
        use_credit_balance: bool = True,
    ) -> AllocationPlan:
        """
        Plan the allocation of one payment.

        Args:
            cash_amount: Cash received, minor units (> 0).
            credit_available: Account's standing credit, minor units (>= 0).
            periods: Candidate periods, oldest first.
            use_credit_balance: Whether standing credit may cover a shortfall.

        Returns:
            AllocationPlan with validated lines.
        """
        if cash_amount <= 0:
            raise ValueError(f"cash_amount must be positive: {cash_amount}")
        if credit_available < 0:
            raise ValueError(f"credit_available cannot be negative: {credit_available}")

        open_periods = [p for p in periods if p.outstanding > 0]
        outstanding_total = sum(p.outstanding for p in open_periods)

        credit_draw = 0
        if use_credit_balance and cash_amount < outstanding_total:
            credit_draw = min(credit_available, outstanding_total - cash_amount)

        cash_left = cash_amount
        credit_left = credit_draw
        lines: list[AllocationLine] = []

        for period in open_periods:
            available = cash_left + credit_left
            if available <= 0:
                break
            applied = min(period.outstanding, available)
            from_cash = min(applied, cash_left)
            from_credit = applied - from_cash
            cash_left -= from_cash
            credit_left -= from_credit

            base, penalty = split_base_penalty(applied, period)
            lines.append(
                AllocationLine(
                    period_id=period.period_id,
                    fiscal_year=period.fiscal_year,
                    fiscal_month=period.fiscal_month,
                    amount_applied=applied,
                    base_charge_portion=base,
                    penalty_portion=penalty,
                    credit_balance_delta=-from_credit,
                )
            )

        credit_used = credit_draw - credit_left
        credit_created = cash_left
        if credit_created and lines:
            last = lines[-1]
            lines[-1] = replace(last, credit_balance_delta=last.credit_balance_delta + credit_created)

        plan = AllocationPlan(
            lines=tuple(lines),
            cash_amount=cash_amount,
            cash_applied=cash_amount - cash_left,
            credit_used=credit_used,
            credit_created=credit_created,
        )

        logger.debug(
            "allocation_planned",
            extra={
                "cash_amount": cash_amount,
                "periods_considered": len(open_periods),
                "lines": len(lines),
                "credit_used": credit_used,
                "credit_created": credit_created,
            },
        )
        return plan
