"""
PenaltyRecalculationService -- scoped, idempotent penalty recomputation.

Responsibility:
    Recompute ``penalty_amount`` for every unpaid or partial billing period
    in scope as of an explicit date, using the pure PenaltyCalculator.  The
    same function serves the nightly full run (``scope="all"``) and the
    single-account run that follows a payment or reversal.

Architecture position:
    Kernel > Services -- imperative shell around billing_engines.penalty.

Invariants enforced:
    - Paid periods are skipped before any computation; their penalty is
      frozen.
    - A finite scope is filtered in SQL so the work is O(scope); the
      out-of-scope count is a single COUNT query.
    - Recalculating twice with the same as-of date and no mutation in
      between writes identical integers.

Failure modes:
    - InvalidScopeError if scope is neither "all" nor a collection of
      account ids.
    - InvalidDateError if as_of_date is not a date.
    - A malformed period (no due date, or rejected by the engine) is logged
      as ``penalty_period_malformed`` and counted in ``periods_failed``;
      nothing is raised for a single bad record.
"""

from __future__ import annotations

import time
from collections.abc import Collection
from datetime import date, datetime

from sqlalchemy.orm import Session

from billing_engines.penalty import PenaltyCalculator, PenaltyPolicy
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.dtos import DatedPayment, RecalcResult
from billing_kernel.exceptions import InvalidDateError, InvalidScopeError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.billing_period import BillingPeriod
from billing_kernel.services.base import BaseService

logger = get_logger("services.penalty")

ALL_ACCOUNTS = "all"


def normalize_scope(scope: str | Collection[str]) -> list[str] | None:
    """None for every account, otherwise a sorted de-duplicated id list."""
    if isinstance(scope, str):
        if scope == ALL_ACCOUNTS:
            return None
        raise InvalidScopeError(scope)
    if not isinstance(scope, Collection) or not all(isinstance(a, str) for a in scope):
        raise InvalidScopeError(scope)
    return sorted(set(scope))


class PenaltyRecalculationService(BaseService):
    """
    Recompute penalties for one client.

    Contract:
        ``recalculate`` flushes its updates and never commits.
    """

    def __init__(
        self,
        session: Session,
        client_id: str,
        policy: PenaltyPolicy,
        clock: Clock | None = None,
        calculator: PenaltyCalculator | None = None,
    ):
        super().__init__(session, client_id, clock)
        self._policy = policy
        self._calculator = calculator or PenaltyCalculator()

    def recalculate(self, scope: str | Collection[str], as_of_date: date) -> RecalcResult:
        """
        Recompute penalties for every unpaid/partial period in scope.

        Args:
            scope: "all" or a collection of account ids.
            as_of_date: Date to compute penalties at.

        Returns:
            RecalcResult counters.
        """
        if isinstance(as_of_date, datetime) or not isinstance(as_of_date, date):
            raise InvalidDateError("as_of_date", as_of_date, "must be a calendar date")

        account_ids = normalize_scope(scope)
        started = time.perf_counter()

        periods = self._selector.periods(account_ids=account_ids)
        out_of_scope = 0
        if account_ids is not None:
            out_of_scope = self._selector.count_periods(exclude_account_ids=account_ids)

        processed = updated = skipped_paid = failed = 0
        total_penalty = 0
        touched: set[str] = set()
        now = self._clock.now_utc()

        for period in periods:
            if period.is_paid:
                skipped_paid += 1
                continue

            new_penalty = self._compute(period, as_of_date)
            if new_penalty is None:
                failed += 1
                continue

            processed += 1
            total_penalty += new_penalty
            if new_penalty != period.penalty_amount:
                period.penalty_amount = new_penalty
                period.last_penalty_update = now
                updated += 1
                touched.add(period.account_id)
            if period.penalty_as_of != as_of_date:
                period.penalty_as_of = as_of_date
            period.refresh_status()

        self.session.flush()

        result = RecalcResult(
            as_of_date=as_of_date,
            scope=ALL_ACCOUNTS if account_ids is None else ",".join(account_ids),
            periods_processed=processed,
            periods_updated=updated,
            periods_skipped_paid=skipped_paid,
            periods_skipped_out_of_scope=out_of_scope,
            periods_failed=failed,
            total_penalty=total_penalty,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            account_ids_touched=tuple(sorted(touched)),
        )
        logger.info("penalty_recalc_completed", extra=result.to_dict())
        return result

    def _compute(self, period: BillingPeriod, as_of_date: date) -> int | None:
        if period.due_date is None:
            logger.warning(
                "penalty_period_malformed",
                extra={
                    "account_id": period.account_id,
                    "period": f"FY{period.fiscal_year}-{period.fiscal_month:02d}",
                    "reason": "missing due_date",
                },
            )
            return None

        payments = [
            DatedPayment(
                a.payment_date,
                a.amount_applied,
                a.base_charge_portion,
                a.penalty_portion,
                a.external_transaction_id,
            )
            for a in period.allocations
        ]
        try:
            computation = self._calculator.calculate(
                base_charge=period.base_charge,
                due_date=period.due_date,
                as_of_date=as_of_date,
                policy=self._policy,
                payments=payments,
            )
        except ValueError as exc:
            logger.warning(
                "penalty_period_malformed",
                extra={
                    "account_id": period.account_id,
                    "period": f"FY{period.fiscal_year}-{period.fiscal_month:02d}",
                    "reason": str(exc),
                },
            )
            return None
        return computation.penalty_amount
