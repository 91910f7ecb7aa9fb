"""
PaymentService -- apply and exactly reverse payments.

Responsibility:
    Applies one payment across an account's outstanding billing periods
    (oldest first, base/penalty split proportionally), posts the external
    ledger transaction, records the allocations and the credit ledger entry
    under that transaction id, and reverses a payment exactly.

Architecture position:
    Kernel > Services -- imperative shell.  Consumes
    PaymentAllocationEngine (pure planning), PenaltyRecalculationService,
    CreditBalanceService and the LedgerGateway port.

Invariants enforced:
    - paid_amount == sum(allocations.amount_applied) on every touched
      period, checked after every apply and reverse.
    - The ledger transaction exists before any allocation or credit entry
      is written, so no entry carries a null transaction id.
    - Credit never goes negative: a reversal that would overdraw raises
      before any write.
    - Payments for one account are applied in date order; a payment dated
      before the latest applied payment is rejected (reverse the later
      payments first).

Failure modes:
    - InvalidAmountError, InvalidDateError, AccountNotFoundError,
      PeriodNotFoundError: bad input, raised before any write.
    - PaymentNotFoundError, PaymentAlreadyReversedError on reversal.
    - CreditBalanceOverdrawError when a reversal would overdraw credit.
    - LedgerGatewayError when the ledger cannot record the transaction.
    - Any failure after the ledger transaction was created deletes that
      transaction again and re-raises; the caller rolls back the session.

Audit relevance:
    ``payment_applied`` and ``payment_reversed`` log records carry the
    transaction id, the allocations and the credit movement.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime

from sqlalchemy.orm import Session

from billing_engines.allocation import PaymentAllocationEngine
from billing_engines.penalty import PenaltyPolicy
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.dtos import (
    AllocationLine,
    AllocationPlan,
    AllocationResult,
    PeriodSnapshot,
    ReversalResult,
)
from billing_kernel.domain.fiscal_calendar import FiscalCalendar, FiscalPeriodKey
from billing_kernel.domain.ledger import LedgerGateway, ledger_lines_for
from billing_kernel.domain.values import Money
from billing_kernel.exceptions import (
    AccountNotFoundError,
    CreditBalanceOverdrawError,
    CurrencyMismatchError,
    InvalidAmountError,
    InvalidDateError,
    LedgerGatewayError,
    PaymentAlreadyReversedError,
    PaymentNotFoundError,
    PeriodNotFoundError,
)
from billing_kernel.invariants import check_credit_balance, check_period
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.account import BillingAccount
from billing_kernel.models.billing_period import BillingPeriod
from billing_kernel.models.payment import Payment, PaymentAllocation, PaymentStatus
from billing_kernel.services.base import BaseService
from billing_kernel.services.credit_service import CreditBalanceService
from billing_kernel.services.penalty_service import PenaltyRecalculationService

logger = get_logger("services.payment")


def _require_date(field: str, value: object) -> date:
    if isinstance(value, datetime) or not isinstance(value, date):
        raise InvalidDateError(field, value, "must be a calendar date")
    return value


class PaymentService(BaseService):
    """
    Payment application and exact reversal for one client.

    Contract:
        The caller serialises payments per account and owns the
        transaction; this service flushes but never commits.

    Guarantees:
        - apply then reverse (both recalculated as of the same date)
          restores every period and credit balance field exactly.

    Non-goals:
        - Does NOT update the cached read model; the orchestrator does that
          after commit.
    """

    def __init__(
        self,
        session: Session,
        client_id: str,
        policy: PenaltyPolicy,
        ledger: LedgerGateway,
        clock: Clock | None = None,
        use_credit_balance: bool = True,
        calendar: FiscalCalendar | None = None,
        allocation_engine: PaymentAllocationEngine | None = None,
    ):
        super().__init__(session, client_id, clock)
        self._ledger = ledger
        self._use_credit_balance = use_credit_balance
        self._calendar = calendar
        self._engine = allocation_engine or PaymentAllocationEngine()
        self._credit = CreditBalanceService(session, client_id, self._clock)
        self._penalties = PenaltyRecalculationService(session, client_id, policy, self._clock)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_payment(
        self,
        account_id: str,
        amount: int | Money,
        payment_date: date,
        periods_oldest_first: Sequence[tuple[int, int]] | None = None,
        as_of_date: date | None = None,
        payment_method: str = "cash",
        reference: str = "",
        notes: str = "",
    ) -> AllocationResult:
        """
        Apply one payment to an account.

        Args:
            account_id: Account receiving the payment.
            amount: Cash received, integer minor units or Money.
            payment_date: Date the payment was made (may be backdated).
            periods_oldest_first: Optional (fiscal_year, fiscal_month) keys
                restricting which periods may receive the payment.
            as_of_date: Date penalties are brought current to after the
                payment.  Defaults to payment_date.
            payment_method, reference, notes: Stored on the Payment.

        Returns:
            AllocationResult with the ledger transaction id.
        """
        account = self._require_account(account_id)
        cash = self._coerce_amount(amount, account)
        payment_date = _require_date("payment_date", payment_date)
        as_of = _require_date("as_of_date", as_of_date) if as_of_date is not None else payment_date
        if as_of < payment_date:
            raise InvalidDateError("as_of_date", as_of, "cannot precede payment_date")

        latest = self._selector.latest_payment_date(account_id)
        if latest is not None and payment_date < latest:
            raise InvalidDateError(
                "payment_date",
                payment_date,
                f"precedes latest applied payment {latest.isoformat()}; reverse later payments first",
            )

        with LogContext.bind(client_id=self.client_id, account_id=account_id):
            # Penalties owed on the payment date, not today.
            self._penalties.recalculate([account_id], payment_date)

            periods = self._candidate_periods(account_id, periods_oldest_first)
            plan = self._engine.allocate(
                cash_amount=cash,
                credit_available=self._credit.get_balance(account_id),
                periods=[PeriodSnapshot.from_model(p) for p in periods],
                use_credit_balance=self._use_credit_balance,
            )

            transaction_id = self._create_ledger_transaction(account, cash, payment_date, plan)
            try:
                with LogContext.bind(transaction_id=transaction_id):
                    result = self._record(
                        account, cash, payment_date, as_of, plan, periods, transaction_id,
                        payment_method, reference, notes,
                    )
            except Exception:
                self._compensate(transaction_id)
                raise

        logger.info("payment_applied", extra=result.to_dict())
        return result

    def _record(
        self,
        account: BillingAccount,
        cash: int,
        payment_date: date,
        as_of: date,
        plan: AllocationPlan,
        periods: list[BillingPeriod],
        transaction_id: str,
        payment_method: str,
        reference: str,
        notes: str,
    ) -> AllocationResult:
        payment = Payment(
            client_id=self.client_id,
            account_id=account.account_id,
            currency=account.currency,
            amount=cash,
            payment_date=payment_date,
            external_transaction_id=transaction_id,
            credit_used=plan.credit_used,
            credit_created=plan.credit_created,
            credit_balance_delta=plan.credit_balance_delta,
            status=PaymentStatus.APPLIED.value,
            payment_method=payment_method,
            reference=reference,
            notes=notes,
        )
        self.session.add(payment)
        self.session.flush()

        by_id = {p.id: p for p in periods}
        lines: list[AllocationLine] = []
        touched: list[BillingPeriod] = []
        for planned in plan.lines:
            line = planned.with_transaction(transaction_id, payment_date)
            period = by_id[line.period_id]
            allocation = PaymentAllocation(
                payment=payment,
                period=period,
                sequence=period.next_allocation_sequence(),
                amount_applied=line.amount_applied,
                base_charge_portion=line.base_charge_portion,
                penalty_portion=line.penalty_portion,
                credit_balance_delta=line.credit_balance_delta,
                payment_date=payment_date,
                external_transaction_id=transaction_id,
            )
            self.session.add(allocation)
            period.paid_amount += line.amount_applied
            period.refresh_status()
            lines.append(line)
            touched.append(period)

        # The credit entry references the transaction created above.
        if plan.credit_used:
            self._credit.apply_delta(
                account.account_id, -plan.credit_used, source="credit_used",
                payment_id=payment.id, external_transaction_id=transaction_id,
            )
        if plan.credit_created:
            self._credit.apply_delta(
                account.account_id, plan.credit_created, source="overpayment",
                payment_id=payment.id, external_transaction_id=transaction_id,
            )
        self.session.flush()

        self._penalties.recalculate([account.account_id], as_of)
        self._check(account.account_id, touched)

        return AllocationResult(
            payment_id=payment.id,
            account_id=account.account_id,
            external_transaction_id=transaction_id,
            payment_date=payment_date,
            amount=cash,
            credit_used=plan.credit_used,
            credit_created=plan.credit_created,
            credit_balance_after=self._credit.get_balance(account.account_id),
            allocations=tuple(lines),
        )

    # ------------------------------------------------------------------
    # Reverse
    # ------------------------------------------------------------------

    def reverse_payment(self, external_transaction_id: str, as_of_date: date) -> ReversalResult:
        """
        Exactly undo a payment.

        Removes the payment's allocations, subtracts them from each period's
        paid amount, removes its credit ledger entries, marks the payment
        reversed and recalculates the account's penalties as of
        ``as_of_date``.

        Raises:
            PaymentNotFoundError: No payment carries this transaction id.
            PaymentAlreadyReversedError: The payment was reversed before.
            CreditBalanceOverdrawError: Undoing the payment's credit would
                make the balance negative (raised before any write).
        """
        as_of = _require_date("as_of_date", as_of_date)
        payment = self._selector.payment_by_transaction(external_transaction_id)
        if payment is None:
            raise PaymentNotFoundError(external_transaction_id)
        if payment.is_reversed:
            raise PaymentAlreadyReversedError(external_transaction_id)

        account_id = payment.account_id
        with LogContext.bind(
            client_id=self.client_id, account_id=account_id, transaction_id=external_transaction_id
        ):
            entries = self._credit.entries_for_payment(account_id, payment.id)
            net = sum(e.delta for e in entries)
            balance = self._credit.get_balance(account_id)
            if balance - net < 0:
                raise CreditBalanceOverdrawError(account_id, balance, -net)

            restored: list[BillingPeriod] = []
            for allocation in list(payment.allocations):
                period = allocation.period
                period.paid_amount -= allocation.amount_applied
                period.allocations.remove(allocation)
                self.session.delete(allocation)
                period.refresh_status()
                if period not in restored:
                    restored.append(period)

            for entry in entries:
                self._credit.remove_entry(entry)

            payment.status = PaymentStatus.REVERSED.value
            payment.reversed_at = self._clock.now_utc()
            self.session.flush()
            self.session.expire(payment, ["allocations"])

            self._penalties.recalculate([account_id], as_of)
            self._check(account_id, restored)

            result = ReversalResult(
                payment_id=payment.id,
                account_id=account_id,
                external_transaction_id=external_transaction_id,
                amount_reversed=payment.amount,
                credit_balance_delta_reversed=net,
                credit_balance_after=self._credit.get_balance(account_id),
                periods_restored=tuple(
                    sorted({(p.fiscal_year, p.fiscal_month) for p in restored})
                ),
            )
        logger.info("payment_reversed", extra=result.to_dict())
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_account(self, account_id: str) -> BillingAccount:
        account = self._selector.get_account(account_id)
        if account is None or not account.is_active:
            raise AccountNotFoundError(account_id, self.client_id)
        return account

    @staticmethod
    def _coerce_amount(amount: int | Money, account: BillingAccount) -> int:
        if isinstance(amount, Money):
            if amount.currency.code != account.currency:
                raise CurrencyMismatchError(amount.currency.code, account.currency)
            amount = amount.minor_units
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmountError(amount, "must be integer minor units")
        if amount <= 0:
            raise InvalidAmountError(amount, "must be positive")
        return amount

    def _candidate_periods(
        self, account_id: str, keys: Sequence[tuple[int, int]] | None
    ) -> list[BillingPeriod]:
        periods = self._selector.unpaid_periods([account_id], for_update=True)
        if keys is None:
            return periods

        wanted = set()
        for fiscal_year, fiscal_month in keys:
            key = FiscalPeriodKey(fiscal_year, fiscal_month)
            if self._selector.get_period(account_id, key.fiscal_year, key.fiscal_month) is None:
                raise PeriodNotFoundError(account_id, key.fiscal_year, key.fiscal_month)
            wanted.add((key.fiscal_year, key.fiscal_month))
        return [p for p in periods if (p.fiscal_year, p.fiscal_month) in wanted]

    def _create_ledger_transaction(
        self, account: BillingAccount, cash: int, payment_date: date, plan: AllocationPlan
    ) -> str:
        labels = {}
        if self._calendar is not None:
            labels = {
                (line.fiscal_year, line.fiscal_month): self._calendar.period_label(
                    FiscalPeriodKey(line.fiscal_year, line.fiscal_month)
                )
                for line in plan.lines
            }
        lines = ledger_lines_for(plan.lines, plan.credit_used, plan.credit_created, labels)
        try:
            transaction_id = self._ledger.create_transaction(
                client_id=self.client_id,
                account_id=account.account_id,
                amount=cash,
                payment_date=payment_date,
                lines=lines,
                description=f"Payment {account.account_id} {payment_date.isoformat()}",
            )
        except LedgerGatewayError:
            raise
        except Exception as exc:
            raise LedgerGatewayError("create_transaction", str(exc)) from exc
        if not transaction_id:
            raise LedgerGatewayError("create_transaction", "ledger returned an empty transaction id")
        return transaction_id

    def _compensate(self, transaction_id: str) -> None:
        try:
            self._ledger.delete_transaction(transaction_id)
        except Exception:
            logger.error(
                "ledger_compensation_failed",
                extra={"transaction_id": transaction_id},
                exc_info=True,
            )
        else:
            logger.warning("ledger_transaction_compensated", extra={"transaction_id": transaction_id})

    def _check(self, account_id: str, periods: Sequence[BillingPeriod]) -> None:
        for period in periods:
            check_period(period)
        credit = self._selector.credit_balance(account_id)
        if credit is not None:
            check_credit_balance(credit)

