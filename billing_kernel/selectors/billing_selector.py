"""
Module: billing_kernel.selectors.billing_selector
Responsibility: Read paths over accounts, billing periods, payments and
    credit balances for one client.
Architecture position: Kernel > Selectors.

Scope filtering is always pushed into SQL (``account_id IN (...)``) so a
scoped caller reads O(scope) rows regardless of how many accounts the
client has.
"""

from collections.abc import Iterable, Sequence
from datetime import date

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import selectinload

from billing_kernel.domain.dtos import PeriodStatus
from billing_kernel.models.account import BillingAccount
from billing_kernel.models.billing_period import BillingPeriod
from billing_kernel.models.credit_balance import CreditBalance
from billing_kernel.models.payment import Payment, PaymentAllocation, PaymentStatus
from billing_kernel.selectors.base import BaseSelector


class BillingSelector(BaseSelector):
    """Queries over one client's billing documents."""

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> BillingAccount | None:
        return self.session.execute(
            select(BillingAccount).where(
                BillingAccount.client_id == self.client_id,
                BillingAccount.account_id == account_id,
            )
        ).scalar_one_or_none()

    def list_account_ids(self, active_only: bool = False) -> list[str]:
        stmt = select(BillingAccount.account_id).where(BillingAccount.client_id == self.client_id)
        if active_only:
            stmt = stmt.where(BillingAccount.is_active.is_(True))
        return list(self.session.execute(stmt.order_by(BillingAccount.account_id)).scalars())

    def owner_names(self, account_ids: Iterable[str] | None = None) -> dict[str, str]:
        stmt = select(BillingAccount.account_id, BillingAccount.owner_name).where(
            BillingAccount.client_id == self.client_id
        )
        if account_ids is not None:
            stmt = stmt.where(BillingAccount.account_id.in_(list(account_ids)))
        return {row.account_id: row.owner_name for row in self.session.execute(stmt)}

    # ------------------------------------------------------------------
    # Billing periods
    # ------------------------------------------------------------------

    def _periods_stmt(self, account_ids: Sequence[str] | None):
        stmt = (
            select(BillingPeriod)
            .where(BillingPeriod.client_id == self.client_id)
            .options(selectinload(BillingPeriod.allocations))
        )
        if account_ids is not None:
            stmt = stmt.where(BillingPeriod.account_id.in_(list(account_ids)))
        return stmt

    def periods(
        self,
        account_ids: Sequence[str] | None = None,
        fiscal_year: int | None = None,
        for_update: bool = False,
    ) -> list[BillingPeriod]:
        """Periods for the given accounts (all when None), oldest first per account."""
        stmt = self._periods_stmt(account_ids)
        if fiscal_year is not None:
            stmt = stmt.where(BillingPeriod.fiscal_year == fiscal_year)
        stmt = stmt.order_by(
            BillingPeriod.account_id, BillingPeriod.fiscal_year, BillingPeriod.fiscal_month
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.session.execute(stmt).scalars())

    def unpaid_periods(
        self, account_ids: Sequence[str] | None = None, for_update: bool = False
    ) -> list[BillingPeriod]:
        """Periods not yet paid, oldest first per account."""
        stmt = self._periods_stmt(account_ids).where(
            BillingPeriod.status != PeriodStatus.PAID.value
        )
        stmt = stmt.order_by(
            BillingPeriod.account_id, BillingPeriod.fiscal_year, BillingPeriod.fiscal_month
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.session.execute(stmt).scalars())

    def count_periods(
        self,
        account_ids: Sequence[str] | None = None,
        exclude_account_ids: Sequence[str] | None = None,
        status: PeriodStatus | None = None,
    ) -> int:
        stmt = select(func.count(BillingPeriod.id)).where(BillingPeriod.client_id == self.client_id)
        if account_ids is not None:
            stmt = stmt.where(BillingPeriod.account_id.in_(list(account_ids)))
        if exclude_account_ids is not None:
            stmt = stmt.where(BillingPeriod.account_id.not_in(list(exclude_account_ids)))
        if status is not None:
            stmt = stmt.where(BillingPeriod.status == status.value)
        return int(self.session.execute(stmt).scalar_one())

    def get_period(self, account_id: str, fiscal_year: int, fiscal_month: int) -> BillingPeriod | None:
        return self.session.execute(
            self._periods_stmt([account_id]).where(
                BillingPeriod.fiscal_year == fiscal_year,
                BillingPeriod.fiscal_month == fiscal_month,
            )
        ).scalar_one_or_none()

    def periods_for_month(self, fiscal_year: int, fiscal_month: int) -> list[BillingPeriod]:
        stmt = self._periods_stmt(None).where(
            BillingPeriod.fiscal_year == fiscal_year,
            BillingPeriod.fiscal_month == fiscal_month,
        )
        return list(self.session.execute(stmt.order_by(BillingPeriod.account_id)).scalars())

    def fiscal_years(self, account_ids: Sequence[str] | None = None) -> list[int]:
        stmt = select(distinct(BillingPeriod.fiscal_year)).where(
            BillingPeriod.client_id == self.client_id
        )
        if account_ids is not None:
            stmt = stmt.where(BillingPeriod.account_id.in_(list(account_ids)))
        stmt = stmt.order_by(BillingPeriod.fiscal_year)
        return list(self.session.execute(stmt).scalars())

    def accounts_with_periods(self, fiscal_year: int) -> list[str]:
        stmt = (
            select(distinct(BillingPeriod.account_id))
            .where(
                BillingPeriod.client_id == self.client_id,
                BillingPeriod.fiscal_year == fiscal_year,
            )
            .order_by(BillingPeriod.account_id)
        )
        return list(self.session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def payment_by_transaction(self, transaction_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(
                Payment.client_id == self.client_id,
                Payment.external_transaction_id == transaction_id,
            )
            .options(selectinload(Payment.allocations).selectinload(PaymentAllocation.period))
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def latest_payment_date(self, account_id: str) -> date | None:
        stmt = select(func.max(Payment.payment_date)).where(
            Payment.client_id == self.client_id,
            Payment.account_id == account_id,
            Payment.status == PaymentStatus.APPLIED.value,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def payments_for_account(self, account_id: str, include_reversed: bool = False) -> list[Payment]:
        stmt = select(Payment).where(
            Payment.client_id == self.client_id,
            Payment.account_id == account_id,
        )
        if not include_reversed:
            stmt = stmt.where(Payment.status == PaymentStatus.APPLIED.value)
        return list(
            self.session.execute(stmt.order_by(Payment.payment_date, Payment.created_at)).scalars()
        )

    # ------------------------------------------------------------------
    # Credit balances
    # ------------------------------------------------------------------

    def credit_balance(self, account_id: str, for_update: bool = False) -> CreditBalance | None:
        stmt = (
            select(CreditBalance)
            .where(
                CreditBalance.client_id == self.client_id,
                CreditBalance.account_id == account_id,
            )
            .options(selectinload(CreditBalance.history))
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def credit_balances(self, account_ids: Sequence[str] | None = None) -> dict[str, int]:
        stmt = select(CreditBalance.account_id, CreditBalance.balance).where(
            CreditBalance.client_id == self.client_id
        )
        if account_ids is not None:
            stmt = stmt.where(CreditBalance.account_id.in_(list(account_ids)))
        return {row.account_id: row.balance for row in self.session.execute(stmt)}
