"""
BillingService -- accounts, bill generation and period purge.

Responsibility:
    Creates accounts and billing periods.  Bill and due dates always come
    from the fiscal calendar for the billed period, never from the clock.

Architecture position:
    Kernel > Services -- imperative shell.  Rates arrive as plain integers
    from the caller; the kernel does not read client configuration.

Invariants enforced:
    - One period per (account, fiscal_year, fiscal_month); a duplicate is
      rejected before any period of the batch is written.
    - A period with payment allocations is never purged.

Failure modes:
    - DuplicatePeriodError, AccountNotFoundError, InvalidAmountError.
    - PeriodHasPaymentsError from purge_period.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock
from billing_kernel.domain.dtos import PeriodStatus
from billing_kernel.domain.fiscal_calendar import FiscalCalendar, FiscalPeriodKey
from billing_kernel.exceptions import (
    AccountNotFoundError,
    DuplicatePeriodError,
    InvalidAmountError,
    PeriodHasPaymentsError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.account import BillingAccount
from billing_kernel.models.billing_period import BillingPeriod
from billing_kernel.services.base import BaseService

logger = get_logger("services.billing")


@dataclass(frozen=True)
class MeterReading:
    """Prior and current meter reading for one account."""

    account_id: str
    prior_reading: int
    current_reading: int

    @property
    def consumption(self) -> int:
        return self.current_reading - self.prior_reading


@dataclass(frozen=True)
class BillGenerationResult:
    fiscal_year: int
    fiscal_month: int
    bill_date: date
    due_date: date
    created: tuple[str, ...]
    skipped_zero_charge: tuple[str, ...]
    total_billed: int


class BillingService(BaseService):
    """Writes accounts and billing periods for one client."""

    def __init__(
        self,
        session: Session,
        client_id: str,
        calendar: FiscalCalendar,
        clock: Clock | None = None,
        currency: str = "MXN",
    ):
        super().__init__(session, client_id, clock)
        self._calendar = calendar
        self._currency = currency

    def ensure_account(
        self, account_id: str, owner_name: str = "", is_active: bool = True
    ) -> BillingAccount:
        account = self._selector.get_account(account_id)
        if account is not None:
            return account
        account = BillingAccount(
            client_id=self.client_id,
            account_id=account_id,
            owner_name=owner_name,
            currency=self._currency,
            is_active=is_active,
        )
        self.session.add(account)
        self.session.flush()
        logger.info("account_created", extra={"account_id": account_id})
        return account

    def create_period(
        self,
        account_id: str,
        fiscal_year: int,
        fiscal_month: int,
        base_charge: int,
        consumption: int | None = None,
        bill_date: date | None = None,
        due_date: date | None = None,
        prior_reading: int | None = None,
        current_reading: int | None = None,
        source: str = "generated",
    ) -> BillingPeriod:
        """
        Create one billing period.

        bill_date/due_date default to the fiscal calendar's boundaries for
        the period.  An explicit None due date is only possible through the
        historical importer, which passes dates explicitly.
        """
        key = FiscalPeriodKey(fiscal_year, fiscal_month)
        if isinstance(base_charge, bool) or not isinstance(base_charge, int) or base_charge < 0:
            raise InvalidAmountError(base_charge, "base_charge must be a non-negative integer")
        if self._selector.get_account(account_id) is None:
            raise AccountNotFoundError(account_id, self.client_id)
        if self._selector.get_period(account_id, key.fiscal_year, key.fiscal_month) is not None:
            raise DuplicatePeriodError(account_id, key.fiscal_year, key.fiscal_month)

        boundaries = self._calendar.period_boundaries(key.fiscal_year, key.fiscal_month)
        period = BillingPeriod(
            client_id=self.client_id,
            account_id=account_id,
            fiscal_year=key.fiscal_year,
            fiscal_month=key.fiscal_month,
            bill_date=bill_date or boundaries.bill_date,
            due_date=due_date if due_date is not None or source == "import" else boundaries.due_date,
            currency=self._currency,
            base_charge=base_charge,
            penalty_amount=0,
            paid_amount=0,
            consumption=consumption,
            prior_reading=prior_reading,
            current_reading=current_reading,
            status=PeriodStatus.UNPAID.value,
            source=source,
        )
        period.refresh_status()
        self.session.add(period)
        self.session.flush()
        return period

    def generate_bills(
        self,
        fiscal_year: int,
        fiscal_month: int,
        readings: Sequence[MeterReading],
        rate_per_unit: int,
        minimum_charge: int = 0,
    ) -> BillGenerationResult:
        """
        Bill one fiscal month from meter readings.

        charge = max(consumption * rate_per_unit, minimum_charge); a period
        is created only when the charge is positive.
        """
        key = FiscalPeriodKey(fiscal_year, fiscal_month)
        for reading in readings:
            if reading.consumption < 0:
                raise InvalidAmountError(
                    reading.consumption, f"negative consumption for {reading.account_id}"
                )
            if self._selector.get_account(reading.account_id) is None:
                raise AccountNotFoundError(reading.account_id, self.client_id)
            if self._selector.get_period(reading.account_id, key.fiscal_year, key.fiscal_month):
                raise DuplicatePeriodError(reading.account_id, key.fiscal_year, key.fiscal_month)

        boundaries = self._calendar.period_boundaries(key.fiscal_year, key.fiscal_month)
        created: list[str] = []
        skipped: list[str] = []
        total = 0
        for reading in readings:
            charge = max(reading.consumption * rate_per_unit, minimum_charge)
            if charge <= 0:
                skipped.append(reading.account_id)
                continue
            self.create_period(
                reading.account_id,
                key.fiscal_year,
                key.fiscal_month,
                charge,
                consumption=reading.consumption,
                prior_reading=reading.prior_reading,
                current_reading=reading.current_reading,
            )
            created.append(reading.account_id)
            total += charge

        logger.info(
            "bills_generated",
            extra={
                "period": str(key),
                "created_count": len(created),
                "skipped_zero_charge": len(skipped),
                "total_billed": total,
            },
        )
        return BillGenerationResult(
            fiscal_year=key.fiscal_year,
            fiscal_month=key.fiscal_month,
            bill_date=boundaries.bill_date,
            due_date=boundaries.due_date,
            created=tuple(created),
            skipped_zero_charge=tuple(skipped),
            total_billed=total,
        )

    def purge_period(self, fiscal_year: int, fiscal_month: int) -> int:
        """
        Delete every account's period for one fiscal month.

        Raises:
            PeriodHasPaymentsError: If any of the periods has allocations.
        """
        key = FiscalPeriodKey(fiscal_year, fiscal_month)
        periods = self._selector.periods_for_month(key.fiscal_year, key.fiscal_month)
        with_payments = [p.account_id for p in periods if p.allocations]
        if with_payments:
            raise PeriodHasPaymentsError(key.fiscal_year, key.fiscal_month, with_payments)

        for period in periods:
            self.session.delete(period)
        self.session.flush()
        logger.warning("billing_period_purged", extra={"period": str(key), "deleted": len(periods)})
        return len(periods)
