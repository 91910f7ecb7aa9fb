"""
billing_ingestion.importer -- Historical bill and credit balance import.

Responsibility:
    Validates each historical record independently and writes the valid
    ones through the kernel services.  Money arrives as decimal strings in
    major units and is converted to integer minor units exactly once, here.

Rules:
    - bill_date and due_date must be explicit ISO dates.  A missing date is
      a record error; nothing defaults to the import date.
    - A historical paid amount becomes a Payment (method "import") with one
      allocation, so paid_amount == sum(allocations) holds for imported
      periods too.
    - An existing period is skipped, not overwritten.

Failure modes:
    Per-record problems are collected as ImportRecordError in the report
    and never abort the batch.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from billing_engines.allocation import split_base_penalty
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import PeriodSnapshot
from billing_kernel.domain.fiscal_calendar import FiscalCalendar, FiscalPeriodKey
from billing_kernel.domain.values import Money
from billing_kernel.exceptions import BillingKernelError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.billing_period import BillingPeriod
from billing_kernel.models.payment import Payment, PaymentAllocation, PaymentStatus
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.services.billing_service import BillingService
from billing_kernel.services.credit_service import CreditBalanceService

logger = get_logger("ingestion.importer")


@dataclass(frozen=True)
class ImportRecordError:
    """Why one source record was rejected."""

    index: int
    account_id: str | None
    field: str | None
    message: str


@dataclass(frozen=True)
class ImportReport:
    imported: int = 0
    skipped: int = 0
    errors: tuple[ImportRecordError, ...] = field(default=())

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class _RecordInvalid(Exception):
    def __init__(self, field: str | None, message: str):
        self.field = field
        self.message = message
        super().__init__(message)


def _required(record: Mapping[str, Any], name: str) -> Any:
    value = record.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise _RecordInvalid(name, f"{name} is required")
    return value


def _iso_date(record: Mapping[str, Any], name: str) -> date:
    value = _required(record, name)
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise _RecordInvalid(name, f"{name} is not an ISO date: {value!r}") from exc


def _int(record: Mapping[str, Any], name: str, default: int | None = None) -> int | None:
    value = record.get(name)
    if value is None or value == "":
        return default
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise _RecordInvalid(name, f"{name} is not an integer: {value!r}") from exc


class HistoricalBillImporter:
    """
    Import historical periods and credit balances for one client.

    Contract:
        Works inside the caller's session; flushes, never commits.
    """

    def __init__(
        self,
        session: Session,
        client_id: str,
        calendar: FiscalCalendar,
        currency: str = "MXN",
        clock: Clock | None = None,
    ):
        self.session = session
        self.client_id = client_id
        self._currency = currency
        self._clock = clock or SystemClock()
        self._selector = BillingSelector(session, client_id)
        self._billing = BillingService(session, client_id, calendar, self._clock, currency=currency)
        self._credit = CreditBalanceService(session, client_id, self._clock)

    def _money(self, record: Mapping[str, Any], name: str, required: bool = False) -> int:
        value = _required(record, name) if required else record.get(name)
        if value is None or value == "":
            return 0
        try:
            minor = Money.from_decimal(str(value), self._currency).minor_units
        except BillingKernelError as exc:
            raise _RecordInvalid(name, str(exc)) from exc
        if minor < 0:
            raise _RecordInvalid(name, f"{name} cannot be negative")
        return minor

    def import_periods(self, records: Iterable[Mapping[str, Any]]) -> ImportReport:
        """
        Import historical billing periods.

        Record keys: account_id, fiscal_year, fiscal_month, bill_date,
        due_date, base_charge; optional owner_name, consumption,
        penalty_amount, paid_amount, paid_date, transaction_id.
        """
        imported = skipped = 0
        errors: list[ImportRecordError] = []

        for index, record in enumerate(records):
            account_id = record.get("account_id")
            try:
                if self._import_period(record):
                    imported += 1
                else:
                    skipped += 1
            except _RecordInvalid as exc:
                errors.append(ImportRecordError(index, account_id, exc.field, exc.message))
            except BillingKernelError as exc:
                errors.append(ImportRecordError(index, account_id, None, str(exc)))

        report = ImportReport(imported=imported, skipped=skipped, errors=tuple(errors))
        logger.info(
            "historical_periods_imported",
            extra={"imported": imported, "skipped": skipped, "errors": len(errors)},
        )
        for error in errors:
            logger.warning(
                "import_record_rejected",
                extra={"index": error.index, "account_id": error.account_id, "reason": error.message},
            )
        return report

    def _import_period(self, record: Mapping[str, Any]) -> bool:
        account_id = str(_required(record, "account_id"))
        fiscal_year = _int(record, "fiscal_year")
        fiscal_month = _int(record, "fiscal_month")
        if fiscal_year is None or fiscal_month is None:
            raise _RecordInvalid("fiscal_month", "fiscal_year and fiscal_month are required")
        key = FiscalPeriodKey(fiscal_year, fiscal_month)
        bill_date = _iso_date(record, "bill_date")
        due_date = _iso_date(record, "due_date")
        if due_date < bill_date:
            raise _RecordInvalid("due_date", "due_date precedes bill_date")

        base_charge = self._money(record, "base_charge", required=True)
        penalty = self._money(record, "penalty_amount")
        paid = self._money(record, "paid_amount")
        if paid > base_charge + penalty:
            raise _RecordInvalid("paid_amount", "paid_amount exceeds base_charge + penalty_amount")
        paid_date = _iso_date(record, "paid_date") if paid else None

        if self._selector.get_period(account_id, key.fiscal_year, key.fiscal_month) is not None:
            return False

        self._billing.ensure_account(account_id, owner_name=str(record.get("owner_name") or ""))
        period = self._billing.create_period(
            account_id,
            key.fiscal_year,
            key.fiscal_month,
            base_charge,
            consumption=_int(record, "consumption"),
            bill_date=bill_date,
            due_date=due_date,
            source="import",
        )
        period.penalty_amount = penalty

        if paid:
            self._record_historical_payment(period, paid, paid_date, record.get("transaction_id"))
        period.refresh_status()
        self.session.flush()
        return True

    def _record_historical_payment(
        self, period: BillingPeriod, paid: int, paid_date: date, transaction_id: Any
    ) -> None:
        base, penalty = split_base_penalty(paid, PeriodSnapshot.from_model(period))
        transaction_id = str(transaction_id) if transaction_id else (
            f"IMPORT-{period.account_id}-{FiscalPeriodKey(period.fiscal_year, period.fiscal_month)}"
        )
        payment = Payment(
            client_id=self.client_id,
            account_id=period.account_id,
            currency=period.currency,
            amount=paid,
            payment_date=paid_date,
            external_transaction_id=transaction_id,
            status=PaymentStatus.APPLIED.value,
            payment_method="import",
            notes="historical import",
        )
        self.session.add(payment)
        allocation = PaymentAllocation(
            payment=payment,
            period=period,
            sequence=period.next_allocation_sequence(),
            amount_applied=paid,
            base_charge_portion=base,
            penalty_portion=penalty,
            credit_balance_delta=0,
            payment_date=paid_date,
            external_transaction_id=transaction_id,
        )
        self.session.add(allocation)
        period.paid_amount = paid

    def import_credit_balances(self, records: Iterable[Mapping[str, Any]]) -> ImportReport:
        """
        Import opening credit balances.

        Record keys: account_id, balance (decimal string); optional note.
        An account that already has credit history is skipped.
        """
        imported = skipped = 0
        errors: list[ImportRecordError] = []
        for index, record in enumerate(records):
            account_id = record.get("account_id")
            try:
                account_id = str(_required(record, "account_id"))
                amount = self._money(record, "balance", required=True)
                if self._selector.get_account(account_id) is None:
                    raise _RecordInvalid("account_id", f"unknown account {account_id}")
                if self._credit.get_history(account_id) or amount == 0:
                    skipped += 1
                    continue
                self._credit.apply_delta(
                    account_id, amount, source="import", note=str(record.get("note") or "opening balance")
                )
                imported += 1
            except _RecordInvalid as exc:
                errors.append(ImportRecordError(index, account_id, exc.field, exc.message))
            except BillingKernelError as exc:
                errors.append(ImportRecordError(index, account_id, None, str(exc)))

        logger.info(
            "historical_credit_imported",
            extra={"imported": imported, "skipped": skipped, "errors": len(errors)},
        )
        return ImportReport(imported=imported, skipped=skipped, errors=tuple(errors))
