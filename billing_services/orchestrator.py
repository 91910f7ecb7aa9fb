"""
billing_services.orchestrator -- Billing operation sequencing.

Responsibility:
    The operations exposed to collaborators: read the cached aggregated
    data, record a payment, delete (reverse) a payment, recalculate
    penalties, rebuild the cache, generate bills and purge a period.  Each
    operation owns its transaction boundaries and returns a BillingResult
    instead of raising for validation or consistency failures.

Architecture position:
    Services -- composes kernel services, the aggregation cache engine,
    the ledger gateway and the client configuration.

Sequencing:
    1. Source mutation (payment service / penalty service) in one
       transaction, committed first.
    2. Surgical cache update in a second transaction.  A failure here is a
       PARTIAL_FAILURE: the committed mutation stands and the next rebuild
       heals the cache.

Failure modes:
    - VALIDATION_ERROR and CONSISTENCY_ERROR: nothing was written.
    - FAILED: infrastructure failure before the source mutation committed.
    - PARTIAL_FAILURE: source mutation committed, cache update failed.
    - STALE_CACHE: a cache-only operation lost the compare-and-swap race
      after retrying.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from billing_config.bridges import build_fiscal_calendar, build_penalty_policy
from billing_config.schema import ClientBillingConfig
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.ledger import LedgerGateway
from billing_kernel.domain.values import Money
from billing_kernel.exceptions import (
    BillingKernelError,
    ConsistencyError,
    CurrencyError,
    StaleCacheError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.billing_service import BillingService, MeterReading
from billing_kernel.services.payment_service import PaymentService
from billing_kernel.services.penalty_service import PenaltyRecalculationService, normalize_scope
from billing_services.aggregation_service import AggregationCacheEngine

logger = get_logger("services.orchestrator")

T = TypeVar("T")


class BillingStatus(str, Enum):
    """Outcome of an orchestrated billing operation."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    VALIDATION_ERROR = "validation_error"
    CONSISTENCY_ERROR = "consistency_error"
    STALE_CACHE = "stale_cache"
    FAILED = "failed"


@dataclass(frozen=True)
class BillingResult:
    """Result of an orchestrated billing operation."""

    status: BillingStatus
    data: dict[str, Any] | None = None
    error_code: str | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    cache_versions: dict[int, int] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.status == BillingStatus.SUCCESS

    @property
    def mutation_committed(self) -> bool:
        return self.status in (BillingStatus.SUCCESS, BillingStatus.PARTIAL_FAILURE)


_STATUS_FOR_ERROR: tuple[tuple[type[Exception], BillingStatus], ...] = (
    (ValidationError, BillingStatus.VALIDATION_ERROR),
    (CurrencyError, BillingStatus.VALIDATION_ERROR),
    (ConsistencyError, BillingStatus.CONSISTENCY_ERROR),
    (StaleCacheError, BillingStatus.STALE_CACHE),
)


def _error_details(exc: BillingKernelError) -> dict[str, Any]:
    return {
        k: (v if isinstance(v, (int, str, list, type(None))) else str(v))
        for k, v in vars(exc).items()
        if not k.startswith("_")
    }


def result_from_error(exc: Exception) -> BillingResult:
    """Map an exception onto a BillingResult status."""
    if isinstance(exc, BillingKernelError):
        status = BillingStatus.FAILED
        for error_type, mapped in _STATUS_FOR_ERROR:
            if isinstance(exc, error_type):
                status = mapped
                break
        return BillingResult(
            status=status, error_code=exc.code, message=str(exc), details=_error_details(exc)
        )
    return BillingResult(
        status=BillingStatus.FAILED, error_code="STORAGE_ERROR", message=str(exc)
    )


class BillingOrchestrator:
    """
    Entry point for billing operations of one client.

    Contract:
        Receives a session factory, the client's configuration, the ledger
        gateway and a clock.  "Today" is derived from the clock in the
        client's timezone only here; kernel services always receive
        explicit dates.

    Guarantees:
        - Validation and consistency failures never raise; they come back
          as VALIDATION_ERROR / CONSISTENCY_ERROR with nothing written.
        - A cache failure after a committed payment never loses the
          payment.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: ClientBillingConfig,
        ledger: LedgerGateway,
        clock: Clock | None = None,
    ):
        self._factory = session_factory
        self._config = config
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._calendar = build_fiscal_calendar(config)
        self._policy = build_penalty_policy(config)

    @property
    def client_id(self) -> str:
        return self._config.client_id

    def today(self) -> date:
        return self._clock.today(self._config.timezone)

    # ------------------------------------------------------------------
    # Service construction
    # ------------------------------------------------------------------

    def _payments(self, session: Session) -> PaymentService:
        return PaymentService(
            session,
            self.client_id,
            self._policy,
            self._ledger,
            clock=self._clock,
            use_credit_balance=self._config.payments.use_credit_balance,
            calendar=self._calendar,
        )

    def _penalties(self, session: Session) -> PenaltyRecalculationService:
        return PenaltyRecalculationService(session, self.client_id, self._policy, self._clock)

    def _cache(self, session: Session) -> AggregationCacheEngine:
        return AggregationCacheEngine(
            session,
            self.client_id,
            currency=self._config.currency,
            clock=self._clock,
            chunk_size=self._config.cache.rebuild_chunk_size,
            cas_retries=self._config.cache.surgical_cas_retries,
        )

    def _billing(self, session: Session) -> BillingService:
        return BillingService(
            session, self.client_id, self._calendar, self._clock, currency=self._config.currency
        )

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    def _run(self, operation: str, work: Callable[[Session], T]) -> T | BillingResult:
        """Run ``work`` in one transaction; map failures to a BillingResult."""
        try:
            with session_scope(self._factory) as session:
                return work(session)
        except (BillingKernelError, SQLAlchemyError) as exc:
            result = result_from_error(exc)
            log = logger.error if result.status == BillingStatus.FAILED else logger.warning
            log(
                f"{operation}_rejected",
                extra={"status": result.status.value, "error_code": result.error_code, "error": str(exc)},
            )
            return result

    def _refresh_cache(
        self,
        account_ids: Sequence[str],
        periods: Sequence[tuple[int, int]],
        include_cached_years: bool = False,
    ) -> tuple[dict[int, int], BillingResult | None]:
        """Surgical update after commit.  Returns (versions, failure)."""
        try:
            with session_scope(self._factory) as session:
                models = self._cache(session).update_surgical(
                    account_ids, periods, include_cached_years=include_cached_years
                )
            return {m.fiscal_year: m.version for m in models}, None
        except (BillingKernelError, SQLAlchemyError) as exc:
            logger.error(
                "cache_update_failed",
                extra={"accounts": list(account_ids), "error": str(exc)},
                exc_info=True,
            )
            failure = result_from_error(exc)
            return {}, failure

    @staticmethod
    def _committed(
        data: dict[str, Any], versions: dict[int, int], failure: BillingResult | None
    ) -> BillingResult:
        if failure is None:
            return BillingResult(status=BillingStatus.SUCCESS, data=data, cache_versions=versions)
        return BillingResult(
            status=BillingStatus.PARTIAL_FAILURE,
            data=data,
            error_code=failure.error_code,
            message=f"Source mutation committed; cache update failed: {failure.message}",
            details=failure.details,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_aggregated_data(
        self, fiscal_year: int, account_scope: str | Collection[str] | None = None
    ) -> BillingResult:
        with LogContext.bind(correlation_id=str(uuid4()), client_id=self.client_id):
            outcome = self._run(
                "get_aggregated_data",
                lambda s: self._cache(s).get_aggregated_data(fiscal_year, account_scope),
            )
            if isinstance(outcome, BillingResult):
                return outcome
            return BillingResult(
                status=BillingStatus.SUCCESS,
                data=outcome.document,
                cache_versions={outcome.fiscal_year: outcome.version},
            )

    def record_payment(
        self,
        account_id: str,
        amount: int | Money,
        payment_date: date,
        as_of_date: date | None = None,
        periods_oldest_first: Sequence[tuple[int, int]] | None = None,
        payment_method: str = "cash",
        reference: str = "",
        notes: str = "",
    ) -> BillingResult:
        """
        Apply a payment, recalculate the account's penalties and update the
        cache for that account.

        ``as_of_date`` defaults to today in the client's timezone, or the
        payment date when that is later.
        """
        as_of = as_of_date
        if as_of is None and isinstance(payment_date, date) and not isinstance(payment_date, datetime):
            as_of = max(self.today(), payment_date)
        with LogContext.bind(
            correlation_id=str(uuid4()), client_id=self.client_id, account_id=account_id
        ):
            started = time.perf_counter()
            outcome = self._run(
                "record_payment",
                lambda s: self._payments(s).apply_payment(
                    account_id,
                    amount,
                    payment_date,
                    periods_oldest_first=periods_oldest_first,
                    as_of_date=as_of,
                    payment_method=payment_method,
                    reference=reference,
                    notes=notes,
                ),
            )
            if isinstance(outcome, BillingResult):
                return outcome

            periods = list(outcome.periods_touched) or [
                (self._calendar.fiscal_year_for_date(payment_date), 0)
            ]
            versions, failure = self._refresh_cache([account_id], periods, include_cached_years=True)
            logger.info(
                "record_payment_completed",
                extra={
                    "transaction_id": outcome.external_transaction_id,
                    "cache_updated": failure is None,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                },
            )
            return self._committed(outcome.to_dict(), versions, failure)

    def delete_payment(self, external_transaction_id: str, as_of_date: date | None = None) -> BillingResult:
        """Reverse a payment exactly, delete its ledger transaction, update the cache."""
        as_of = as_of_date or self.today()
        with LogContext.bind(
            correlation_id=str(uuid4()),
            client_id=self.client_id,
            transaction_id=external_transaction_id,
        ):

            def work(session: Session):
                reversal = self._payments(session).reverse_payment(external_transaction_id, as_of)
                self._ledger.delete_transaction(external_transaction_id)
                return reversal

            outcome = self._run("delete_payment", work)
            if isinstance(outcome, BillingResult):
                return outcome

            periods = list(outcome.periods_restored) or [
                (self._calendar.fiscal_year_for_date(as_of), 0)
            ]
            versions, failure = self._refresh_cache(
                [outcome.account_id], periods, include_cached_years=True
            )
            return self._committed(outcome.to_dict(), versions, failure)

    def recalculate_penalties(
        self, scope: str | Collection[str] = "all", as_of_date: date | None = None
    ) -> BillingResult:
        """
        Recalculate penalties.  A finite scope is followed by a surgical
        update of the touched accounts; "all" by a rebuild of every cached
        fiscal year.
        """
        as_of = as_of_date or self.today()
        with LogContext.bind(correlation_id=str(uuid4()), client_id=self.client_id):
            outcome = self._run(
                "recalculate_penalties", lambda s: self._penalties(s).recalculate(scope, as_of)
            )
            if isinstance(outcome, BillingResult):
                return outcome

            if normalize_scope(scope) is not None:
                if not outcome.account_ids_touched:
                    return BillingResult(status=BillingStatus.SUCCESS, data=outcome.to_dict())
                versions, failure = self._refresh_cache(list(outcome.account_ids_touched), [])
                return self._committed(outcome.to_dict(), versions, failure)

            rebuilt_versions: dict[int, int] = {}
            rebuild_failure: BillingResult | None = None
            try:
                with session_scope(self._factory) as session:
                    cache = self._cache(session)
                    for fiscal_year in cache.cached_fiscal_years():
                        rebuilt = cache.rebuild_full(fiscal_year)
                        rebuilt_versions[fiscal_year] = rebuilt.model.version
            except (BillingKernelError, SQLAlchemyError) as exc:
                logger.error("cache_update_failed", extra={"error": str(exc)}, exc_info=True)
                rebuild_failure = result_from_error(exc)
                rebuilt_versions = {}
            return self._committed(outcome.to_dict(), rebuilt_versions, rebuild_failure)

    def rebuild_cache(
        self,
        fiscal_year: int,
        account_scope: str | Collection[str] = "all",
        max_chunks: int | None = None,
        resume_checkpoint_id: UUID | None = None,
    ) -> BillingResult:
        with LogContext.bind(correlation_id=str(uuid4()), client_id=self.client_id):
            outcome = self._run(
                "rebuild_cache",
                lambda s: self._cache(s).rebuild_full(
                    fiscal_year,
                    account_scope,
                    resume_checkpoint_id=resume_checkpoint_id,
                    max_chunks=max_chunks,
                ),
            )
            if isinstance(outcome, BillingResult):
                return outcome
            data: dict[str, Any] = {
                "status": outcome.status.value,
                "checkpoint_id": str(outcome.checkpoint_id),
                "fiscal_year": fiscal_year,
                "chunks_processed": outcome.chunks_processed,
                "accounts_processed": outcome.accounts_processed,
                "drifted_accounts": sorted(outcome.drift),
            }
            versions = {}
            if outcome.model is not None:
                data["version"] = outcome.model.version
                versions = {fiscal_year: outcome.model.version}
            return BillingResult(status=BillingStatus.SUCCESS, data=data, cache_versions=versions)

    def generate_bills(
        self, fiscal_year: int, fiscal_month: int, readings: Sequence[MeterReading]
    ) -> BillingResult:
        rates = self._config.rates
        with LogContext.bind(correlation_id=str(uuid4()), client_id=self.client_id):
            outcome = self._run(
                "generate_bills",
                lambda s: self._billing(s).generate_bills(
                    fiscal_year,
                    fiscal_month,
                    readings,
                    rate_per_unit=rates.rate_per_unit,
                    minimum_charge=rates.minimum_charge,
                ),
            )
            if isinstance(outcome, BillingResult):
                return outcome
            data = {
                "fiscal_year": outcome.fiscal_year,
                "fiscal_month": outcome.fiscal_month,
                "bill_date": outcome.bill_date.isoformat(),
                "due_date": outcome.due_date.isoformat(),
                "created": list(outcome.created),
                "skipped_zero_charge": list(outcome.skipped_zero_charge),
                "total_billed": outcome.total_billed,
            }
            if not outcome.created:
                return BillingResult(status=BillingStatus.SUCCESS, data=data)
            versions, failure = self._refresh_cache(
                list(outcome.created), [(outcome.fiscal_year, outcome.fiscal_month)]
            )
            return self._committed(data, versions, failure)

    def purge_period(self, fiscal_year: int, fiscal_month: int) -> BillingResult:
        """Delete a fiscal month's periods and the year's cached document with them."""
        with LogContext.bind(correlation_id=str(uuid4()), client_id=self.client_id):

            def work(session: Session) -> int:
                deleted = self._billing(session).purge_period(fiscal_year, fiscal_month)
                self._cache(session).invalidate(fiscal_year)
                return deleted

            outcome = self._run("purge_period", work)
            if isinstance(outcome, BillingResult):
                return outcome
            return BillingResult(
                status=BillingStatus.SUCCESS,
                data={"fiscal_year": fiscal_year, "fiscal_month": fiscal_month, "deleted": outcome},
            )
