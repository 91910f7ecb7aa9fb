"""
NightlyMaintenance -- full-scope penalty recalculation and cache reconciliation.

Contract:
    1. ``recalculate("all", as_of_date)`` in one transaction.
    2. ``rebuild_full`` for every fiscal year, each in its own transaction.
       The cache engine compares cached and rebuilt account totals and logs
       ``cache_drift_detected`` for every account that differed, so drift
       left by a failed surgical update is both healed and visible.

Architecture: billing_batch (top-level).  Runs outside the request path.

Failure modes:
    A failing year is logged (``nightly_rebuild_failed``) and reported; the
    remaining years still run.  A failing recalculation aborts the run.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from billing_config.bridges import build_penalty_policy
from billing_config.schema import ClientBillingConfig
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import RecalcResult
from billing_kernel.exceptions import BillingKernelError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.services.penalty_service import PenaltyRecalculationService
from billing_services.aggregation_service import AggregationCacheEngine

logger = get_logger("batch.nightly")


@dataclass(frozen=True)
class NightlyReport:
    as_of_date: date
    recalc: RecalcResult
    versions: dict[int, int] = field(default_factory=dict)
    drifted_accounts: dict[int, list[str]] = field(default_factory=dict)
    failed_years: dict[int, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def is_clean(self) -> bool:
        return not self.failed_years

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of_date": self.as_of_date.isoformat(),
            "recalc": self.recalc.to_dict(),
            "versions": {str(k): v for k, v in self.versions.items()},
            "drifted_accounts": {str(k): v for k, v in self.drifted_accounts.items()},
            "failed_years": {str(k): v for k, v in self.failed_years.items()},
            "duration_ms": self.duration_ms,
        }


class NightlyMaintenance:
    """Nightly batch for one client."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: ClientBillingConfig,
        clock: Clock | None = None,
    ):
        self._factory = session_factory
        self._config = config
        self._clock = clock or SystemClock()

    def run(self, as_of_date: date | None = None, fiscal_years: Sequence[int] | None = None) -> NightlyReport:
        client_id = self._config.client_id
        as_of = as_of_date or self._clock.today(self._config.timezone)
        started = time.perf_counter()

        with LogContext.bind(client_id=client_id, actor_id="nightly"):
            logger.info("nightly_started", extra={"as_of_date": as_of.isoformat()})

            with session_scope(self._factory) as session:
                service = PenaltyRecalculationService(
                    session, client_id, build_penalty_policy(self._config), self._clock
                )
                recalc = service.recalculate("all", as_of)
                years = list(fiscal_years) if fiscal_years else BillingSelector(session, client_id).fiscal_years()

            versions: dict[int, int] = {}
            drifted: dict[int, list[str]] = {}
            failed: dict[int, str] = {}
            for fiscal_year in years:
                try:
                    with session_scope(self._factory) as session:
                        outcome = AggregationCacheEngine(
                            session,
                            client_id,
                            currency=self._config.currency,
                            clock=self._clock,
                            chunk_size=self._config.cache.rebuild_chunk_size,
                            cas_retries=self._config.cache.surgical_cas_retries,
                        ).rebuild_full(fiscal_year)
                except (BillingKernelError, SQLAlchemyError) as exc:
                    logger.error(
                        "nightly_rebuild_failed",
                        extra={"fiscal_year": fiscal_year, "error": str(exc)},
                        exc_info=True,
                    )
                    failed[fiscal_year] = str(exc)
                    continue
                versions[fiscal_year] = outcome.model.version
                if outcome.drift:
                    drifted[fiscal_year] = sorted(outcome.drift)

            report = NightlyReport(
                as_of_date=as_of,
                recalc=recalc,
                versions=versions,
                drifted_accounts=drifted,
                failed_years=failed,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
            )
            logger.info("nightly_completed", extra=report.to_dict())
            return report
