"""
billing_services.aggregation_service -- Cached read model maintenance.

Responsibility:
    Builds, stores and surgically updates the per-fiscal-year aggregated
    read model.  This engine is the only writer of the cached document.

Architecture position:
    Services -- stateful orchestration over the pure builders in
    billing_engines.aggregation and the kernel selectors.

Invariants enforced:
    - Every write is a compare-and-swap:
      ``UPDATE aggregated_data SET version = v + 1 ... WHERE version = v``.
      A zero row count raises StaleCacheError; a newer version is never
      overwritten.
    - update_surgical reads only the named accounts' periods and rebuilds
      the year totals from the merged rows, so its rows equal the rows a
      full rebuild would produce.
    - rebuild_full processes accounts in chunks and persists a
      RebuildCheckpoint after each, so an interrupted rebuild resumes.
      The checkpoint is deleted once the document is written.

Failure modes:
    - StaleCacheError after the configured number of CAS retries.
    - CacheWriteError when a first insert collides with a concurrent one,
      or a checkpoint cannot be resumed.

Audit relevance:
    ``cache_rebuilt``, ``cache_surgical_update``, ``cache_cas_conflict`` and
    ``cache_drift_detected`` log records identify every cache write.
"""

from __future__ import annotations

import time
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engines.aggregation import account_drift, build_account_entry, build_document, build_totals
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import PeriodSnapshot
from billing_kernel.exceptions import CacheWriteError, StaleCacheError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.aggregated_data import (
    AggregatedDataDocument,
    RebuildCheckpoint,
    RebuildStatus,
)
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.services.penalty_service import normalize_scope

logger = get_logger("services.aggregation")


@dataclass(frozen=True)
class CachedReadModel:
    """
    One version of a client's fiscal-year read model.

    Consumers treat ``version`` as the sole staleness signal: a mismatch
    means refetch, never patch locally.
    """

    client_id: str
    fiscal_year: int
    version: int
    generated_at: str
    document: dict[str, Any]

    @property
    def accounts(self) -> dict[str, Any]:
        return self.document.get("accounts", {})

    @property
    def summary(self) -> dict[str, Any]:
        return self.document.get("summary", {})

    def account_totals(self, account_id: str) -> dict[str, int] | None:
        entry = self.accounts.get(account_id)
        return entry["totals"] if entry is not None else None

    def is_stale(self, known_version: int) -> bool:
        return known_version != self.version


@dataclass(frozen=True)
class RebuildOutcome:
    """Result of one rebuild_full call."""

    status: RebuildStatus
    checkpoint_id: UUID
    fiscal_year: int
    chunks_processed: int
    accounts_processed: int
    model: CachedReadModel | None = None
    drift: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.status == RebuildStatus.COMPLETED


@dataclass
class _Current:
    version: int
    document: dict[str, Any]


class AggregationCacheEngine:
    """
    Versioned cache of aggregated billing data for one client.

    Contract:
        Works inside the caller's session and flushes; the caller commits.
        Source documents must already carry current penalties.

    Guarantees:
        - Version numbers only increase.
        - A surgical update and a full rebuild over the same sources give
          identical rows for the updated accounts.

    Non-goals:
        - Does NOT recalculate penalties; the orchestrator does that first.
    """

    def __init__(
        self,
        session: Session,
        client_id: str,
        currency: str = "MXN",
        clock: Clock | None = None,
        chunk_size: int = 25,
        cas_retries: int = 1,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive: {chunk_size}")
        self.session = session
        self.client_id = client_id
        self._currency = currency
        self._clock = clock or SystemClock()
        self._chunk_size = chunk_size
        self._cas_retries = cas_retries
        self._selector = BillingSelector(session, client_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_aggregated_data(
        self, fiscal_year: int, account_scope: str | Collection[str] | None = None
    ) -> CachedReadModel:
        """
        Cached read model, built on first access.

        A finite ``account_scope`` returns only those accounts' rows, with
        month and summary totals recomputed over them; the version is that
        of the stored document.
        """
        current = self._read(fiscal_year)
        if current is None:
            outcome = self.rebuild_full(fiscal_year)
            model = outcome.model
        else:
            model = self._model(fiscal_year, current)

        scope = normalize_scope(account_scope) if account_scope is not None else None
        if scope is None:
            return model

        accounts = {k: v for k, v in model.accounts.items() if k in scope}
        months, summary = build_totals(accounts)
        document = dict(model.document)
        document.update(accounts=accounts, months=months, summary=summary, accountScope=scope)
        return CachedReadModel(
            client_id=model.client_id,
            fiscal_year=model.fiscal_year,
            version=model.version,
            generated_at=model.generated_at,
            document=document,
        )

    def cached_fiscal_years(self) -> list[int]:
        stmt = (
            select(AggregatedDataDocument.fiscal_year)
            .where(AggregatedDataDocument.client_id == self.client_id)
            .order_by(AggregatedDataDocument.fiscal_year)
        )
        return list(self.session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Full rebuild
    # ------------------------------------------------------------------

    def rebuild_full(
        self,
        fiscal_year: int,
        account_scope: str | Collection[str] = "all",
        chunk_size: int | None = None,
        resume_checkpoint_id: UUID | None = None,
        max_chunks: int | None = None,
    ) -> RebuildOutcome:
        """
        Rebuild the year's document from source periods.

        Args:
            fiscal_year: Year to rebuild.
            account_scope: "all" or account ids; a scoped rebuild merges
                into the existing document.
            chunk_size: Accounts per chunk (default from construction).
            resume_checkpoint_id: Continue an interrupted rebuild.
            max_chunks: Stop after this many chunks and return an
                in-progress outcome that can be resumed.
        """
        started = time.perf_counter()
        if resume_checkpoint_id is not None:
            checkpoint = self._resume(fiscal_year, resume_checkpoint_id)
            scope = checkpoint.account_scope
        else:
            scope = normalize_scope(account_scope)
            checkpoint = RebuildCheckpoint(
                client_id=self.client_id,
                fiscal_year=fiscal_year,
                status=RebuildStatus.RUNNING.value,
                account_scope=scope,
                processed_account_ids=[],
                partial_rows={},
                chunk_size=chunk_size or self._chunk_size,
                chunks_completed=0,
                started_at=self._clock.now_utc(),
            )
            self.session.add(checkpoint)
            self.session.flush()

        targets = scope if scope is not None else self._selector.accounts_with_periods(fiscal_year)
        done = set(checkpoint.processed_account_ids)
        remaining = [a for a in targets if a not in done]

        chunks_this_call = 0
        size = checkpoint.chunk_size
        while remaining:
            if max_chunks is not None and chunks_this_call >= max_chunks:
                logger.info(
                    "cache_rebuild_paused",
                    extra={
                        "fiscal_year": fiscal_year,
                        "checkpoint_id": str(checkpoint.id),
                        "accounts_remaining": len(remaining),
                    },
                )
                return RebuildOutcome(
                    status=RebuildStatus.RUNNING,
                    checkpoint_id=checkpoint.id,
                    fiscal_year=fiscal_year,
                    chunks_processed=chunks_this_call,
                    accounts_processed=len(checkpoint.processed_account_ids),
                )
            chunk, remaining = remaining[:size], remaining[size:]
            entries = self._build_entries(fiscal_year, chunk)
            checkpoint.partial_rows = {**checkpoint.partial_rows, **entries}
            checkpoint.processed_account_ids = [*checkpoint.processed_account_ids, *chunk]
            checkpoint.chunks_completed += 1
            self.session.flush()
            chunks_this_call += 1
            logger.debug(
                "cache_rebuild_chunk",
                extra={
                    "fiscal_year": fiscal_year,
                    "chunk": checkpoint.chunks_completed,
                    "accounts": len(chunk),
                },
            )

        rebuilt = dict(checkpoint.partial_rows)
        drift: dict[str, dict[str, Any]] = {}

        def compose(current: _Current | None) -> dict[str, dict[str, Any]]:
            nonlocal drift
            cached_accounts = current.document.get("accounts", {}) if current else {}
            if scope is None:
                drift = account_drift(cached_accounts, rebuilt) if current else {}
                return rebuilt
            merged = dict(cached_accounts)
            for account_id in scope:
                merged.pop(account_id, None)
            merged.update(rebuilt)
            drift = account_drift({k: cached_accounts[k] for k in scope if k in cached_accounts}, rebuilt)
            return merged

        model = self._write_with_retry(fiscal_year, compose)

        for account_id, diff in drift.items():
            logger.warning(
                "cache_drift_detected",
                extra={
                    "fiscal_year": fiscal_year,
                    "account_id": account_id,
                    "cached": diff["cached"],
                    "rebuilt": diff["rebuilt"],
                },
            )

        checkpoint_id = checkpoint.id
        chunks_completed = checkpoint.chunks_completed
        accounts_processed = len(checkpoint.processed_account_ids)
        # The document now holds the rows; a finished checkpoint is not kept.
        self.session.delete(checkpoint)
        self.session.flush()

        logger.info(
            "cache_rebuilt",
            extra={
                "fiscal_year": fiscal_year,
                "version": model.version,
                "accounts": len(model.accounts),
                "chunks": chunks_completed,
                "drifted_accounts": len(drift),
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            },
        )
        return RebuildOutcome(
            status=RebuildStatus.COMPLETED,
            checkpoint_id=checkpoint_id,
            fiscal_year=fiscal_year,
            chunks_processed=chunks_this_call,
            accounts_processed=accounts_processed,
            model=model,
            drift=drift,
        )

    def _resume(self, fiscal_year: int, checkpoint_id: UUID) -> RebuildCheckpoint:
        checkpoint = self.session.get(RebuildCheckpoint, checkpoint_id)
        if (
            checkpoint is None
            or checkpoint.client_id != self.client_id
            or checkpoint.fiscal_year != fiscal_year
            or checkpoint.status != RebuildStatus.RUNNING.value
        ):
            raise CacheWriteError(
                self.client_id, fiscal_year, f"checkpoint {checkpoint_id} cannot be resumed"
            )
        logger.info(
            "cache_rebuild_resumed",
            extra={
                "fiscal_year": fiscal_year,
                "checkpoint_id": str(checkpoint_id),
                "chunks_completed": checkpoint.chunks_completed,
            },
        )
        return checkpoint

    # ------------------------------------------------------------------
    # Surgical update
    # ------------------------------------------------------------------

    def update_surgical(
        self,
        account_ids: Sequence[str],
        periods_affected: Iterable[tuple[int, int]] | None = None,
        include_cached_years: bool = False,
    ) -> tuple[CachedReadModel, ...]:
        """
        Re-derive only the named accounts' rows and merge them in.

        Args:
            account_ids: Accounts whose source periods changed.
            periods_affected: (fiscal_year, fiscal_month) keys touched.
                Every fiscal year named is updated; when omitted, every
                year in which the accounts have periods.
            include_cached_years: Also update every cached year in which
                the accounts have periods.  Account entries carry the
                credit balance and penalties are recalculated per account,
                so a payment or reversal reaches beyond the years it paid.

        Returns:
            One CachedReadModel per updated fiscal year, oldest first.
        """
        accounts = sorted(set(account_ids))
        if periods_affected:
            years = {fy for fy, _ in periods_affected}
        else:
            years = set(self._selector.fiscal_years(accounts))
        if include_cached_years:
            cached = set(self.cached_fiscal_years())
            years |= cached & set(self._selector.fiscal_years(accounts))

        models: list[CachedReadModel] = []
        for fiscal_year in sorted(years):
            started = time.perf_counter()
            if self._read(fiscal_year) is None:
                outcome = self.rebuild_full(fiscal_year)
                models.append(outcome.model)
                continue

            entries = self._build_entries(fiscal_year, accounts)

            def compose(current: _Current | None) -> dict[str, dict[str, Any]]:
                merged = dict(current.document.get("accounts", {})) if current else {}
                for account_id in accounts:
                    merged.pop(account_id, None)
                merged.update(entries)
                return merged

            model = self._write_with_retry(fiscal_year, compose)
            models.append(model)
            logger.info(
                "cache_surgical_update",
                extra={
                    "fiscal_year": fiscal_year,
                    "accounts": accounts,
                    "version": model.version,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                },
            )
        return tuple(models)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, fiscal_year: int) -> bool:
        """Delete the year's cached document. Returns True if one existed."""
        result = self.session.execute(
            delete(AggregatedDataDocument)
            .where(
                AggregatedDataDocument.client_id == self.client_id,
                AggregatedDataDocument.fiscal_year == fiscal_year,
            )
            .execution_options(synchronize_session=False)
        )
        removed = result.rowcount > 0
        logger.info("cache_invalidated", extra={"fiscal_year": fiscal_year, "removed": removed})
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_entries(self, fiscal_year: int, account_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        periods = self._selector.periods(account_ids=list(account_ids), fiscal_year=fiscal_year)
        grouped: dict[str, list[PeriodSnapshot]] = {}
        for period in periods:
            grouped.setdefault(period.account_id, []).append(PeriodSnapshot.from_model(period))
        if not grouped:
            return {}
        owners = self._selector.owner_names(grouped)
        credits = self._selector.credit_balances(list(grouped))
        return {
            account_id: build_account_entry(
                snapshots, owners.get(account_id, ""), credits.get(account_id, 0)
            )
            for account_id, snapshots in grouped.items()
        }

    def _read(self, fiscal_year: int) -> _Current | None:
        row = self.session.execute(
            select(AggregatedDataDocument.version, AggregatedDataDocument.document).where(
                AggregatedDataDocument.client_id == self.client_id,
                AggregatedDataDocument.fiscal_year == fiscal_year,
            )
        ).one_or_none()
        if row is None:
            return None
        return _Current(version=row.version, document=row.document)

    def _model(self, fiscal_year: int, current: _Current) -> CachedReadModel:
        return CachedReadModel(
            client_id=self.client_id,
            fiscal_year=fiscal_year,
            version=current.version,
            generated_at=current.document.get("generatedAt", ""),
            document=current.document,
        )

    def _write_with_retry(self, fiscal_year: int, compose) -> CachedReadModel:
        """Read, compose the accounts map, CAS-write; retry on a version race."""
        attempt = 0
        while True:
            current = self._read(fiscal_year)
            accounts = compose(current)
            expected = current.version if current is not None else None
            try:
                return self._cas_write(fiscal_year, accounts, expected)
            except StaleCacheError:
                attempt += 1
                logger.warning(
                    "cache_cas_conflict",
                    extra={"fiscal_year": fiscal_year, "expected_version": expected, "attempt": attempt},
                )
                if attempt > self._cas_retries:
                    raise

    def _cas_write(
        self, fiscal_year: int, accounts: dict[str, dict[str, Any]], expected_version: int | None
    ) -> CachedReadModel:
        now: datetime = self._clock.now_utc()
        version = 1 if expected_version is None else expected_version + 1
        document = build_document(
            client_id=self.client_id,
            fiscal_year=fiscal_year,
            currency=self._currency,
            accounts=accounts,
            version=version,
            generated_at=now.isoformat(),
        )

        if expected_version is None:
            try:
                self.session.execute(
                    insert(AggregatedDataDocument).values(
                        client_id=self.client_id,
                        fiscal_year=fiscal_year,
                        version=version,
                        document=document,
                        generated_at=now,
                    )
                )
            except IntegrityError as exc:
                raise CacheWriteError(
                    self.client_id, fiscal_year, "document created concurrently"
                ) from exc
        else:
            result = self.session.execute(
                update(AggregatedDataDocument)
                .where(
                    AggregatedDataDocument.client_id == self.client_id,
                    AggregatedDataDocument.fiscal_year == fiscal_year,
                    AggregatedDataDocument.version == expected_version,
                )
                .values(version=version, document=document, generated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleCacheError(self.client_id, fiscal_year, expected_version)

        return CachedReadModel(
            client_id=self.client_id,
            fiscal_year=fiscal_year,
            version=version,
            generated_at=document["generatedAt"],
            document=document,
        )
