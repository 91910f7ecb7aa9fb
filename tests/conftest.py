"""
Pytest fixtures for the billing test suite.

Provides:
- An in-memory SQLite engine with every billing table (one per test)
- Session and session-factory fixtures
- A deterministic clock, a test client configuration and its derived
  calendar / penalty policy
- Seeding helpers for accounts and billing periods
- ``captured_logs`` for asserting on structured log records

Environment Variables:
- DATABASE_URL: run the suite against another database (e.g. PostgreSQL).
  Defaults to in-memory SQLite.
"""

import json
import logging
import os
from datetime import UTC, date, datetime
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy.orm import Session, sessionmaker

from billing_config.bridges import build_fiscal_calendar, build_penalty_policy
from billing_config.schema import (
    CacheTerms,
    ClientBillingConfig,
    PaymentTerms,
    PenaltyTerms,
    RateTerms,
)
from billing_kernel.db.engine import build_engine, create_tables, drop_tables
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.services.billing_service import BillingService
from billing_kernel.services.credit_service import CreditBalanceService
from billing_kernel.services.payment_service import PaymentService
from billing_kernel.services.penalty_service import PenaltyRecalculationService
from billing_services.aggregation_service import AggregationCacheEngine
from billing_services.ledger_gateway import InMemoryLedgerGateway
from billing_services.orchestrator import BillingOrchestrator

CLIENT_ID = "TEST"

# 2025-10-20 10:00 in America/Cancun (UTC-5).
FIXED_NOW = datetime(2025, 10, 20, 15, 0, 0, tzinfo=UTC)
TODAY = date(2025, 10, 20)

# With a July fiscal-year start, October 2025 is FY2026 month 3, due 2025-10-10.
FY = 2026
OCT = 3


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", "sqlite://")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, payments):
            payments.apply_payment(...)
            assert any(r["message"] == "payment_applied" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    eng = build_engine(get_database_url())
    create_tables(eng)
    yield eng
    drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """A session whose work is rolled back after the test."""
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Time and configuration
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(FIXED_NOW)


def make_config(**overrides) -> ClientBillingConfig:
    """Test configuration: July fiscal start, due day 10, 5% per cycle, no grace."""
    values = dict(
        client_id=CLIENT_ID,
        name="Test Water Client",
        currency="MXN",
        timezone="America/Cancun",
        fiscal_year_start_month=7,
        due_day=10,
        penalty=PenaltyTerms(rate=Decimal("0.05"), grace_days=0, compounding=True),
        rates=RateTerms(rate_per_unit=5000, minimum_charge=0),
        payments=PaymentTerms(use_credit_balance=True),
        cache=CacheTerms(rebuild_chunk_size=2, surgical_cas_retries=1),
        checksum="test",
    )
    values.update(overrides)
    return ClientBillingConfig(**values)


@pytest.fixture
def config() -> ClientBillingConfig:
    return make_config()


@pytest.fixture
def calendar(config):
    return build_fiscal_calendar(config)


@pytest.fixture
def policy(config):
    return build_penalty_policy(config)


@pytest.fixture
def ledger() -> InMemoryLedgerGateway:
    return InMemoryLedgerGateway()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def billing(session, calendar, clock) -> BillingService:
    return BillingService(session, CLIENT_ID, calendar, clock)


@pytest.fixture
def penalties(session, policy, clock) -> PenaltyRecalculationService:
    return PenaltyRecalculationService(session, CLIENT_ID, policy, clock)


@pytest.fixture
def credit(session, clock) -> CreditBalanceService:
    return CreditBalanceService(session, CLIENT_ID, clock)


@pytest.fixture
def payments(session, policy, ledger, clock, calendar) -> PaymentService:
    return PaymentService(session, CLIENT_ID, policy, ledger, clock=clock, calendar=calendar)


@pytest.fixture
def cache(session, clock) -> AggregationCacheEngine:
    return AggregationCacheEngine(session, CLIENT_ID, clock=clock, chunk_size=2)


@pytest.fixture
def orchestrator(session_factory, config, ledger, clock) -> BillingOrchestrator:
    return BillingOrchestrator(session_factory, config, ledger, clock)


# =============================================================================
# Seeding
# =============================================================================


@pytest.fixture
def seed_period(billing):
    """
    Create an account (if needed) and one billing period.

    Usage::

        period = seed_period("A-101", base_charge=50000)
        period = seed_period("A-101", fiscal_month=2)
    """

    def _seed(
        account_id: str,
        base_charge: int = 50000,
        fiscal_year: int = FY,
        fiscal_month: int = OCT,
        owner_name: str = "",
        consumption: int | None = 10,
    ):
        billing.ensure_account(account_id, owner_name=owner_name or f"Owner {account_id}")
        return billing.create_period(
            account_id, fiscal_year, fiscal_month, base_charge, consumption=consumption
        )

    return _seed


@pytest.fixture
def seed_committed(session_factory, calendar, clock):
    """Seed periods in their own committed transaction (for orchestrator tests)."""

    def _seed(rows: list[tuple[str, int, int, int]]) -> None:
        with session_factory.begin() as sess:
            service = BillingService(sess, CLIENT_ID, calendar, clock)
            for account_id, fiscal_year, fiscal_month, base_charge in rows:
                service.ensure_account(account_id, owner_name=f"Owner {account_id}")
                service.create_period(
                    account_id, fiscal_year, fiscal_month, base_charge, consumption=10
                )

    return _seed
