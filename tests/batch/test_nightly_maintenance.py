"""Nightly penalty recalculation and cache reconciliation, plus its CLI."""

import json

import pytest
from sqlalchemy.orm import sessionmaker

from billing_batch import NightlyMaintenance
from billing_batch.__main__ import main
from billing_config import get_client_config
from billing_config.bridges import build_fiscal_calendar
from billing_kernel.db.engine import build_engine, create_tables, reset_engine, session_scope
from billing_kernel.exceptions import CacheWriteError
from billing_kernel.services.billing_service import BillingService
from billing_services.aggregation_service import AggregationCacheEngine
from tests.conftest import CLIENT_ID, FY, OCT, TODAY


@pytest.fixture
def nightly(session_factory, config, clock):
    return NightlyMaintenance(session_factory, config, clock)


@pytest.fixture
def seeded(seed_committed):
    seed_committed([("A-101", FY, OCT, 50000), ("A-102", FY, OCT, 50000)])


def build_cache(session_factory, clock):
    with session_scope(session_factory) as sess:
        return AggregationCacheEngine(sess, CLIENT_ID, clock=clock).get_aggregated_data(FY).version


def test_recalculates_and_rebuilds(nightly, seeded):
    report = nightly.run()
    assert report.as_of_date == TODAY
    assert report.recalc.periods_updated == 2
    assert report.recalc.total_penalty == 5000
    assert report.versions == {FY: 1}
    assert report.drifted_accounts == {}
    assert report.is_clean


def test_drift_reported(nightly, seeded, session_factory, clock, captured_logs):
    assert build_cache(session_factory, clock) == 1
    report = nightly.run(TODAY)
    assert report.versions == {FY: 2}
    assert report.drifted_accounts == {FY: ["A-101", "A-102"]}
    drift = [r for r in captured_logs() if r["message"] == "cache_drift_detected"]
    assert len(drift) == 2


def test_second_run_has_no_drift(nightly, seeded):
    nightly.run(TODAY)
    report = nightly.run(TODAY)
    assert report.recalc.periods_updated == 0
    assert report.drifted_accounts == {}


def test_failing_year_does_not_stop_others(nightly, seeded, monkeypatch, captured_logs):
    real = AggregationCacheEngine.rebuild_full

    def flaky(self, fiscal_year, *args, **kwargs):
        if fiscal_year == FY:
            raise CacheWriteError(CLIENT_ID, fiscal_year, "disk full")
        return real(self, fiscal_year, *args, **kwargs)

    monkeypatch.setattr(AggregationCacheEngine, "rebuild_full", flaky)
    report = nightly.run(TODAY, fiscal_years=[FY, FY + 1])
    assert list(report.failed_years) == [FY]
    assert report.versions == {FY + 1: 1}
    assert not report.is_clean
    assert any(r["message"] == "nightly_rebuild_failed" for r in captured_logs())


def test_report_serializes(nightly, seeded):
    data = nightly.run(TODAY).to_dict()
    assert data["versions"] == {str(FY): 1}
    assert data["recalc"]["scope"] == "all"
    json.dumps(data)


class TestCommandLine:
    @pytest.fixture
    def database_url(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'billing.db'}"
        yield url
        reset_engine()

    def test_nightly_against_seeded_database(self, database_url, capsys):
        engine = build_engine(database_url)
        create_tables(engine)
        config = get_client_config("AVII")
        with session_scope(sessionmaker(bind=engine)) as sess:
            billing = BillingService(sess, "AVII", build_fiscal_calendar(config))
            billing.ensure_account("101", owner_name="Owner 101")
            billing.create_period("101", FY, OCT, 50000)
        engine.dispose()

        code = main(["nightly", "--client-id", "AVII", "--as-of", "2025-11-01", "--database-url", database_url])
        assert code == 0
        report = json.loads(capsys.readouterr().out)
        # Due 2025-10-10 plus ten grace days: one cycle by November 1.
        assert report["recalc"]["total_penalty"] == 2500
        assert report["versions"] == {str(FY): 1}

    def test_create_tables_on_empty_database(self, database_url, capsys):
        code = main(["nightly", "--client-id", "AVII", "--as-of", "2025-11-01",
                     "--database-url", database_url, "--create-tables"])
        assert code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["versions"] == {}

    def test_bad_date_rejected(self, database_url):
        with pytest.raises(SystemExit):
            main(["nightly", "--client-id", "AVII", "--as-of", "11/01/2025", "--database-url", database_url])
