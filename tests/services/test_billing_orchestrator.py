"""
BillingOrchestrator: transactions, cache refresh after commit and
result statuses.  Sources are seeded in committed transactions.
"""

from datetime import date
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import OperationalError

from billing_kernel.exceptions import CacheWriteError, StaleCacheError
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.services.billing_service import BillingService, MeterReading
from billing_services.aggregation_service import AggregationCacheEngine
from billing_services.orchestrator import BillingResult, BillingStatus, result_from_error
from tests.conftest import CLIENT_ID, FY, OCT, TODAY


def load_period(session_factory, account_id, fiscal_year=FY, fiscal_month=OCT):
    with session_factory() as sess:
        return BillingSelector(sess, CLIENT_ID).get_period(account_id, fiscal_year, fiscal_month)


def credit_of(session_factory, account_id):
    with session_factory() as sess:
        return BillingSelector(sess, CLIENT_ID).credit_balances([account_id]).get(account_id, 0)


@pytest.fixture
def seeded(seed_committed):
    seed_committed([("A-101", FY, OCT, 50000), ("A-102", FY, OCT, 50000)])


class TestRecordPayment:
    def test_success_updates_cache(self, orchestrator, seeded):
        result = orchestrator.record_payment("A-101", 30000, TODAY)
        assert result.status == BillingStatus.SUCCESS
        assert result.data["allocations"][0]["base_charge_portion"] == 28571
        assert result.cache_versions == {FY: 1}

        cached = orchestrator.get_aggregated_data(FY)
        row = cached.data["accounts"]["A-101"]["periods"][str(OCT)]
        assert row["paidAmount"] == 30000
        assert row["penaltyAmount"] == 2500
        assert row["status"] == "partial"

    def test_cache_version_advances(self, orchestrator, seeded):
        orchestrator.get_aggregated_data(FY)
        result = orchestrator.record_payment("A-101", 100, TODAY)
        assert result.cache_versions == {FY: 2}

    def test_as_of_defaults_to_today(self, orchestrator, seeded, session_factory):
        orchestrator.record_payment("A-101", 100, date(2025, 10, 5))
        period = load_period(session_factory, "A-101")
        # Paid before the due date, recalculated as of today.
        assert period.penalty_as_of == TODAY
        assert period.penalty_amount == 2495

    def test_validation_error_writes_nothing(self, orchestrator, seeded, ledger, session_factory):
        result = orchestrator.record_payment("NOPE", 100, TODAY)
        assert result.status == BillingStatus.VALIDATION_ERROR
        assert result.error_code == "ACCOUNT_NOT_FOUND"
        assert not result.mutation_committed
        assert ledger.transactions == {}

    def test_invalid_amount(self, orchestrator, seeded, session_factory):
        result = orchestrator.record_payment("A-101", 0, TODAY)
        assert result.status == BillingStatus.VALIDATION_ERROR
        assert result.error_code == "INVALID_AMOUNT"
        assert load_period(session_factory, "A-101").paid_amount == 0

    def test_cache_failure_is_partial(self, orchestrator, seeded, session_factory, monkeypatch):
        def fail(self, account_ids, periods_affected=None, include_cached_years=False):
            raise CacheWriteError(CLIENT_ID, FY, "disk full")

        monkeypatch.setattr(AggregationCacheEngine, "update_surgical", fail)
        result = orchestrator.record_payment("A-101", 30000, TODAY)
        assert result.status == BillingStatus.PARTIAL_FAILURE
        assert result.mutation_committed
        assert result.error_code == "CACHE_WRITE_FAILED"
        assert result.data["external_transaction_id"]
        assert load_period(session_factory, "A-101").paid_amount == 30000

    def test_ledger_rolled_back_with_source(self, orchestrator, seeded, ledger, monkeypatch, session_factory):
        from billing_kernel.services.payment_service import PaymentService

        def broken_check(self, account_id, periods):
            raise OperationalError("UPDATE", {}, Exception("connection lost"))

        monkeypatch.setattr(PaymentService, "_check", broken_check)
        result = orchestrator.record_payment("A-101", 100, TODAY)
        assert result.status == BillingStatus.FAILED
        assert result.error_code == "STORAGE_ERROR"
        assert ledger.transactions == {}
        assert load_period(session_factory, "A-101").paid_amount == 0


class TestDeletePayment:
    def test_reversal_restores_and_deletes_ledger(self, orchestrator, seeded, ledger, session_factory):
        paid = orchestrator.record_payment("A-101", 60000, TODAY)
        txn = paid.data["external_transaction_id"]
        assert credit_of(session_factory, "A-101") == 7500

        result = orchestrator.delete_payment(txn)
        assert result.status == BillingStatus.SUCCESS
        assert result.data["credit_balance_delta_reversed"] == 7500
        assert txn not in ledger.transactions
        period = load_period(session_factory, "A-101")
        assert (period.paid_amount, period.penalty_amount, period.status) == (0, 2500, "unpaid")
        assert credit_of(session_factory, "A-101") == 0

    def test_second_delete_is_validation_error(self, orchestrator, seeded):
        txn = orchestrator.record_payment("A-101", 100, TODAY).data["external_transaction_id"]
        orchestrator.delete_payment(txn)
        result = orchestrator.delete_payment(txn)
        assert result.status == BillingStatus.VALIDATION_ERROR
        assert result.error_code == "PAYMENT_ALREADY_REVERSED"

    def test_overdraw_is_consistency_error(self, orchestrator, seed_committed, session_factory):
        seed_committed([("A-101", FY, OCT, 50000), ("A-101", FY, OCT + 1, 7501)])
        first = orchestrator.record_payment("A-101", 60000, TODAY, periods_oldest_first=[(FY, OCT)])
        orchestrator.record_payment("A-101", 1, TODAY)
        assert credit_of(session_factory, "A-101") == 0

        result = orchestrator.delete_payment(first.data["external_transaction_id"])
        assert result.status == BillingStatus.CONSISTENCY_ERROR
        assert result.error_code == "CREDIT_BALANCE_OVERDRAW"
        assert load_period(session_factory, "A-101").paid_amount == 50000 + 2500


class TestRecalculate:
    def test_scoped_refreshes_touched_accounts(self, orchestrator, seeded):
        orchestrator.get_aggregated_data(FY)
        result = orchestrator.recalculate_penalties(["A-101"])
        assert result.status == BillingStatus.SUCCESS
        assert result.data["periods_skipped_out_of_scope"] == 1
        assert result.cache_versions == {FY: 2}

        accounts = orchestrator.get_aggregated_data(FY).data["accounts"]
        assert accounts["A-101"]["totals"]["penalties"] == 2500
        assert accounts["A-102"]["totals"]["penalties"] == 0

    def test_scoped_without_changes_skips_cache(self, orchestrator, seeded):
        orchestrator.recalculate_penalties(["A-101"])
        result = orchestrator.recalculate_penalties(["A-101"])
        assert result.status == BillingStatus.SUCCESS
        assert result.cache_versions == {}

    def test_all_rebuilds_cached_years(self, orchestrator, seeded):
        orchestrator.get_aggregated_data(FY)
        result = orchestrator.recalculate_penalties("all")
        assert result.status == BillingStatus.SUCCESS
        assert result.cache_versions == {FY: 2}
        summary = orchestrator.get_aggregated_data(FY).data["summary"]
        assert summary["totalPenalties"] == 5000

    def test_bad_scope(self, orchestrator, seeded):
        result = orchestrator.recalculate_penalties("everyone")
        assert result.status == BillingStatus.VALIDATION_ERROR
        assert result.error_code == "INVALID_SCOPE"


class TestCacheOperations:
    def test_get_aggregated_data_scoped(self, orchestrator, seeded):
        result = orchestrator.get_aggregated_data(FY, ["A-102"])
        assert result.is_success
        assert list(result.data["accounts"]) == ["A-102"]

    def test_rebuild_in_chunks(self, orchestrator, seeded, seed_committed):
        seed_committed([("A-103", FY, OCT, 1000)])
        paused = orchestrator.rebuild_cache(FY, max_chunks=1)
        assert paused.data["status"] == "running"
        assert paused.cache_versions == {}

        done = orchestrator.rebuild_cache(FY, resume_checkpoint_id=UUID(paused.data["checkpoint_id"]))
        assert done.data["status"] == "completed"
        assert done.data["accounts_processed"] == 3
        assert done.cache_versions == {FY: 1}

    def test_unknown_checkpoint(self, orchestrator, seeded):
        result = orchestrator.rebuild_cache(FY, resume_checkpoint_id=uuid4())
        assert result.status == BillingStatus.FAILED
        assert result.error_code == "CACHE_WRITE_FAILED"

    def test_stale_cache_status(self, orchestrator, seeded, monkeypatch):
        def stale(self, fiscal_year, *args, **kwargs):
            raise StaleCacheError(CLIENT_ID, fiscal_year, 1)

        monkeypatch.setattr(AggregationCacheEngine, "rebuild_full", stale)
        result = orchestrator.rebuild_cache(FY)
        assert result.status == BillingStatus.STALE_CACHE
        assert result.error_code == "STALE_CACHE"

    def test_storage_failure(self, orchestrator, seeded, monkeypatch):
        def down(self, fiscal_year, account_scope=None):
            raise OperationalError("SELECT", {}, Exception("db down"))

        monkeypatch.setattr(AggregationCacheEngine, "get_aggregated_data", down)
        result = orchestrator.get_aggregated_data(FY)
        assert result.status == BillingStatus.FAILED
        assert result.error_code == "STORAGE_ERROR"


class TestBillsAndPurge:
    @pytest.fixture
    def accounts(self, session_factory, calendar, clock):
        with session_factory.begin() as sess:
            service = BillingService(sess, CLIENT_ID, calendar, clock)
            for account_id in ("A-101", "A-102"):
                service.ensure_account(account_id, owner_name=account_id)

    def test_generate_bills_uses_configured_rate(self, orchestrator, accounts):
        result = orchestrator.generate_bills(
            FY, OCT, [MeterReading("A-101", 0, 10), MeterReading("A-102", 5, 5)]
        )
        assert result.status == BillingStatus.SUCCESS
        assert result.data["created"] == ["A-101"]
        assert result.data["total_billed"] == 50000
        assert result.data["due_date"] == "2025-10-10"
        assert result.cache_versions == {FY: 1}

    def test_generate_duplicate(self, orchestrator, accounts):
        orchestrator.generate_bills(FY, OCT, [MeterReading("A-101", 0, 10)])
        result = orchestrator.generate_bills(FY, OCT, [MeterReading("A-101", 10, 20)])
        assert result.status == BillingStatus.VALIDATION_ERROR
        assert result.error_code == "DUPLICATE_PERIOD"

    def test_purge_invalidates_cache(self, orchestrator, seeded, session_factory):
        orchestrator.get_aggregated_data(FY)
        result = orchestrator.purge_period(FY, OCT)
        assert result.data["deleted"] == 2
        assert load_period(session_factory, "A-101") is None
        assert orchestrator.get_aggregated_data(FY).cache_versions == {FY: 1}

    def test_purge_with_payments(self, orchestrator, seeded):
        orchestrator.record_payment("A-101", 100, TODAY)
        result = orchestrator.purge_period(FY, OCT)
        assert result.status == BillingStatus.CONSISTENCY_ERROR
        assert result.error_code == "PERIOD_HAS_PAYMENTS"


def test_result_from_unknown_error():
    result = result_from_error(RuntimeError("boom"))
    assert isinstance(result, BillingResult)
    assert result.status == BillingStatus.FAILED
