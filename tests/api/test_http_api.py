"""HTTP surface: request validation and BillingResult -> status mapping."""

import pytest
from fastapi.testclient import TestClient

from billing_api import create_app, http_status_for
from billing_services.orchestrator import BillingResult, BillingStatus
from tests.conftest import FY, OCT


@pytest.fixture
def client(session_factory, config, ledger, clock, seed_committed):
    seed_committed([("A-101", FY, OCT, 50000), ("A-102", FY, OCT, 50000)])
    with TestClient(create_app(session_factory, config, ledger, clock)) as test_client:
        yield test_client


def pay(client, **overrides):
    body = {"account_id": "A-101", "amount": "300.00", "payment_date": "2025-10-20"}
    body.update(overrides)
    return client.post("/v1/payments", json=body)


def test_health(client, config):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "client_id": "TEST", "config_checksum": config.checksum}


def test_aggregated_data_with_display(client):
    response = client.get(f"/v1/aggregated-data/{FY}")
    assert response.status_code == 200
    body = response.json()
    assert body["cache_versions"] == {str(FY): 1}
    assert body["data"]["summary"]["totalBilled"] == 100000
    assert body["data"]["summaryDisplay"]["totalBilled"] == "1000.00"


def test_aggregated_data_scoped(client):
    response = client.get(f"/v1/aggregated-data/{FY}", params={"account_id": ["A-102"]})
    assert list(response.json()["data"]["accounts"]) == ["A-102"]


def test_record_payment(client):
    response = pay(client)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    line = body["data"]["allocations"][0]
    assert (line["base_charge_portion"], line["penalty_portion"]) == (28571, 1429)


def test_float_amount_rejected(client):
    response = pay(client, amount=300.0)
    assert response.status_code == 422
    assert response.json()["error_code"] == "REQUEST_INVALID"


def test_unknown_field_rejected(client):
    response = pay(client, currency="USD")
    assert response.status_code == 422


def test_unparseable_amount(client):
    response = pay(client, amount="three hundred")
    assert response.status_code == 422
    assert response.json()["error_code"] == "INVALID_AMOUNT"


def test_unknown_account_is_404(client):
    response = pay(client, account_id="NOPE")
    assert response.status_code == 404
    assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"


def test_bad_fiscal_month(client):
    response = pay(client, periods_oldest_first=[{"fiscal_year": FY, "fiscal_month": 12}])
    assert response.status_code == 422


def test_delete_payment(client, ledger):
    txn = pay(client, amount="600.00").json()["data"]["external_transaction_id"]
    response = client.delete(f"/v1/payments/{txn}")
    assert response.status_code == 200
    assert response.json()["data"]["credit_balance_delta_reversed"] == 7500
    assert ledger.transactions == {}

    again = client.delete(f"/v1/payments/{txn}")
    assert again.status_code == 422
    assert again.json()["error_code"] == "PAYMENT_ALREADY_REVERSED"


def test_delete_unknown_payment(client):
    assert client.delete("/v1/payments/TXN-NOPE").status_code == 404


def test_recalculate(client):
    response = client.post("/v1/penalties/recalculate", json={"scope": ["A-101"], "as_of_date": "2025-10-20"})
    assert response.status_code == 200
    assert response.json()["data"]["periods_updated"] == 1


def test_recalculate_bad_scope(client):
    response = client.post("/v1/penalties/recalculate", json={"scope": "some"})
    assert response.status_code == 422
    assert response.json()["error_code"] == "INVALID_SCOPE"


def test_rebuild_and_chunk_limit(client):
    client.post("/v1/cache/rebuild", json={"fiscal_year": FY})
    chunked = client.post("/v1/cache/rebuild", json={"fiscal_year": FY, "max_chunks": 1}).json()
    assert chunked["data"]["status"] == "completed"

    response = client.post("/v1/cache/rebuild", json={"fiscal_year": FY, "max_chunks": 0})
    assert response.status_code == 422


@pytest.mark.parametrize(
    "status, code, expected",
    [
        (BillingStatus.SUCCESS, None, 200),
        (BillingStatus.PARTIAL_FAILURE, "CACHE_WRITE_FAILED", 202),
        (BillingStatus.VALIDATION_ERROR, "INVALID_AMOUNT", 422),
        (BillingStatus.VALIDATION_ERROR, "PERIOD_NOT_FOUND", 404),
        (BillingStatus.CONSISTENCY_ERROR, "CREDIT_BALANCE_OVERDRAW", 409),
        (BillingStatus.STALE_CACHE, "STALE_CACHE", 503),
        (BillingStatus.FAILED, "STORAGE_ERROR", 500),
    ],
)
def test_http_status_mapping(status, code, expected):
    assert http_status_for(BillingResult(status=status, error_code=code)) == expected
