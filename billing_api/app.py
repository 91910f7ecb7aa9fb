"""
billing_api.app -- FastAPI application factory.

Responsibility:
    Translate HTTP requests into orchestrator calls and BillingResult
    statuses into HTTP responses.  The orchestrator never raises for
    business failures, so the mapping below is the whole error surface.

Status mapping:
    SUCCESS            200
    PARTIAL_FAILURE    202 (source mutation committed, cache stale)
    VALIDATION_ERROR   422, or 404 for the *_NOT_FOUND codes
    CONSISTENCY_ERROR  409
    STALE_CACHE        503
    FAILED             500
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from billing_api.schemas import (
    BillingResponse,
    ErrorResponse,
    PaymentRequest,
    RebuildRequest,
    RecalculateRequest,
)
from billing_config.schema import ClientBillingConfig
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.ledger import LedgerGateway
from billing_kernel.domain.values import Money, to_decimal
from billing_kernel.exceptions import BillingKernelError
from billing_kernel.logging_config import get_logger
from billing_services.orchestrator import (
    BillingOrchestrator,
    BillingResult,
    BillingStatus,
    result_from_error,
)

logger = get_logger("api")

_NOT_FOUND_CODES = frozenset({"ACCOUNT_NOT_FOUND", "PAYMENT_NOT_FOUND", "PERIOD_NOT_FOUND"})

_HTTP_STATUS = {
    BillingStatus.SUCCESS: 200,
    BillingStatus.PARTIAL_FAILURE: 202,
    BillingStatus.VALIDATION_ERROR: 422,
    BillingStatus.CONSISTENCY_ERROR: 409,
    BillingStatus.STALE_CACHE: 503,
    BillingStatus.FAILED: 500,
}

_SUMMARY_MONEY_FIELDS = (
    "totalBilled",
    "totalPenalties",
    "totalDue",
    "totalPaid",
    "totalOutstanding",
    "totalCreditBalance",
)


def http_status_for(result: BillingResult) -> int:
    if result.status == BillingStatus.VALIDATION_ERROR and result.error_code in _NOT_FOUND_CODES:
        return 404
    return _HTTP_STATUS[result.status]


def _error_response(status_code: int, error_code: str, message: str, details: dict[str, Any]) -> JSONResponse:
    body = ErrorResponse(error_code=error_code, message=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _respond(result: BillingResult) -> JSONResponse:
    status_code = http_status_for(result)
    if not result.mutation_committed:
        return _error_response(
            status_code, result.error_code or "UNKNOWN", result.message or "", result.details
        )
    body = BillingResponse(
        status=result.status.value,
        data=result.data,
        cache_versions={str(k): v for k, v in result.cache_versions.items()},
        error_code=result.error_code,
        message=result.message,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _with_display(document: dict[str, Any], currency: str) -> dict[str, Any]:
    """Add major-unit decimal strings for the summary money fields."""
    summary = document.get("summary", {})
    display = {
        name: str(to_decimal(summary[name], currency))
        for name in _SUMMARY_MONEY_FIELDS
        if name in summary
    }
    return {**document, "summaryDisplay": display}


def _orchestrator(request: Request) -> BillingOrchestrator:
    return request.app.state.orchestrator


def create_app(
    session_factory: sessionmaker[Session],
    config: ClientBillingConfig,
    ledger: LedgerGateway,
    clock: Clock | None = None,
) -> FastAPI:
    """Build the HTTP application for one client's billing data."""
    app = FastAPI(title=f"{config.name} billing", version="1.0.0")
    app.state.orchestrator = BillingOrchestrator(session_factory, config, ledger, clock)
    app.state.session_factory = session_factory
    currency = config.currency

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        logger.warning("http_request_invalid", extra={"path": request.url.path, "errors": len(errors)})
        return _error_response(422, "REQUEST_INVALID", "Request validation failed", {"errors": errors})

    @app.get("/health")
    def health() -> JSONResponse:
        try:
            with session_scope(app.state.session_factory) as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("health_check_failed", extra={"error": str(exc)})
            return JSONResponse(status_code=503, content={"status": "unavailable", "client_id": config.client_id})
        return JSONResponse(
            status_code=200,
            content={"status": "ok", "client_id": config.client_id, "config_checksum": config.checksum},
        )

    @app.get("/v1/aggregated-data/{fiscal_year}")
    def get_aggregated_data(
        fiscal_year: int,
        account_id: list[str] | None = Query(default=None),
        orchestrator: BillingOrchestrator = Depends(_orchestrator),
    ) -> JSONResponse:
        result = orchestrator.get_aggregated_data(fiscal_year, account_id or None)
        if result.is_success and result.data is not None:
            result = BillingResult(
                status=result.status,
                data=_with_display(result.data, currency),
                cache_versions=result.cache_versions,
            )
        return _respond(result)

    @app.post("/v1/payments", responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
    def record_payment(
        payload: PaymentRequest,
        orchestrator: BillingOrchestrator = Depends(_orchestrator),
    ) -> JSONResponse:
        try:
            amount = Money.from_decimal(payload.amount, currency)
        except BillingKernelError as exc:
            return _respond(result_from_error(exc))
        periods = (
            [(p.fiscal_year, p.fiscal_month) for p in payload.periods_oldest_first]
            if payload.periods_oldest_first is not None
            else None
        )
        result = orchestrator.record_payment(
            payload.account_id,
            amount,
            payload.payment_date,
            as_of_date=payload.as_of_date,
            periods_oldest_first=periods,
            payment_method=payload.payment_method,
            reference=payload.reference,
            notes=payload.notes,
        )
        return _respond(result)

    @app.delete("/v1/payments/{transaction_id}")
    def delete_payment(
        transaction_id: str,
        orchestrator: BillingOrchestrator = Depends(_orchestrator),
    ) -> JSONResponse:
        return _respond(orchestrator.delete_payment(transaction_id))

    @app.post("/v1/penalties/recalculate")
    def recalculate_penalties(
        payload: RecalculateRequest,
        orchestrator: BillingOrchestrator = Depends(_orchestrator),
    ) -> JSONResponse:
        return _respond(orchestrator.recalculate_penalties(payload.scope, payload.as_of_date))

    @app.post("/v1/cache/rebuild")
    def rebuild_cache(
        payload: RebuildRequest,
        orchestrator: BillingOrchestrator = Depends(_orchestrator),
    ) -> JSONResponse:
        result = orchestrator.rebuild_cache(
            payload.fiscal_year,
            payload.account_scope,
            max_chunks=payload.max_chunks,
            resume_checkpoint_id=payload.resume_checkpoint_id,
        )
        return _respond(result)

    return app
