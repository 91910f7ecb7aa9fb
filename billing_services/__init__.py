"""
billing_services -- stateful orchestration over the billing kernel.

Owns transaction boundaries, the cached read model and the external
ledger adapter.  Imports billing_kernel, billing_engines and
billing_config; nothing below imports from here.
"""

from billing_services.aggregation_service import (
    AggregationCacheEngine,
    CachedReadModel,
    RebuildOutcome,
)
from billing_services.ledger_gateway import InMemoryLedgerGateway, LedgerGateway
from billing_services.orchestrator import BillingOrchestrator, BillingResult, BillingStatus

__all__ = [
    "AggregationCacheEngine",
    "BillingOrchestrator",
    "BillingResult",
    "BillingStatus",
    "CachedReadModel",
    "InMemoryLedgerGateway",
    "LedgerGateway",
    "RebuildOutcome",
]
