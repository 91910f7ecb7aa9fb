"""
Module: billing_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by
    the billing kernel services and the aggregation service.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel.domain and billing_kernel.logging_config.

Invariants enforced:
    - Engines never read the clock; dates arrive as parameters.
    - Integer minor-unit arithmetic only; decimals appear solely as rates.
    - Identical inputs always produce identical outputs.

Usage:
    from billing_engines import PenaltyCalculator, PenaltyPolicy
    from billing_engines import PaymentAllocationEngine
    from billing_engines import aggregation
"""

from billing_engines import aggregation
from billing_engines.allocation import PaymentAllocationEngine, split_base_penalty
from billing_engines.penalty import (
    PenaltyCalculator,
    PenaltyComputation,
    PenaltyCycle,
    PenaltyPolicy,
)
from billing_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "PaymentAllocationEngine",
    "PenaltyCalculator",
    "PenaltyComputation",
    "PenaltyCycle",
    "PenaltyPolicy",
    "aggregation",
    "compute_input_fingerprint",
    "split_base_penalty",
    "traced_engine",
]
