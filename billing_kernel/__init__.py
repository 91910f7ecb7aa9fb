"""
Billing Kernel - utility billing source of truth

Integer minor-unit money, fiscal-period math and the per-account billing
documents (periods, payment allocations, credit ledger) with:
- Oldest-first payment allocation with base/penalty split
- Idempotent, scope-filtered penalty recalculation
- Exact payment reversal
- Structured audit logging
"""

__version__ = "0.1.0"
