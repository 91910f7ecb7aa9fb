"""ORM models for the billing kernel."""

from billing_kernel.models.account import BillingAccount
from billing_kernel.models.aggregated_data import (
    AggregatedDataDocument,
    RebuildCheckpoint,
    RebuildStatus,
)
from billing_kernel.models.billing_period import BillingPeriod
from billing_kernel.models.credit_balance import CreditBalance, CreditBalanceEntry
from billing_kernel.models.payment import Payment, PaymentAllocation, PaymentStatus

__all__ = [
    "AggregatedDataDocument",
    "BillingAccount",
    "BillingPeriod",
    "CreditBalance",
    "CreditBalanceEntry",
    "Payment",
    "PaymentAllocation",
    "PaymentStatus",
    "RebuildCheckpoint",
    "RebuildStatus",
]
