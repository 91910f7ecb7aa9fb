"""Kernel services: the only writers of billing source documents."""

from billing_kernel.services.billing_service import BillGenerationResult, BillingService, MeterReading
from billing_kernel.services.credit_service import CreditBalanceService
from billing_kernel.services.payment_service import PaymentService
from billing_kernel.services.penalty_service import PenaltyRecalculationService

__all__ = [
    "BillGenerationResult",
    "BillingService",
    "CreditBalanceService",
    "MeterReading",
    "PaymentService",
    "PenaltyRecalculationService",
]
