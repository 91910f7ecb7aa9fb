"""
Configuration Schema (``billing_config.schema``).

Frozen dataclasses describing one client's billing configuration.  Parsed
from YAML by ``billing_config.loader``; consumed through
``billing_config.get_client_config()`` and translated into kernel inputs by
``billing_config.bridges``.

All money values are integer minor units by the time they reach these
types; the loader performs the decimal conversion exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class PenaltyTerms:
    """Late-payment penalty policy."""

    rate: Decimal
    grace_days: int = 0
    compounding: bool = True
    max_cycles: int | None = None


@dataclass(frozen=True)
class RateTerms:
    """Consumption charge terms for bill generation."""

    rate_per_unit: int
    minimum_charge: int = 0
    unit: str = "m3"


@dataclass(frozen=True)
class PaymentTerms:
    use_credit_balance: bool = True


@dataclass(frozen=True)
class CacheTerms:
    """Aggregation cache tuning."""

    rebuild_chunk_size: int = 25
    surgical_cas_retries: int = 1


@dataclass(frozen=True)
class ClientBillingConfig:
    """
    Complete billing configuration for one client.

    Contract:
        Immutable once loaded.  ``checksum`` is the SHA-256 of the merged
        YAML source and identifies the exact configuration in logs.
    """

    client_id: str
    name: str
    currency: str
    timezone: str
    fiscal_year_start_month: int
    due_day: int
    penalty: PenaltyTerms
    rates: RateTerms
    payments: PaymentTerms = field(default_factory=PaymentTerms)
    cache: CacheTerms = field(default_factory=CacheTerms)
    checksum: str = ""
