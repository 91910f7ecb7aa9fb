"""
Config -> Kernel Bridges.

Convert a ClientBillingConfig into the plain inputs kernel services and
engines take.  These live in billing_config because the kernel must never
import billing_config.
"""

from __future__ import annotations

from billing_config.schema import ClientBillingConfig
from billing_engines.penalty import PenaltyPolicy
from billing_kernel.domain.fiscal_calendar import FiscalCalendar


def build_fiscal_calendar(config: ClientBillingConfig) -> FiscalCalendar:
    return FiscalCalendar(
        fiscal_year_start_month=config.fiscal_year_start_month,
        due_day=config.due_day,
        timezone=config.timezone,
    )


def build_penalty_policy(config: ClientBillingConfig) -> PenaltyPolicy:
    return PenaltyPolicy(
        rate=config.penalty.rate,
        grace_days=config.penalty.grace_days,
        compounding=config.penalty.compounding,
        max_cycles=config.penalty.max_cycles,
    )
