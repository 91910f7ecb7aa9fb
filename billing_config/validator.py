"""
Configuration validation (``billing_config.validator``).

Every check runs and all errors are reported together, so a broken
configuration is fixed in one pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from billing_config.schema import ClientBillingConfig
from billing_kernel.domain.currency import CurrencyRegistry


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` is True only when ``errors`` is empty.  Warnings do not
    block loading.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_client_config(config: ClientBillingConfig) -> ConfigValidationResult:
    """Validate a parsed client configuration."""
    result = ConfigValidationResult()
    _validate_calendar(config, result)
    _validate_penalty(config, result)
    _validate_rates(config, result)
    _validate_cache(config, result)
    return result


def _validate_calendar(config: ClientBillingConfig, result: ConfigValidationResult) -> None:
    if not 1 <= config.fiscal_year_start_month <= 12:
        result.add_error(
            f"fiscal_year_start_month must be 1-12, got {config.fiscal_year_start_month}"
        )
    if not 1 <= config.due_day <= 31:
        result.add_error(f"due_day must be 1-31, got {config.due_day}")
    elif config.due_day > 28:
        result.add_warning(f"due_day {config.due_day} is clamped in shorter months")
    try:
        ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        result.add_error(f"unknown timezone {config.timezone!r}")
    if not CurrencyRegistry.is_valid(config.currency):
        result.add_error(f"unknown currency {config.currency!r}")


def _validate_penalty(config: ClientBillingConfig, result: ConfigValidationResult) -> None:
    terms = config.penalty
    if terms.rate < 0:
        result.add_error(f"penalty.rate cannot be negative, got {terms.rate}")
    elif terms.rate > Decimal("1"):
        result.add_warning(f"penalty.rate {terms.rate} exceeds 100% per cycle")
    if terms.grace_days < 0:
        result.add_error(f"penalty.grace_days cannot be negative, got {terms.grace_days}")
    if terms.max_cycles is not None and terms.max_cycles < 0:
        result.add_error(f"penalty.max_cycles cannot be negative, got {terms.max_cycles}")


def _validate_rates(config: ClientBillingConfig, result: ConfigValidationResult) -> None:
    if config.rates.rate_per_unit < 0:
        result.add_error("rates.rate_per_unit cannot be negative")
    if config.rates.minimum_charge < 0:
        result.add_error("rates.minimum_charge cannot be negative")


def _validate_cache(config: ClientBillingConfig, result: ConfigValidationResult) -> None:
    if config.cache.rebuild_chunk_size < 1:
        result.add_error("cache.rebuild_chunk_size must be at least 1")
    if config.cache.surgical_cas_retries < 0:
        result.add_error("cache.surgical_cas_retries cannot be negative")
