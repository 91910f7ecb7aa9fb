"""
billing_config -- single public entrypoint for client billing configuration.

Responsibility:
    ``get_client_config()`` is the only way runtime code obtains a client's
    fiscal calendar, penalty, rate, payment and cache settings.  The
    configuration store is read-only from the billing core's perspective.

Architecture position:
    Sits above ``billing_kernel`` and ``billing_engines`` and below
    ``billing_services``.  The kernel never imports from here; bridges in
    this package translate configuration into kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- no configuration directory for the client.
    - ``ConfigurationError`` -- validation failed (all errors listed).

Audit relevance:
    Every successful call emits a ``BILLING_CONFIG_TRACE`` log record with
    the client id and the SHA-256 checksum of the merged YAML source.
"""

from __future__ import annotations

import logging
from pathlib import Path

from billing_config.loader import load_client_directory, parse_client_config
from billing_config.schema import (
    CacheTerms,
    ClientBillingConfig,
    PaymentTerms,
    PenaltyTerms,
    RateTerms,
)
from billing_config.validator import validate_client_config
from billing_kernel.exceptions import ConfigurationError

_logger = logging.getLogger("billing_kernel.config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"

__all__ = [
    "CacheTerms",
    "ClientBillingConfig",
    "PaymentTerms",
    "PenaltyTerms",
    "RateTerms",
    "get_client_config",
]


def get_client_config(client_id: str, config_dir: Path | None = None) -> ClientBillingConfig:
    """
    The ONLY public configuration entrypoint.

    Looks for ``<config_dir>/<client_id lower-cased>/root.yaml`` (plus any
    sibling fragments), parses and validates it.

    Args:
        client_id: Client identifier, e.g. "AVII".
        config_dir: Override path to configuration sets directory.
            Defaults to billing_config/sets/.

    Raises:
        FileNotFoundError: If no configuration exists for the client.
        ConfigurationError: If validation fails.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    directory = sets_dir / client_id.lower()
    if not directory.is_dir():
        raise FileNotFoundError(f"No configuration for client {client_id!r} in {sets_dir}")

    config = parse_client_config(load_client_directory(directory))
    if config.client_id != client_id:
        raise ConfigurationError(
            client_id, [f"client_id in configuration is {config.client_id!r}"]
        )

    validation = validate_client_config(config)
    if not validation.is_valid:
        raise ConfigurationError(client_id, validation.errors)
    for warning in validation.warnings:
        _logger.warning("config_validation_warning", extra={"client_id": client_id, "warning": warning})

    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "config_client_id": config.client_id,
            "checksum": config.checksum,
            "fiscal_year_start_month": config.fiscal_year_start_month,
            "penalty_rate": str(config.penalty.rate),
        },
    )
    return config
