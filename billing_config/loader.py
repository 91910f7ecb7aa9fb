"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads a client's YAML fragments, merges them, and parses the result into
``billing_config.schema`` dataclasses.  Runtime callers use
``billing_config.get_client_config()`` instead of calling this directly.

Failure modes
-------------
* Missing directory or root.yaml  -> ``FileNotFoundError``.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Malformed amounts or rates  -> ``InvalidAmountError`` / ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    CacheTerms,
    ClientBillingConfig,
    PaymentTerms,
    PenaltyTerms,
    RateTerms,
)
from billing_kernel.domain.values import to_minor_units


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields ``{}``."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_client_directory(directory: Path) -> dict[str, Any]:
    """
    Merge ``root.yaml`` with every other ``*.yaml`` fragment in the
    directory, in file-name order.
    """
    root_file = directory / "root.yaml"
    if not root_file.exists():
        raise FileNotFoundError(f"root.yaml not found in {directory}")
    data = load_yaml_file(root_file)
    for fragment in sorted(directory.glob("*.yaml")):
        if fragment.name == "root.yaml":
            continue
        data = _deep_merge(data, load_yaml_file(fragment))
    return data


def parse_rate(value: Any) -> Decimal:
    """Parse a penalty rate given as a string or number ("0.05")."""
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid rate: {value!r}") from exc


def parse_money(value: Any, currency: str) -> int:
    """Major-unit YAML amount ("50.00") to minor units."""
    if isinstance(value, float):
        value = repr(value)
    return to_minor_units(str(value), currency)


def parse_client_config(data: dict[str, Any]) -> ClientBillingConfig:
    """Parse merged YAML into a ClientBillingConfig."""
    currency = data.get("currency", "MXN")
    penalty = data.get("penalty", {})
    rates = data.get("rates", {})
    payments = data.get("payments", {})
    cache = data.get("cache", {})

    return ClientBillingConfig(
        client_id=data["client_id"],
        name=data.get("name", data["client_id"]),
        currency=currency,
        timezone=data["timezone"],
        fiscal_year_start_month=int(data["fiscal_year_start_month"]),
        due_day=int(data.get("due_day", 10)),
        penalty=PenaltyTerms(
            rate=parse_rate(penalty.get("rate", "0")),
            grace_days=int(penalty.get("grace_days", 0)),
            compounding=bool(penalty.get("compounding", True)),
            max_cycles=penalty.get("max_cycles"),
        ),
        rates=RateTerms(
            rate_per_unit=parse_money(rates.get("rate_per_unit", "0"), currency),
            minimum_charge=parse_money(rates.get("minimum_charge", "0"), currency),
            unit=rates.get("unit", "m3"),
        ),
        payments=PaymentTerms(
            use_credit_balance=bool(payments.get("use_credit_balance", True)),
        ),
        cache=CacheTerms(
            rebuild_chunk_size=int(cache.get("rebuild_chunk_size", 25)),
            surgical_cas_retries=int(cache.get("surgical_cas_retries", 1)),
        ),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
