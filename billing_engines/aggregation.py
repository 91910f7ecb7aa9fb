"""
Module: billing_engines.aggregation
Responsibility:
    Build the rows of the cached per-fiscal-year read model from period
    snapshots, and recompute the account-independent totals from rows.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    The aggregation service (billing_services) reads sources, calls these
    builders and owns the versioned compare-and-swap write.

Document shape (all money fields are integer minor units):
    {
      "clientId", "fiscalYear", "version", "generatedAt", "currency",
      "accounts": {accountId: {"ownerName", "creditBalance",
                               "periods": {"<fiscalMonth>": row},
                               "totals": {...}}},
      "months":  {"<fiscalMonth>": {...month totals...}},
      "summary": {...year totals...}
    }

Invariants enforced:
    - Account totals are sums over that account's period rows.
    - Month and summary totals are sums over account rows, so a surgical
      merge followed by ``build_totals`` gives the same document as a full
      build over the same sources.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from billing_engines.tracer import traced_engine
from billing_kernel.domain.dtos import PeriodSnapshot, PeriodStatus
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.aggregation")

_ACCOUNT_TOTAL_FIELDS = (
    "consumption",
    "billed",
    "penalties",
    "totalDue",
    "paid",
    "outstanding",
)


def build_period_row(period: PeriodSnapshot) -> dict[str, Any]:
    """Read-model row for one billing period."""
    return {
        "fiscalMonth": period.fiscal_month,
        "billDate": period.bill_date.isoformat() if period.bill_date else None,
        "dueDate": period.due_date.isoformat() if period.due_date else None,
        "consumption": period.consumption or 0,
        "baseCharge": period.base_charge,
        "penaltyAmount": period.penalty_amount,
        "totalDue": period.total_due,
        "paidAmount": period.paid_amount,
        "outstanding": period.outstanding,
        "status": period.status.value,
        "payments": [
            {
                "transactionId": p.external_transaction_id,
                "paymentDate": p.payment_date.isoformat(),
                "amountApplied": p.amount,
                "baseChargePortion": p.base_portion,
                "penaltyPortion": p.penalty_portion,
            }
            for p in period.payments
        ],
    }


def account_totals(period_rows: Mapping[str, Mapping[str, Any]]) -> dict[str, int]:
    rows = list(period_rows.values())
    return {
        "consumption": sum(r["consumption"] for r in rows),
        "billed": sum(r["baseCharge"] for r in rows),
        "penalties": sum(r["penaltyAmount"] for r in rows),
        "totalDue": sum(r["totalDue"] for r in rows),
        "paid": sum(r["paidAmount"] for r in rows),
        "outstanding": sum(r["outstanding"] for r in rows),
        "periodsUnpaid": sum(1 for r in rows if r["status"] != PeriodStatus.PAID.value),
    }


def build_account_entry(
    periods: Iterable[PeriodSnapshot],
    owner_name: str = "",
    credit_balance: int = 0,
) -> dict[str, Any]:
    """Account entry: its period rows plus totals."""
    rows = {
        str(p.fiscal_month): build_period_row(p)
        for p in sorted(periods, key=lambda s: s.fiscal_month)
    }
    return {
        "ownerName": owner_name,
        "creditBalance": credit_balance,
        "periods": rows,
        "totals": account_totals(rows),
    }


def collection_rate(paid: int, total_due: int) -> str:
    """Paid over billed-plus-penalties, percent with one decimal."""
    if total_due <= 0:
        return "0.0"
    rate = Decimal(paid) * Decimal(100) / Decimal(total_due)
    return str(rate.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


@traced_engine("aggregation_totals", "1.0")
def build_totals(accounts: Mapping[str, Mapping[str, Any]]) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Month totals and year summary from account entries.

    Returns:
        (months, summary)
    """
    months: dict[str, dict[str, int]] = {}
    for entry in accounts.values():
        for month_key, row in entry["periods"].items():
            bucket = months.setdefault(
                month_key,
                {"consumption": 0, "billed": 0, "penalties": 0, "paid": 0,
                 "outstanding": 0, "accountsBilled": 0, "accountsPaid": 0},
            )
            bucket["consumption"] += row["consumption"]
            bucket["billed"] += row["baseCharge"]
            bucket["penalties"] += row["penaltyAmount"]
            bucket["paid"] += row["paidAmount"]
            bucket["outstanding"] += row["outstanding"]
            bucket["accountsBilled"] += 1
            if row["status"] == PeriodStatus.PAID.value:
                bucket["accountsPaid"] += 1

    totals = {name: 0 for name in _ACCOUNT_TOTAL_FIELDS}
    overdue: list[dict[str, Any]] = []
    total_credit = 0
    for account_id in sorted(accounts):
        entry = accounts[account_id]
        for name in _ACCOUNT_TOTAL_FIELDS:
            totals[name] += entry["totals"][name]
        total_credit += entry.get("creditBalance", 0)
        if entry["totals"]["outstanding"] > 0:
            overdue.append(
                {
                    "accountId": account_id,
                    "ownerName": entry.get("ownerName", ""),
                    "outstanding": entry["totals"]["outstanding"],
                    "periodsUnpaid": entry["totals"]["periodsUnpaid"],
                }
            )

    summary = {
        "totalConsumption": totals["consumption"],
        "totalBilled": totals["billed"],
        "totalPenalties": totals["penalties"],
        "totalDue": totals["totalDue"],
        "totalPaid": totals["paid"],
        "totalOutstanding": totals["outstanding"],
        "totalCreditBalance": total_credit,
        "accountCount": len(accounts),
        "accountsWithOutstanding": len(overdue),
        "collectionRate": collection_rate(totals["paid"], totals["totalDue"]),
        "overdueDetails": overdue,
    }
    return dict(sorted(months.items(), key=lambda kv: int(kv[0]))), summary


def build_document(
    *,
    client_id: str,
    fiscal_year: int,
    currency: str,
    accounts: Mapping[str, Mapping[str, Any]],
    version: int,
    generated_at: str,
) -> dict[str, Any]:
    """Assemble a complete read-model document from account entries."""
    ordered = {k: dict(accounts[k]) for k in sorted(accounts)}
    months, summary = build_totals(ordered)
    logger.debug(
        "aggregated_document_built",
        extra={"fiscal_year": fiscal_year, "accounts": len(ordered), "version": version},
    )
    return {
        "clientId": client_id,
        "fiscalYear": fiscal_year,
        "currency": currency,
        "version": version,
        "generatedAt": generated_at,
        "accounts": ordered,
        "months": months,
        "summary": summary,
    }


def _drift_figures(entry: Mapping[str, Any] | None) -> dict[str, int] | None:
    if entry is None:
        return None
    return {**entry["totals"], "creditBalance": entry.get("creditBalance", 0)}


def account_drift(
    cached: Mapping[str, Mapping[str, Any]],
    rebuilt: Mapping[str, Mapping[str, Any]],
) -> dict[str, dict[str, Any]]:
    """
    Accounts whose cached totals or credit balance differ from a fresh build.

    Returns:
        {account_id: {"cached": figures | None, "rebuilt": figures | None}}
        where figures are the account totals plus ``creditBalance``.
    """
    drift: dict[str, dict[str, Any]] = {}
    for account_id in sorted(set(cached) | set(rebuilt)):
        before = _drift_figures(cached.get(account_id))
        after = _drift_figures(rebuilt.get(account_id))
        if before != after:
            drift[account_id] = {"cached": before, "rebuilt": after}
    return drift
