"""
Ledger port -- contract the billing kernel needs from the external ledger.

The external transaction/ledger service is a collaborator.  The payment
service calls ``create_transaction`` before it writes the credit ledger
entry, so every allocation and credit entry carries a real transaction id.

Lines passed to the ledger keep base charge and penalty as distinct items;
they are never collapsed into one line.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Protocol, runtime_checkable

from billing_kernel.domain.dtos import AllocationLine


class LedgerLineCategory(str, Enum):
    BASE_CHARGE = "base_charge"
    PENALTY = "penalty"
    CREDIT_USED = "credit_used"
    CREDIT_CREATED = "credit_created"


@dataclass(frozen=True)
class LedgerLine:
    """One line item of a ledger transaction, integer minor units."""

    category: LedgerLineCategory
    amount: int
    fiscal_year: int | None = None
    fiscal_month: int | None = None
    description: str = ""


def ledger_lines_for(
    allocations: Sequence[AllocationLine],
    credit_used: int,
    credit_created: int,
    labels: dict[tuple[int, int], str] | None = None,
) -> tuple[LedgerLine, ...]:
    """Expand allocation lines into base/penalty/credit ledger lines."""
    labels = labels or {}
    lines: list[LedgerLine] = []
    for alloc in allocations:
        label = labels.get((alloc.fiscal_year, alloc.fiscal_month), "")
        if alloc.base_charge_portion:
            lines.append(
                LedgerLine(
                    LedgerLineCategory.BASE_CHARGE, alloc.base_charge_portion,
                    alloc.fiscal_year, alloc.fiscal_month, f"{label} charges".strip(),
                )
            )
        if alloc.penalty_portion:
            lines.append(
                LedgerLine(
                    LedgerLineCategory.PENALTY, alloc.penalty_portion,
                    alloc.fiscal_year, alloc.fiscal_month, f"{label} penalties".strip(),
                )
            )
    if credit_used:
        lines.append(LedgerLine(LedgerLineCategory.CREDIT_USED, credit_used, description="credit balance used"))
    if credit_created:
        lines.append(LedgerLine(LedgerLineCategory.CREDIT_CREATED, credit_created, description="credit balance added"))
    return tuple(lines)


@runtime_checkable
class LedgerGateway(Protocol):
    """External ledger/transaction service."""

    def create_transaction(
        self,
        *,
        client_id: str,
        account_id: str,
        amount: int,
        payment_date: date,
        lines: Sequence[LedgerLine],
        description: str,
    ) -> str:
        """Record a payment transaction and return its id."""
        ...

    def delete_transaction(self, transaction_id: str) -> None:
        """Remove a previously created transaction."""
        ...
