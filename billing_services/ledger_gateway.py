"""
billing_services.ledger_gateway -- External ledger adapters.

Responsibility:
    Implementations of the kernel's ``LedgerGateway`` port.  The real
    transaction service lives outside this system; ``InMemoryLedgerGateway``
    stands in for it in tests, local runs and the nightly batch.

Architecture position:
    Services -- adapter for an external collaborator.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from uuid import uuid4

from billing_kernel.domain.ledger import LedgerGateway, LedgerLine, LedgerLineCategory
from billing_kernel.exceptions import LedgerGatewayError
from billing_kernel.logging_config import get_logger

logger = get_logger("services.ledger_gateway")

__all__ = ["InMemoryLedgerGateway", "LedgerGateway", "LedgerTransaction"]


@dataclass(frozen=True)
class LedgerTransaction:
    transaction_id: str
    client_id: str
    account_id: str
    amount: int
    payment_date: date
    lines: tuple[LedgerLine, ...]
    description: str

    def total_for(self, category: LedgerLineCategory) -> int:
        return sum(line.amount for line in self.lines if line.category == category)


class InMemoryLedgerGateway:
    """
    Process-local ledger.

    Transaction ids are ``TXN-`` followed by 12 hex characters.  Deleting an
    unknown id raises LedgerGatewayError.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.transactions: dict[str, LedgerTransaction] = {}
        self.deleted: list[str] = []

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
        transaction_id = f"TXN-{uuid4().hex[:12].upper()}"
        txn = LedgerTransaction(
            transaction_id=transaction_id,
            client_id=client_id,
            account_id=account_id,
            amount=amount,
            payment_date=payment_date,
            lines=tuple(lines),
            description=description,
        )
        with self._lock:
            self.transactions[transaction_id] = txn
        logger.debug(
            "ledger_transaction_created",
            extra={"transaction_id": transaction_id, "amount": amount, "lines": len(txn.lines)},
        )
        return transaction_id

    def delete_transaction(self, transaction_id: str) -> None:
        with self._lock:
            if transaction_id not in self.transactions:
                raise LedgerGatewayError("delete_transaction", f"unknown transaction {transaction_id}")
            del self.transactions[transaction_id]
            self.deleted.append(transaction_id)
        logger.debug("ledger_transaction_deleted", extra={"transaction_id": transaction_id})

    def get(self, transaction_id: str) -> LedgerTransaction | None:
        return self.transactions.get(transaction_id)
