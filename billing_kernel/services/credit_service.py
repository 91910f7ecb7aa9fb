"""
CreditBalanceService -- the account credit ledger.

Responsibility:
    Owns each account's running credit balance and its signed history.
    Every movement is a history entry linked to the payment and external
    transaction that caused it, so a reversal removes that exact entry
    instead of recomputing the balance.

Architecture position:
    Kernel > Services -- imperative shell.  Called by PaymentService and by
    the historical importer.

Invariants enforced:
    - balance >= 0: a delta that would overdraw raises
      CreditBalanceOverdrawError before anything is written.
    - balance == sum(history.delta) after every call.

Failure modes:
    - CreditBalanceOverdrawError on a delta or removal that would make the
      balance negative.
    - AccountNotFoundError for an unknown account.

Notes:
    ``balance_after`` on an entry is the balance at the time it was
    recorded.  Removing an earlier entry does not rewrite the snapshots of
    later entries; the authoritative balance is always the column.
"""

from __future__ import annotations

from uuid import UUID

from billing_kernel.exceptions import AccountNotFoundError, CreditBalanceOverdrawError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.credit_balance import CreditBalance, CreditBalanceEntry
from billing_kernel.services.base import BaseService

logger = get_logger("services.credit")


class CreditBalanceService(BaseService):
    """
    Credit ledger for one client's accounts.

    Guarantees:
        - One CreditBalance row per account, created lazily.
        - The service flushes but never commits.
    """

    def get_or_create(self, account_id: str, for_update: bool = False) -> CreditBalance:
        credit = self._selector.credit_balance(account_id, for_update=for_update)
        if credit is not None:
            return credit

        account = self._selector.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id, self.client_id)

        credit = CreditBalance(
            client_id=self.client_id,
            account_id=account_id,
            currency=account.currency,
            balance=0,
        )
        self.session.add(credit)
        self.session.flush()
        logger.debug("credit_balance_created", extra={"account_id": account_id})
        return credit

    def get_balance(self, account_id: str) -> int:
        credit = self._selector.credit_balance(account_id)
        return credit.balance if credit is not None else 0

    def get_history(self, account_id: str) -> list[CreditBalanceEntry]:
        credit = self._selector.credit_balance(account_id)
        return list(credit.history) if credit is not None else []

    def entries_for_payment(self, account_id: str, payment_id: UUID) -> list[CreditBalanceEntry]:
        return [e for e in self.get_history(account_id) if e.payment_id == payment_id]

    def apply_delta(
        self,
        account_id: str,
        delta: int,
        source: str,
        note: str = "",
        payment_id: UUID | None = None,
        external_transaction_id: str | None = None,
    ) -> CreditBalanceEntry:
        """
        Record one signed movement of the account's credit.

        Raises:
            CreditBalanceOverdrawError: If balance + delta would be negative.
        """
        credit = self.get_or_create(account_id, for_update=True)
        if credit.balance + delta < 0:
            raise CreditBalanceOverdrawError(account_id, credit.balance, delta)

        credit.balance += delta
        entry = CreditBalanceEntry(
            sequence=credit.next_sequence(),
            delta=delta,
            balance_after=credit.balance,
            payment_id=payment_id,
            external_transaction_id=external_transaction_id,
            source=source,
            note=note,
            recorded_at=self._clock.now_utc(),
        )
        credit.history.append(entry)
        self.session.flush()

        logger.info(
            "credit_balance_changed",
            extra={
                "account_id": account_id,
                "delta": delta,
                "balance_after": credit.balance,
                "source": source,
                "transaction_id": external_transaction_id,
            },
        )
        return entry

    def remove_entry(self, entry: CreditBalanceEntry) -> int:
        """
        Remove one history entry and invert its delta.

        Returns:
            The balance after removal.

        Raises:
            CreditBalanceOverdrawError: If removing the entry would overdraw.
        """
        credit = entry.credit_balance
        if credit.balance - entry.delta < 0:
            raise CreditBalanceOverdrawError(credit.account_id, credit.balance, -entry.delta)

        credit.balance -= entry.delta
        credit.history.remove(entry)
        self.session.flush()

        logger.info(
            "credit_balance_entry_removed",
            extra={
                "account_id": credit.account_id,
                "delta_removed": entry.delta,
                "balance_after": credit.balance,
                "transaction_id": entry.external_transaction_id,
            },
        )
        return credit.balance

    def adjust_balance(self, account_id: str, delta: int, note: str, actor: str = "") -> CreditBalanceEntry:
        """Administrative adjustment; refused when it would overdraw."""
        entry = self.apply_delta(account_id, delta, source="adjustment", note=note)
        logger.warning(
            "credit_balance_adjusted",
            extra={"account_id": account_id, "delta": delta, "actor_id": actor, "note": note},
        )
        return entry
