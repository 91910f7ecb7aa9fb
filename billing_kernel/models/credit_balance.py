"""
Module: billing_kernel.models.credit_balance
Responsibility: ORM persistence for each account's running credit balance
    and its signed history.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - balance >= 0 (check constraint; the credit service refuses first).
    - balance == sum(history.delta).
    - Each history entry records the payment and external transaction that
      caused it, so a reversal removes that exact entry.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.db.types import (
    AccountCode,
    ClientId,
    CurrencyCode,
    LongText,
    MinorUnits,
    TransactionRef,
)


class CreditBalance(TrackedBase):
    """Standing credit of one account."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        UniqueConstraint("client_id", "account_id", name="uq_credit_balance_account"),
        ForeignKeyConstraint(
            ["client_id", "account_id"],
            ["billing_accounts.client_id", "billing_accounts.account_id"],
            name="fk_credit_balance_account",
        ),
        CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
    )

    client_id: Mapped[ClientId] = mapped_column(nullable=False)
    account_id: Mapped[AccountCode] = mapped_column(nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False, default="MXN")
    balance: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    history: Mapped[list["CreditBalanceEntry"]] = relationship(
        back_populates="credit_balance",
        order_by="CreditBalanceEntry.sequence",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<CreditBalance {self.account_id}: {self.balance}>"

    def next_sequence(self) -> int:
        return max((e.sequence for e in self.history), default=0) + 1


class CreditBalanceEntry(TrackedBase):
    """One signed movement of an account's credit balance."""

    __tablename__ = "credit_balance_entries"
    __table_args__ = (
        UniqueConstraint("credit_balance_id", "sequence", name="uq_credit_entry_sequence"),
    )

    credit_balance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("credit_balances.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    delta: Mapped[MinorUnits] = mapped_column(nullable=False)
    balance_after: Mapped[MinorUnits] = mapped_column(nullable=False)

    payment_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("payments.id"), nullable=True
    )
    external_transaction_id: Mapped[TransactionRef | None] = mapped_column(nullable=True)

    # payment | overpayment | credit_used | adjustment | import
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    note: Mapped[LongText] = mapped_column(nullable=False, default="")
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    credit_balance: Mapped[CreditBalance] = relationship(back_populates="history")

    def __repr__(self) -> str:
        return f"<CreditBalanceEntry seq={self.sequence} {self.delta:+d} ({self.source})>"
