"""
Module: billing_kernel.models.payment
Responsibility: ORM persistence for applied payments and their per-period
    allocations.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - base_charge_portion + penalty_portion == amount_applied on every
      allocation (check constraint, and the AllocationLine DTO validates
      before any row is built).
    - external_transaction_id is unique per payment and is set before the
      credit ledger entry referencing it is written.
    - A reversed Payment keeps its row (status REVERSED) as the audit trail;
      its allocations are removed so period arithmetic stays exact.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
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
    ShortCode,
    TransactionRef,
)


class PaymentStatus(str, Enum):
    """Lifecycle of a payment: APPLIED -> REVERSED, never back."""

    APPLIED = "applied"
    REVERSED = "reversed"


class Payment(TrackedBase):
    """
    One payment received for an account.

    Guarantees:
        - amount is the cash received, in minor units.
        - credit_balance_delta is the authoritative net change this payment
          made to the account's credit balance.
    """

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("external_transaction_id", name="uq_payment_transaction"),
        ForeignKeyConstraint(
            ["client_id", "account_id"],
            ["billing_accounts.client_id", "billing_accounts.account_id"],
            name="fk_payment_account",
        ),
        CheckConstraint("amount > 0", name="ck_payment_amount"),
        Index("idx_payment_account", "client_id", "account_id", "payment_date"),
    )

    client_id: Mapped[ClientId] = mapped_column(nullable=False)
    account_id: Mapped[AccountCode] = mapped_column(nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False, default="MXN")
    amount: Mapped[MinorUnits] = mapped_column(nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)

    external_transaction_id: Mapped[TransactionRef | None] = mapped_column(nullable=True)

    credit_used: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)
    credit_created: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)
    credit_balance_delta: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.APPLIED.value
    )
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment_method: Mapped[ShortCode] = mapped_column(nullable=False, default="cash")
    reference: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    notes: Mapped[LongText] = mapped_column(nullable=False, default="")

    allocations: Mapped[list["PaymentAllocation"]] = relationship(
        back_populates="payment",
        order_by="PaymentAllocation.sequence",
    )

    def __repr__(self) -> str:
        return f"<Payment {self.external_transaction_id} {self.account_id}: {self.amount} {self.status}>"

    @property
    def is_reversed(self) -> bool:
        return self.status == PaymentStatus.REVERSED.value


class PaymentAllocation(TrackedBase):
    """
    A payment's share of one billing period.

    Guarantees:
        - Immutable once written; removed only by an exact reversal.
        - credit_balance_delta is the part of the payment's credit movement
          attributed to this line (negative when credit covered it, positive
          on the line that absorbed an overpayment).
    """

    __tablename__ = "payment_allocations"
    __table_args__ = (
        CheckConstraint(
            "base_charge_portion + penalty_portion = amount_applied",
            name="ck_allocation_split",
        ),
        CheckConstraint("amount_applied >= 0", name="ck_allocation_amount"),
        CheckConstraint("base_charge_portion >= 0", name="ck_allocation_base"),
        CheckConstraint("penalty_portion >= 0", name="ck_allocation_penalty"),
        UniqueConstraint("period_id", "sequence", name="uq_allocation_sequence"),
        Index("idx_allocation_payment", "payment_id"),
        Index("idx_allocation_transaction", "external_transaction_id"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("payments.id"), nullable=False
    )
    period_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("billing_periods.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    amount_applied: Mapped[MinorUnits] = mapped_column(nullable=False)
    base_charge_portion: Mapped[MinorUnits] = mapped_column(nullable=False)
    penalty_portion: Mapped[MinorUnits] = mapped_column(nullable=False)
    credit_balance_delta: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)

    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    external_transaction_id: Mapped[TransactionRef | None] = mapped_column(nullable=True)

    payment: Mapped[Payment] = relationship(back_populates="allocations")
    period: Mapped["BillingPeriod"] = relationship(back_populates="allocations")  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<PaymentAllocation {self.external_transaction_id} seq={self.sequence}: "
            f"{self.base_charge_portion}+{self.penalty_portion}>"
        )
