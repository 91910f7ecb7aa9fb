"""
Module: billing_kernel.models.billing_period
Responsibility: ORM persistence for one billing period of one account: the
    charge, the metered consumption, the mutable penalty and the paid total
    with its ordered payment allocations.
Architecture position: Kernel > Models.  May import from db/ and
    domain/dtos (PeriodStatus).

Invariants enforced:
    - (client_id, account_id, fiscal_year, fiscal_month) is unique.
    - paid_amount == sum(allocations.amount_applied); the payment service is
      the only writer of both.
    - status is derived by refresh_status(); nothing assigns it directly.
    - version_id increments on every UPDATE so two writers on the same
      period fail with StaleDataError instead of losing an update.

Lifecycle:
    Created by bill generation or historical import.  Mutated only by the
    payment service and the penalty recalculation service.  Deleted only
    by the administrative period purge.
"""

from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.db.types import AccountCode, ClientId, CurrencyCode, MinorUnits, Quantity
from billing_kernel.domain.dtos import PeriodStatus


class BillingPeriod(TrackedBase):
    """
    Bill for one fiscal month of one account.

    Guarantees:
        - bill_date/due_date reflect the billed period, never creation time.
        - base_charge, penalty_amount and paid_amount are integer minor units.
        - allocations are ordered by sequence and only ever appended to or
          removed by an exact reversal.
    """

    __tablename__ = "billing_periods"
    __table_args__ = (
        UniqueConstraint(
            "client_id", "account_id", "fiscal_year", "fiscal_month",
            name="uq_billing_period_key",
        ),
        ForeignKeyConstraint(
            ["client_id", "account_id"],
            ["billing_accounts.client_id", "billing_accounts.account_id"],
            name="fk_billing_period_account",
        ),
        CheckConstraint("fiscal_month >= 0 AND fiscal_month <= 11", name="ck_period_fiscal_month"),
        CheckConstraint("base_charge >= 0", name="ck_period_base_charge"),
        CheckConstraint("penalty_amount >= 0", name="ck_period_penalty"),
        CheckConstraint("paid_amount >= 0", name="ck_period_paid"),
        Index("idx_period_account", "client_id", "account_id", "fiscal_year", "fiscal_month"),
        Index("idx_period_year", "client_id", "fiscal_year"),
        Index("idx_period_status", "client_id", "status"),
    )

    client_id: Mapped[ClientId] = mapped_column(nullable=False)
    account_id: Mapped[AccountCode] = mapped_column(nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_month: Mapped[int] = mapped_column(Integer, nullable=False)

    bill_date: Mapped[date] = mapped_column(Date, nullable=False)
    # Nullable only for malformed legacy imports; recalculation skips those.
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    currency: Mapped[CurrencyCode] = mapped_column(nullable=False, default="MXN")
    base_charge: Mapped[MinorUnits] = mapped_column(nullable=False)
    penalty_amount: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)
    paid_amount: Mapped[MinorUnits] = mapped_column(nullable=False, default=0)

    consumption: Mapped[Quantity | None] = mapped_column(nullable=True)
    prior_reading: Mapped[Quantity | None] = mapped_column(nullable=True)
    current_reading: Mapped[Quantity | None] = mapped_column(nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PeriodStatus.UNPAID.value
    )

    last_penalty_update: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    penalty_as_of: Mapped[date | None] = mapped_column(Date, nullable=True)

    source: Mapped[str] = mapped_column(String(20), nullable=False, default="generated")

    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    allocations: Mapped[list["PaymentAllocation"]] = relationship(  # noqa: F821
        back_populates="period",
        order_by="PaymentAllocation.sequence",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<BillingPeriod {self.account_id} FY{self.fiscal_year}-"
            f"{self.fiscal_month:02d}: {self.status}>"
        )

    @property
    def total_due(self) -> int:
        return self.base_charge + self.penalty_amount

    @property
    def outstanding(self) -> int:
        return max(0, self.total_due - self.paid_amount)

    @property
    def is_paid(self) -> bool:
        return self.status == PeriodStatus.PAID.value

    def refresh_status(self) -> PeriodStatus:
        """Re-derive status from the amounts. The only writer of status."""
        derived = PeriodStatus.derive(self.base_charge, self.penalty_amount, self.paid_amount)
        if self.status != derived.value:
            self.status = derived.value
        return derived

    def next_allocation_sequence(self) -> int:
        return max((a.sequence for a in self.allocations), default=0) + 1
