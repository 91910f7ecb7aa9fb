"""
Module: billing_kernel.models.account
Responsibility: ORM persistence for billable accounts (units, meters) of a
    client.
Architecture position: Kernel > Models.  May import from db/ only.
"""

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_kernel.db.types import AccountCode, ClientId, CurrencyCode


class BillingAccount(TrackedBase):
    """
    One billable account (a unit with a meter) belonging to a client.

    Guarantees:
        - (client_id, account_id) is unique.
        - Inactive accounts keep their history but accept no new payments.
    """

    __tablename__ = "billing_accounts"
    __table_args__ = (
        UniqueConstraint("client_id", "account_id", name="uq_billing_account"),
        Index("idx_billing_account_client", "client_id"),
    )

    client_id: Mapped[ClientId] = mapped_column(nullable=False)
    account_id: Mapped[AccountCode] = mapped_column(nullable=False)
    owner_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    currency: Mapped[CurrencyCode] = mapped_column(nullable=False, default="MXN")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<BillingAccount {self.client_id}/{self.account_id}>"
