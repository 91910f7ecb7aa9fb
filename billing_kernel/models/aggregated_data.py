"""
Module: billing_kernel.models.aggregated_data
Responsibility: ORM persistence for the cached per-fiscal-year read model and
    for full-rebuild checkpoints.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One document per (client_id, fiscal_year).
    - version only ever increases; every write is a compare-and-swap
      (UPDATE ... WHERE version = expected) issued by the aggregation engine,
      which is the document's only writer.
    - The document is derived and disposable; deleting it loses nothing.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_kernel.db.types import ClientId


class AggregatedDataDocument(TrackedBase):
    """Cached read model for one client fiscal year."""

    __tablename__ = "aggregated_data"
    __table_args__ = (
        UniqueConstraint("client_id", "fiscal_year", name="uq_aggregated_data_year"),
    )

    client_id: Mapped[ClientId] = mapped_column(nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<AggregatedDataDocument {self.client_id}/FY{self.fiscal_year} v{self.version}>"


class RebuildStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class RebuildCheckpoint(TrackedBase):
    """
    Progress marker for a chunked full rebuild.

    processed_account_ids and partial_rows are written after every chunk so
    an interrupted rebuild resumes where it stopped.  The row is deleted
    when the rebuild completes, so only running or abandoned rebuilds
    remain.
    """

    __tablename__ = "rebuild_checkpoints"
    __table_args__ = (
        Index("idx_rebuild_checkpoint_year", "client_id", "fiscal_year", "status"),
    )

    client_id: Mapped[ClientId] = mapped_column(nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RebuildStatus.RUNNING.value
    )
    account_scope: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    processed_account_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    partial_rows: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    chunks_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<RebuildCheckpoint {self.client_id}/FY{self.fiscal_year} "
            f"{self.status} chunks={self.chunks_completed}>"
        )
