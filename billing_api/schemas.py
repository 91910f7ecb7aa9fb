"""Request and response models for the billing HTTP surface."""

from __future__ import annotations

from datetime import date
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PeriodRef(BaseModel):
    fiscal_year: int
    fiscal_month: int = Field(ge=0, le=11)


class PaymentRequest(BaseModel):
    """
    A payment to record.

    ``amount`` is a major-unit decimal string such as ``"1250.50"``; floats
    are rejected so the value reaches the money boundary unaltered.
    """

    model_config = ConfigDict(extra="forbid")

    account_id: str = Field(min_length=1)
    amount: str = Field(min_length=1, examples=["1250.50"])
    payment_date: date
    as_of_date: date | None = None
    periods_oldest_first: list[PeriodRef] | None = None
    payment_method: str = "cash"
    reference: str = ""
    notes: str = ""


class RecalculateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scope: str | list[str] = "all"
    as_of_date: date | None = None


class RebuildRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fiscal_year: int
    account_scope: str | list[str] = "all"
    max_chunks: int | None = Field(default=None, ge=1)
    resume_checkpoint_id: UUID | None = None


class BillingResponse(BaseModel):
    status: str
    data: dict[str, Any] | None = None
    cache_versions: dict[str, int] = Field(default_factory=dict)
    error_code: str | None = None
    message: str | None = None


class ErrorResponse(BaseModel):
    error_code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
