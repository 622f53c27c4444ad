"""Pydantic schemas for billing requests and results."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from billing_engine.calculators.types import BillingPeriod

VendorRunStatus = Literal["sent", "skipped", "failed"]


# ============================================================================
# Request
# ============================================================================


class BillingRequest(BaseModel):
    """Invocation parameters for a billing batch."""

    vendor_id: UUID | None = None
    period: str | None = Field(default=None, description="Billing period YYYY-MM")
    force: bool = False
    dry_run: bool = False
    preview: bool = False

    @field_validator("period")
    @classmethod
    def _valid_period(cls, value: str | None) -> str | None:
        if value is not None:
            BillingPeriod.parse(value)
        return value


# ============================================================================
# Results
# ============================================================================


class DraftLineSummary(BaseModel):
    """Line of a computed (possibly unpersisted) invoice."""

    model_config = ConfigDict(from_attributes=True)

    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    total_amount: Decimal


class DraftSummary(BaseModel):
    """Invoice draft as returned by dry runs."""

    reference: str
    subtotal_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    lines: list[DraftLineSummary] = Field(default_factory=list)
    notes: str | None = None


class VendorRunResult(BaseModel):
    """Outcome for one vendor."""

    vendor_id: UUID
    status: VendorRunStatus
    billing_run_id: UUID | None = None
    invoice_id: UUID | None = None
    invoice_number: str | None = None
    error: str | None = None
    message: str | None = None
    carried_forward_inc_tax: Decimal | None = None
    draft: DraftSummary | None = None


class BatchResult(BaseModel):
    """Outcome of a billing batch."""

    period: str
    skipped_reason: str | None = None
    results: list[VendorRunResult] = Field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.results if r.status == "sent")

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")

    @property
    def skipped_count(self) -> int:
        return sum(1 for r in self.results if r.status == "skipped")
