"""Vendor, billable item and billing run models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, TimestampMixin, utcnow


# ===== Vendors & Settings =====


class Vendor(Base, TimestampMixin):
    """A billed customer account."""

    __tablename__ = "vendor"

    vendor_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String)
    payment_terms_days: Mapped[int | None] = mapped_column(Integer)


class VendorBillingSettings(Base, TimestampMixin):
    """Per-vendor billing mode, cap and default rates."""

    __tablename__ = "vendor_billing_settings"

    vendor_id: Mapped[UUID] = mapped_column(
        ForeignKey("vendor.vendor_id", ondelete="CASCADE"),
        primary_key=True,
    )
    billing_mode: Mapped[str] = mapped_column(String, nullable=False, default="uncapped")
    cap_inc_tax: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    statement_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hourly_rate_ex_tax: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("75.00")
    )
    tax_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("20.00")
    )
    mileage_rate: Mapped[Decimal] = mapped_column(
        Numeric(8, 3), nullable=False, default=Decimal("0.420")
    )


class Project(Base, TimestampMixin):
    """Work grouping used for invoice lines and balance attribution."""

    __tablename__ = "project"

    project_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    vendor_id: Mapped[UUID] = mapped_column(
        ForeignKey("vendor.vendor_id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("vendor_id", "code", name="project_vendor_code_unique"),
    )

    @property
    def label(self) -> str:
        return f"{self.code}: {self.name}"


# ===== Recurring Charges =====


class RecurringCharge(Base, TimestampMixin):
    """Recurring charge definition; instantiated once per billing period."""

    __tablename__ = "recurring_charge"

    recurring_charge_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    vendor_id: Mapped[UUID] = mapped_column(
        ForeignKey("vendor.vendor_id", ondelete="CASCADE"),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String, nullable=False)
    amount_ex_tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("20.00")
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("amount_ex_tax >= 0", name="recurring_charge_amount_check"),
    )


class RecurringChargeInstance(Base, TimestampMixin):
    """A recurring charge materialized for one billing period."""

    __tablename__ = "recurring_charge_instance"

    instance_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    vendor_id: Mapped[UUID] = mapped_column(
        ForeignKey("vendor.vendor_id", ondelete="CASCADE"),
        nullable=False,
    )
    recurring_charge_id: Mapped[UUID] = mapped_column(
        ForeignKey("recurring_charge.recurring_charge_id", ondelete="CASCADE"),
        nullable=False,
    )
    period_label: Mapped[str] = mapped_column(String, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    description_snapshot: Mapped[str] = mapped_column(String, nullable=False)
    amount_ex_tax_snapshot: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_rate_snapshot: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    sort_order_snapshot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="unbilled")
    billing_run_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("billing_run.billing_run_id", ondelete="SET NULL"),
    )
    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="SET NULL"),
    )
    billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "vendor_id",
            "recurring_charge_id",
            "period_label",
            name="recurring_charge_instance_period_unique",
        ),
        CheckConstraint(
            "status IN ('unbilled', 'pending', 'billed')",
            name="recurring_charge_instance_status_check",
        ),
        Index("recurring_charge_instance_vendor_status_idx", "vendor_id", "status"),
    )


# ===== Work Entries =====


class WorkEntry(Base, TimestampMixin):
    """Time or mileage recorded against a vendor."""

    __tablename__ = "work_entry"

    entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    vendor_id: Mapped[UUID] = mapped_column(
        ForeignKey("vendor.vendor_id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("project.project_id", ondelete="SET NULL"),
    )
    entry_type: Mapped[str] = mapped_column(String, nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    minutes: Mapped[int | None] = mapped_column(Integer)
    miles: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    hourly_rate_ex_tax_snapshot: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    tax_rate_snapshot: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    mileage_rate_snapshot: Mapped[Decimal | None] = mapped_column(Numeric(8, 3))
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="unbilled")
    billing_run_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("billing_run.billing_run_id", ondelete="SET NULL"),
    )
    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="SET NULL"),
    )
    billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "entry_type IN ('time', 'mileage')",
            name="work_entry_type_check",
        ),
        CheckConstraint(
            "status IN ('unbilled', 'pending', 'billed')",
            name="work_entry_status_check",
        ),
        Index("work_entry_vendor_status_idx", "vendor_id", "status"),
    )


# ===== Billing Runs =====


class BillingRun(Base, TimestampMixin):
    """One attempt to bill one vendor for one period."""

    __tablename__ = "billing_run"

    billing_run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    vendor_id: Mapped[UUID] = mapped_column(
        ForeignKey("vendor.vendor_id", ondelete="CASCADE"),
        nullable=False,
    )
    period_label: Mapped[str] = mapped_column(String, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="processing")
    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoice.invoice_id", ondelete="SET NULL"),
    )
    selected_item_ids: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    carried_forward_inc_tax: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    run_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    run_finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("vendor_id", "period_label", name="billing_run_vendor_period_unique"),
        CheckConstraint(
            "status IN ('processing', 'sent', 'failed')",
            name="billing_run_status_check",
        ),
    )
