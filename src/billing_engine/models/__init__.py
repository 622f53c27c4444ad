"""ORM models."""

from billing_engine.models.base import Base, TimestampMixin
from billing_engine.models.billing import (
    BillingRun,
    Project,
    RecurringCharge,
    RecurringChargeInstance,
    Vendor,
    VendorBillingSettings,
    WorkEntry,
)
from billing_engine.models.invoice import (
    OPEN_INVOICE_EXCLUDED_STATUSES,
    Invoice,
    InvoiceLineItem,
    InvoiceSeries,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "BillingRun",
    "Invoice",
    "InvoiceLineItem",
    "InvoiceSeries",
    "OPEN_INVOICE_EXCLUDED_STATUSES",
    "Project",
    "RecurringCharge",
    "RecurringChargeInstance",
    "Vendor",
    "VendorBillingSettings",
    "WorkEntry",
]
