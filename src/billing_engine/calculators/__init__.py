"""Billing calculators: money, allocation, invoice lines and statements."""

from billing_engine.calculators.allocator import AllocationResult, CapAllocator
from billing_engine.calculators.chargeables import (
    Chargeable,
    ItemSplit,
    MileageItem,
    RecurringChargeItem,
    TimeItem,
)
from billing_engine.calculators.line_builder import (
    InvoiceDraft,
    InvoiceLine,
    InvoiceLineBuilder,
    InvoiceTotals,
)
from billing_engine.calculators.money import MoneyConvergenceError, MoneyPair
from billing_engine.calculators.statement import StatementProjection, StatementProjector
from billing_engine.calculators.types import BillingPeriod, ItemKind

__all__ = [
    "AllocationResult",
    "BillingPeriod",
    "CapAllocator",
    "Chargeable",
    "InvoiceDraft",
    "InvoiceLine",
    "InvoiceLineBuilder",
    "InvoiceTotals",
    "ItemKind",
    "ItemSplit",
    "MileageItem",
    "MoneyConvergenceError",
    "MoneyPair",
    "RecurringChargeItem",
    "StatementProjection",
    "StatementProjector",
    "TimeItem",
]
