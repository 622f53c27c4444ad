"""Billing error taxonomy.

Every failure a vendor run can hit derives from ``BillingError``. The batch
coordinator catches these per vendor, records the message on the billing run
and carries on with the next vendor.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID


class BillingError(Exception):
    """Base class for billing failures."""


class ValidationError(BillingError):
    """Malformed vendor settings or item rate snapshots."""


class ConflictError(BillingError):
    """A concurrent writer changed a billing run underneath us."""

    def __init__(self, message: str, billing_run_id: UUID | None = None):
        self.billing_run_id = billing_run_id
        super().__init__(message)


class PartialLockFailure(BillingError):
    """Fewer items were locked than requested; another run claimed them first."""

    def __init__(self, requested: int, locked: int):
        self.requested = requested
        self.locked = locked
        super().__init__(
            f"Locked {locked} of {requested} billable items; "
            "another billing run claimed the rest"
        )


class CapUnsatisfiable(BillingError):
    """Eligible items exist but nothing fits under the monthly cap."""

    def __init__(self, cap_inc_tax: Decimal, eligible_count: int):
        self.cap_inc_tax = cap_inc_tax
        self.eligible_count = eligible_count
        super().__init__(
            "Nothing could be billed within the monthly cap. "
            "Increase the cap or reduce charges."
        )


class DownstreamFailure(BillingError):
    """The invoice exists but could not be dispatched."""

    def __init__(self, invoice_id: UUID, message: str):
        self.invoice_id = invoice_id
        super().__init__(message)
