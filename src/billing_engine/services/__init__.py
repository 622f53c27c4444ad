"""Billing services: run coordination, eligibility, locking and invoicing."""

from billing_engine.services.billing_run_service import BillingRunService, RunClaim
from billing_engine.services.billing_service import BillingService
from billing_engine.services.dispatch import (
    DispatchResult,
    InvoiceDispatcher,
    UnconfiguredDispatcher,
)
from billing_engine.services.eligibility_service import CapSetting, EligibilityService
from billing_engine.services.invoice_service import InvoiceService, SqlInvoiceService
from billing_engine.services.locking_service import LockingService
from billing_engine.services.state_machine import (
    BillingRunStateMachine,
    ClaimOutcome,
    InvalidTransitionError,
    RunStatus,
)

__all__ = [
    "BillingRunService",
    "BillingRunStateMachine",
    "BillingService",
    "CapSetting",
    "ClaimOutcome",
    "DispatchResult",
    "EligibilityService",
    "InvalidTransitionError",
    "InvoiceDispatcher",
    "InvoiceService",
    "LockingService",
    "RunClaim",
    "RunStatus",
    "SqlInvoiceService",
    "UnconfiguredDispatcher",
]
