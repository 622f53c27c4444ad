"""Invoice delivery boundary."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from billing_engine.models import Invoice, Vendor


@dataclass(frozen=True)
class DispatchResult:
    """Outcome reported by the delivery component."""

    success: bool
    error: str | None = None
    message_id: str | None = None


class InvoiceDispatcher(Protocol):
    """Delivers a created invoice to the vendor (email, portal, ...)."""

    async def send(self, invoice: Invoice, vendor: Vendor | None) -> DispatchResult:
        ...


class UnconfiguredDispatcher:
    """Default dispatcher when no delivery channel is wired in."""

    async def send(self, invoice: Invoice, vendor: Vendor | None) -> DispatchResult:
        return DispatchResult(success=False, error="Email service is not configured")


class RecordingDispatcher:
    """Accepts every invoice and remembers it; for previews and tests."""

    def __init__(self) -> None:
        self.sent: list[Invoice] = []

    async def send(self, invoice: Invoice, vendor: Vendor | None) -> DispatchResult:
        self.sent.append(invoice)
        return DispatchResult(success=True, message_id=invoice.invoice_number)
