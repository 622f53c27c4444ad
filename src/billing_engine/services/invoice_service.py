"""Invoice persistence: numbering, transactional creation and lookup."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.line_builder import InvoiceDraft
from billing_engine.database import dialect_insert
from billing_engine.models import Invoice, InvoiceLineItem, InvoiceSeries

logger = logging.getLogger(__name__)

INVOICE_NUMBER_OFFSET = 5000
INVOICE_NUMBER_WIDTH = 5
_BASE36_DIGITS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative value")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def format_invoice_number(series_code: str, sequence: int) -> str:
    """``<series>-<base36(sequence + offset)>``, zero-padded."""
    encoded = to_base36(sequence + INVOICE_NUMBER_OFFSET).rjust(INVOICE_NUMBER_WIDTH, "0")
    return f"{series_code}-{encoded}"


class InvoiceService(Protocol):
    """Invoice store used by the billing run coordinator."""

    async def create_invoice(self, draft: InvoiceDraft, billing_run_id: UUID) -> Invoice:
        ...

    async def get_invoice(self, invoice_id: UUID) -> Invoice | None:
        ...

    async def find_invoice_for_run(self, billing_run_id: UUID) -> Invoice | None:
        ...

    async def mark_sent(self, invoice: Invoice, sent_at: datetime) -> None:
        ...


class SqlInvoiceService:
    """Invoice store backed by the billing database.

    Creation writes the invoice and all line items in the caller's
    transaction; nothing is visible until the coordinator commits.
    """

    def __init__(self, session: AsyncSession, series_code: str = "INV"):
        self.session = session
        self.series_code = series_code

    async def next_invoice_number(self) -> str:
        """Atomically advance the series sequence."""
        await self.session.execute(
            dialect_insert(self.session, InvoiceSeries)
            .values(series_code=self.series_code, current_sequence=0)
            .on_conflict_do_nothing(index_elements=["series_code"])
        )
        result = await self.session.execute(
            update(InvoiceSeries)
            .where(InvoiceSeries.series_code == self.series_code)
            .values(current_sequence=InvoiceSeries.current_sequence + 1)
            .returning(InvoiceSeries.current_sequence)
        )
        return format_invoice_number(self.series_code, result.scalar_one())

    async def create_invoice(self, draft: InvoiceDraft, billing_run_id: UUID) -> Invoice:
        totals = draft.totals
        invoice = Invoice(
            vendor_id=draft.vendor_id,
            billing_run_id=billing_run_id,
            invoice_number=await self.next_invoice_number(),
            reference=draft.reference,
            invoice_date=draft.invoice_date,
            due_date=draft.due_date,
            status="draft",
            subtotal_amount=totals.subtotal_amount,
            discount_amount=totals.discount_amount,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            notes=draft.notes,
            internal_notes=draft.internal_notes,
        )
        self.session.add(invoice)
        await self.session.flush()

        for position, line in enumerate(draft.lines, start=1):
            self.session.add(
                InvoiceLineItem(
                    invoice_id=invoice.invoice_id,
                    position=position,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    discount_percentage=line.discount_percentage,
                    tax_rate=line.tax_rate,
                    subtotal_amount=line.subtotal_amount,
                    tax_amount=line.tax_amount,
                    total_amount=line.total_amount,
                )
            )
        await self.session.flush()

        logger.info(
            "Created invoice %s (%s) for billing run %s: %d lines, total %s",
            invoice.invoice_number,
            invoice.invoice_id,
            billing_run_id,
            len(draft.lines),
            invoice.total_amount,
        )
        return invoice

    async def get_invoice(self, invoice_id: UUID) -> Invoice | None:
        return await self.session.get(Invoice, invoice_id, populate_existing=True)

    async def find_invoice_for_run(self, billing_run_id: UUID) -> Invoice | None:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.billing_run_id == billing_run_id)
            .order_by(Invoice.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_lines(self, invoice_id: UUID) -> list[InvoiceLineItem]:
        result = await self.session.execute(
            select(InvoiceLineItem)
            .where(InvoiceLineItem.invoice_id == invoice_id)
            .order_by(InvoiceLineItem.position)
        )
        return list(result.scalars().all())

    async def mark_sent(self, invoice: Invoice, sent_at: datetime) -> None:
        if invoice.status == "draft":
            invoice.status = "sent"
            invoice.sent_at = sent_at
            await self.session.flush()
