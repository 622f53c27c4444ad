"""Invoice line materialization: itemized and statement presentations."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Sequence
from uuid import UUID

from billing_engine.calculators.chargeables import (
    Chargeable,
    MileageItem,
    RecurringChargeItem,
    TimeItem,
    UNASSIGNED_BUCKET,
)
from billing_engine.calculators.money import (
    DEFAULT_MAX_ITERATIONS,
    HUNDRED,
    ZERO,
    MoneyConvergenceError,
    ex_tax_for_target_inc_tax,
    round_money,
)
from billing_engine.errors import ValidationError

if TYPE_CHECKING:
    from billing_engine.calculators.allocator import AllocationResult

ROUNDING_DESCRIPTION = "Rounding adjustment"
STATEMENT_DESCRIPTION = "Account balance payment"


def format_rate(rate: Decimal) -> str:
    """Render a percentage without trailing zeros (20.00 -> 20, 12.50 -> 12.5)."""
    return format(rate.normalize(), "f")


def format_quantity(value: Decimal) -> str:
    return format(value.normalize(), "f")


@dataclass
class InvoiceLine:
    """A draft invoice line."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    discount_percentage: Decimal = ZERO

    @property
    def gross_amount(self) -> Decimal:
        return round_money(self.quantity * self.unit_price)

    @property
    def discount_amount(self) -> Decimal:
        return round_money(self.gross_amount * self.discount_percentage / HUNDRED)

    @property
    def subtotal_amount(self) -> Decimal:
        return self.gross_amount - self.discount_amount

    @property
    def tax_amount(self) -> Decimal:
        return round_money(self.subtotal_amount * self.tax_rate / HUNDRED)

    @property
    def total_amount(self) -> Decimal:
        return self.subtotal_amount + self.tax_amount


@dataclass(frozen=True)
class InvoiceTotals:
    """Totals summed from line amounts."""

    subtotal_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


@dataclass
class InvoiceDraft:
    """Ephemeral invoice handed to the invoice service."""

    vendor_id: UUID
    period_label: str
    reference: str
    invoice_date: date
    due_date: date
    lines: list[InvoiceLine] = field(default_factory=list)
    notes: str | None = None
    internal_notes: str | None = None
    statement_mode: bool = False

    @property
    def totals(self) -> InvoiceTotals:
        return calculate_totals(self.lines)


def build_invoice_draft(
    vendor_id: UUID,
    period_label: str,
    reference_prefix: str,
    invoice_date: date,
    payment_terms_days: int,
    statement_mode: bool = False,
) -> InvoiceDraft:
    """Empty draft with reference ``<prefix> <period>`` and due date from payment terms."""
    return InvoiceDraft(
        vendor_id=vendor_id,
        period_label=period_label,
        reference=f"{reference_prefix} {period_label}",
        invoice_date=invoice_date,
        due_date=invoice_date + timedelta(days=payment_terms_days),
        statement_mode=statement_mode,
    )


def calculate_totals(lines: Sequence[InvoiceLine]) -> InvoiceTotals:
    """Quantity x unit, minus discount %, plus tax %, per line, summed."""
    gross = sum((line.gross_amount for line in lines), ZERO)
    discount = sum((line.discount_amount for line in lines), ZERO)
    tax = sum((line.tax_amount for line in lines), ZERO)
    total = sum((line.total_amount for line in lines), ZERO)
    return InvoiceTotals(
        subtotal_amount=gross - discount,
        discount_amount=discount,
        tax_amount=tax,
        total_amount=total,
    )


class InvoiceLineBuilder:
    """Builds invoice lines from an allocation.

    Rounding:
    - Items are priced individually, lines are priced per group
    - Grouping drift is corrected with an explicit zero-rated rounding line
    - Statement top-ups seek an exact inc-tax target on the primary-rate line
    """

    def __init__(self, max_iterations: int = DEFAULT_MAX_ITERATIONS):
        self.max_iterations = max_iterations

    # ===== Itemized =====

    def build_itemized_lines(
        self,
        items: Sequence[Chargeable],
        invoice_period_label: str,
    ) -> list[InvoiceLine]:
        lines: list[InvoiceLine] = []

        for item in items:
            if isinstance(item, RecurringChargeItem):
                description = item.description
                if item.period_label != invoice_period_label:
                    description = f"{description} ({item.period_label})"
                lines.append(
                    InvoiceLine(
                        description=description,
                        quantity=Decimal("1"),
                        unit_price=item.ex_tax,
                        tax_rate=item.tax_rate,
                    )
                )

        mileage = [item for item in items if isinstance(item, MileageItem)]
        if mileage:
            lines.append(self._mileage_line(mileage))

        lines.extend(self._time_lines([item for item in items if isinstance(item, TimeItem)]))
        return lines

    @staticmethod
    def _mileage_line(mileage: list[MileageItem]) -> InvoiceLine:
        miles = sum((item.miles for item in mileage), ZERO)
        rates = {item.mileage_rate for item in mileage}
        if len(rates) == 1:
            rate = rates.pop()
            return InvoiceLine(
                description=f"Mileage ({format_quantity(miles)} miles @ {format_quantity(rate)}/mile)",
                quantity=miles,
                unit_price=rate,
                tax_rate=ZERO,
            )
        return InvoiceLine(
            description=f"Mileage ({format_quantity(miles)} miles)",
            quantity=Decimal("1"),
            unit_price=sum((item.ex_tax for item in mileage), ZERO),
            tax_rate=ZERO,
        )

    @staticmethod
    def _time_lines(time_items: list[TimeItem]) -> list[InvoiceLine]:
        groups: OrderedDict[tuple[str, Decimal], list[TimeItem]] = OrderedDict()
        for item in time_items:
            key = (item.project_label or UNASSIGNED_BUCKET, item.tax_rate)
            groups.setdefault(key, []).append(item)

        lines = []
        for (label, rate), group in groups.items():
            minutes = sum(item.minutes for item in group)
            hours = round_money(Decimal(minutes) / Decimal(60))
            lines.append(
                InvoiceLine(
                    description=f"{label} ({hours}h)",
                    quantity=Decimal("1"),
                    unit_price=sum((item.ex_tax for item in group), ZERO),
                    tax_rate=rate,
                )
            )
        return lines

    # ===== Statement =====

    @staticmethod
    def build_statement_lines(items: Sequence[Chargeable]) -> list[InvoiceLine]:
        """One aggregate line per tax rate, highest rate first."""
        by_rate: dict[Decimal, Decimal] = {}
        for item in items:
            by_rate[item.tax_rate] = by_rate.get(item.tax_rate, ZERO) + item.ex_tax

        return [
            InvoiceLine(
                description=statement_line_description(rate),
                quantity=Decimal("1"),
                unit_price=by_rate[rate],
                tax_rate=rate,
            )
            for rate in sorted(by_rate, reverse=True)
        ]

    def apply_top_up(
        self,
        lines: list[InvoiceLine],
        target_inc_tax: Decimal,
        primary_tax_rate: Decimal,
    ) -> list[InvoiceLine]:
        """Adjust the primary-rate line so the invoice total equals the target.

        Creates the primary-rate line when missing. If the target is not
        reachable at that rate, the closest amount below is used and the
        residual goes on a zero-rated rounding line.
        """
        target = round_money(target_inc_tax)
        if calculate_totals(lines).total_amount == target:
            return lines

        primary = next((line for line in lines if line.tax_rate == primary_tax_rate), None)
        if primary is None:
            primary = InvoiceLine(
                description=statement_line_description(primary_tax_rate),
                quantity=Decimal("1"),
                unit_price=ZERO,
                tax_rate=primary_tax_rate,
            )
            lines.append(primary)
            lines.sort(key=lambda line: line.tax_rate, reverse=True)

        others = sum((line.total_amount for line in lines if line is not primary), ZERO)
        needed = target - others
        if needed < ZERO:
            raise ValidationError(
                f"Statement target {target} is below the other lines' total {others}"
            )

        try:
            pair = ex_tax_for_target_inc_tax(needed, primary_tax_rate, self.max_iterations)
            primary.unit_price = pair.ex_tax
        except MoneyConvergenceError as exc:
            if exc.closest_below is None:
                raise
            primary.unit_price = exc.closest_below.ex_tax
            lines.append(rounding_line(needed - exc.closest_below.inc_tax))

        return lines

    # ===== Reconciliation =====

    @staticmethod
    def reconcile_rounding(
        lines: list[InvoiceLine],
        expected_total: Decimal,
    ) -> InvoiceLine | None:
        """Append a rounding line if grouped totals drift from item totals."""
        drift = round_money(expected_total) - calculate_totals(lines).total_amount
        if drift == ZERO:
            return None
        line = rounding_line(drift)
        lines.append(line)
        return line


def statement_line_description(rate: Decimal) -> str:
    if rate == ZERO:
        return f"{STATEMENT_DESCRIPTION} (zero-rated)"
    return f"{STATEMENT_DESCRIPTION} ({format_rate(rate)}% tax)"


def rounding_line(amount: Decimal) -> InvoiceLine:
    return InvoiceLine(
        description=ROUNDING_DESCRIPTION,
        quantity=Decimal("1"),
        unit_price=amount,
        tax_rate=ZERO,
    )


def build_timesheet_notes(
    allocation: AllocationResult,
    period_label: str,
) -> str:
    """Narrative for itemized invoices: time by project, mileage and cap usage."""
    parts = [f"Billing period: {period_label}"]

    hours_by_project: OrderedDict[str, Decimal] = OrderedDict()
    miles = ZERO
    for item in allocation.selected:
        if isinstance(item, TimeItem):
            label = item.project_label or UNASSIGNED_BUCKET
            hours_by_project[label] = hours_by_project.get(label, ZERO) + item.hours
        elif isinstance(item, MileageItem):
            miles += item.miles

    if hours_by_project:
        parts.append("Time:")
        for label, hours in hours_by_project.items():
            parts.append(f"- {label}: {round_money(hours)}h")
    if miles > ZERO:
        parts.append(f"Mileage: {format_quantity(miles)} miles")

    if allocation.cap_inc_tax is not None:
        parts.append(f"Monthly cap (inc tax): {allocation.cap_inc_tax:.2f}")
        parts.append(f"Billed this period (inc tax): {allocation.running_inc_tax:.2f}")
        carried = allocation.carried_forward_inc_tax
        if carried > ZERO:
            parts.append(f"Carried forward to future periods (inc tax): {carried:.2f}")

    return "\n".join(parts)
