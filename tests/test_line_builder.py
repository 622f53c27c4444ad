"""Tests for invoice line building."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engine.calculators.allocator import AllocationResult
from billing_engine.calculators.chargeables import MileageItem, RecurringChargeItem, TimeItem
from billing_engine.calculators.line_builder import (
    ROUNDING_DESCRIPTION,
    InvoiceLine,
    InvoiceLineBuilder,
    build_invoice_draft,
    build_timesheet_notes,
    calculate_totals,
)
from billing_engine.errors import ValidationError

VENDOR = uuid4()


def time_item(minutes, hourly="100", tax="20", project_label="P1: Build"):
    return TimeItem(
        item_id=uuid4(),
        vendor_id=VENDOR,
        minutes=minutes,
        hourly_rate=Decimal(hourly),
        entry_tax_rate=Decimal(tax),
        entry_date=date(2026, 9, 1),
        project_label=project_label,
    )


def line(unit_price, tax_rate, description="Line"):
    return InvoiceLine(
        description=description,
        quantity=Decimal("1"),
        unit_price=Decimal(unit_price),
        tax_rate=Decimal(tax_rate),
    )


@pytest.fixture
def builder():
    return InvoiceLineBuilder()


class TestInvoiceLine:
    """Test per-line arithmetic."""

    def test_line_amounts(self):
        """Quantity x unit, minus discount, plus tax."""
        item = InvoiceLine(
            description="Widgets",
            quantity=Decimal("2"),
            unit_price=Decimal("10.00"),
            tax_rate=Decimal("20"),
            discount_percentage=Decimal("10"),
        )

        assert item.gross_amount == Decimal("20.00")
        assert item.discount_amount == Decimal("2.00")
        assert item.subtotal_amount == Decimal("18.00")
        assert item.tax_amount == Decimal("3.60")
        assert item.total_amount == Decimal("21.60")

    def test_totals_sum_lines(self):
        """Invoice totals are the sum of line amounts."""
        totals = calculate_totals([line("100.00", "20"), line("45.00", "0")])

        assert totals.subtotal_amount == Decimal("145.00")
        assert totals.tax_amount == Decimal("20.00")
        assert totals.total_amount == Decimal("165.00")


class TestItemizedLines:
    """Test itemized presentation."""

    def test_recurring_descriptions(self, builder):
        """Charges from another period carry the period in parentheses."""
        current = RecurringChargeItem(
            item_id=uuid4(),
            vendor_id=VENDOR,
            description="Hosting",
            amount_ex_tax=Decimal("50.00"),
            charge_tax_rate=Decimal("20"),
            period_label="2026-09",
            period_end=date(2026, 9, 30),
        )
        carried = RecurringChargeItem(
            item_id=uuid4(),
            vendor_id=VENDOR,
            description="Hosting",
            amount_ex_tax=Decimal("20.00"),
            charge_tax_rate=Decimal("20"),
            period_label="2026-08-S1",
            period_end=date(2026, 8, 31),
        )

        lines = builder.build_itemized_lines([carried, current], "2026-09")

        assert [ln.description for ln in lines] == ["Hosting (2026-08-S1)", "Hosting"]
        assert lines[1].unit_price == Decimal("50.00")

    def test_mileage_line(self, builder):
        """Mileage at one rate is a single zero-rated line priced per mile."""
        items = [
            MileageItem(
                item_id=uuid4(),
                vendor_id=VENDOR,
                miles=Decimal(miles),
                mileage_rate=Decimal("0.45"),
                entry_date=date(2026, 9, 1),
            )
            for miles in ("60.00", "40.50")
        ]

        lines = builder.build_itemized_lines(items, "2026-09")

        assert len(lines) == 1
        assert lines[0].description == "Mileage (100.5 miles @ 0.45/mile)"
        assert lines[0].quantity == Decimal("100.50")
        assert lines[0].tax_rate == Decimal("0")

    def test_time_grouped_by_project(self, builder):
        """Time entries collapse into one line per project and tax rate."""
        items = [
            time_item(60),
            time_item(30, project_label="P2: Support"),
            time_item(30),
        ]

        lines = builder.build_itemized_lines(items, "2026-09")

        assert [ln.description for ln in lines] == ["P1: Build (1.50h)", "P2: Support (0.50h)"]
        assert lines[0].unit_price == Decimal("150.00")

    def test_rounding_line_reconciles_grouping_drift(self, builder):
        """Grouped pricing drift is corrected by an explicit rounding line."""
        items = [time_item(10, hourly="20") for _ in range(3)]
        expected = sum((item.inc_tax for item in items), Decimal("0.00"))
        lines = builder.build_itemized_lines(items, "2026-09")

        rounding = builder.reconcile_rounding(lines, expected)

        assert expected == Decimal("12.00")
        assert rounding is not None
        assert rounding.description == ROUNDING_DESCRIPTION
        assert rounding.unit_price == Decimal("0.01")
        assert calculate_totals(lines).total_amount == expected

    def test_no_rounding_line_without_drift(self, builder):
        """Matching totals add nothing."""
        lines = [line("100.00", "20")]

        assert builder.reconcile_rounding(lines, Decimal("120.00")) is None
        assert len(lines) == 1


class TestStatementLines:
    """Test statement presentation and top-ups."""

    def test_one_line_per_rate_highest_first(self, builder):
        """Statement lines aggregate by tax rate."""
        items = [
            time_item(60, tax="0"),
            time_item(60),
            time_item(30),
        ]

        lines = builder.build_statement_lines(items)

        assert [ln.description for ln in lines] == [
            "Account balance payment (20% tax)",
            "Account balance payment (zero-rated)",
        ]
        assert lines[0].unit_price == Decimal("150.00")
        assert lines[1].unit_price == Decimal("100.00")

    def test_top_up_to_target(self, builder):
        """The primary-rate line is raised until the total equals the target."""
        lines = [line("200.00", "20")]

        builder.apply_top_up(lines, Decimal("500.00"), Decimal("20"))

        assert lines[0].unit_price == Decimal("416.67")
        assert calculate_totals(lines).total_amount == Decimal("500.00")

    def test_top_up_creates_primary_line(self, builder):
        """A missing primary-rate line is added ahead of lower rates."""
        lines = [line("50.00", "0")]

        builder.apply_top_up(lines, Decimal("110.00"), Decimal("20"))

        assert len(lines) == 2
        assert lines[0].tax_rate == Decimal("20")
        assert lines[0].unit_price == Decimal("50.00")
        assert calculate_totals(lines).total_amount == Decimal("110.00")

    def test_unrepresentable_target_uses_rounding_line(self, builder):
        """A target no ex-tax amount reaches gets a zero-rated residual line."""
        lines = []

        builder.apply_top_up(lines, Decimal("0.03"), Decimal("20"))

        assert lines[0].unit_price == Decimal("0.02")
        assert lines[-1].description == ROUNDING_DESCRIPTION
        assert lines[-1].unit_price == Decimal("0.01")
        assert calculate_totals(lines).total_amount == Decimal("0.03")

    def test_target_below_other_lines_rejected(self, builder):
        """Other-rate lines may not exceed the target."""
        with pytest.raises(ValidationError):
            builder.apply_top_up([line("50.00", "0")], Decimal("40.00"), Decimal("20"))


class TestTimesheetNotes:
    """Test itemized invoice narrative."""

    def test_notes_summarize_hours_and_cap(self):
        """Notes list hours per project and what was carried forward."""
        selected = [time_item(90), time_item(30, project_label="P2: Support")]
        deferred = [time_item(60)]
        allocation = AllocationResult(
            selected=selected,
            deferred=deferred,
            running_inc_tax=Decimal("240.00"),
            cap_inc_tax=Decimal("250.00"),
        )

        notes = build_timesheet_notes(allocation, "2026-09")

        assert notes.splitlines() == [
            "Billing period: 2026-09",
            "Time:",
            "- P1: Build: 1.50h",
            "- P2: Support: 0.50h",
            "Monthly cap (inc tax): 250.00",
            "Billed this period (inc tax): 240.00",
            "Carried forward to future periods (inc tax): 120.00",
        ]


class TestInvoiceDraft:
    """Test draft headers."""

    def test_reference_and_due_date(self):
        """Reference joins prefix and period; due date adds payment terms."""
        draft = build_invoice_draft(VENDOR, "2026-09", "Projects", date(2026, 10, 1), 14)

        assert draft.reference == "Projects 2026-09"
        assert draft.due_date == date(2026, 10, 15)
        assert draft.lines == []
        assert draft.totals.total_amount == Decimal("0.00")
