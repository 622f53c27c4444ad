"""Tests for the billing batch coordinator."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from billing_engine.calculators.types import BillingPeriod
from billing_engine.models import BillingRun, Invoice, RecurringChargeInstance, WorkEntry
from billing_engine.schemas import BillingRequest
from billing_engine.services.billing_service import BillingService
from billing_engine.services.dispatch import RecordingDispatcher, UnconfiguredDispatcher

from tests.factories import NOW, reload_entry

pytestmark = pytest.mark.asyncio

PERIOD = BillingPeriod(2026, 9)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def service(session, settings, dispatcher):
    return BillingService(session, dispatcher=dispatcher, settings=settings)


async def count_rows(session, model):
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


async def run_for(session, vendor_id):
    result = await session.execute(
        select(BillingRun)
        .where(BillingRun.vendor_id == vendor_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def entries_for(session, vendor_id):
    result = await session.execute(
        select(WorkEntry)
        .where(WorkEntry.vendor_id == vendor_id)
        .order_by(WorkEntry.entry_date, WorkEntry.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def stranded_run(session, vendor_id, status, age, invoice_id=None):
    run = BillingRun(
        vendor_id=vendor_id,
        period_label=PERIOD.label,
        period_start=PERIOD.start,
        period_end=PERIOD.end,
        status=status,
        invoice_id=invoice_id,
        run_started_at=NOW - age,
        updated_at=NOW - age,
    )
    session.add(run)
    await session.flush()
    return run


class TestProcessVendor:
    """Test the per-vendor billing flow."""

    async def test_bills_uncapped_vendor(self, service, factory, session, dispatcher):
        """Everything eligible is invoiced, dispatched and marked billed."""
        vendor = await factory.vendor()
        project = await factory.project(vendor, "P1", "Build")
        await factory.time_entry(vendor, 90, hourly_rate="100.00", project=project)
        await factory.mileage_entry(vendor, "20.00", rate="0.450")
        await factory.recurring_charge(vendor, "Hosting", "10.00")
        vendor_id = vendor.vendor_id
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        assert result.status == "sent"
        assert result.invoice_number == "INV-003UX"
        assert result.carried_forward_inc_tax == Decimal("0.00")
        assert len(dispatcher.sent) == 1

        invoice = await service.invoice_service.get_invoice(result.invoice_id)
        assert invoice.status == "sent"
        assert invoice.reference == "Projects 2026-09"
        assert invoice.due_date == date(2026, 10, 31)
        # 12.00 hosting + 9.00 mileage + 180.00 time
        assert invoice.total_amount == Decimal("201.00")
        assert invoice.internal_notes == f"Generated by billing run {result.billing_run_id}"

        lines = await service.invoice_service.get_lines(invoice.invoice_id)
        assert [line.description for line in lines] == [
            "Hosting",
            "Mileage (20 miles @ 0.45/mile)",
            "P1: Build (1.50h)",
        ]

        assert {e.status for e in await entries_for(session, vendor_id)} == {"billed"}
        run = await run_for(session, vendor_id)
        assert run.status == "sent"
        assert run.invoice_id == invoice.invoice_id
        assert len(run.selected_item_ids) == 3

    async def test_second_run_is_noop(self, service, factory, session, dispatcher):
        """A sent run is never billed again."""
        vendor = await factory.vendor()
        await factory.time_entry(vendor, 60)
        vendor_id = vendor.vendor_id
        await session.commit()

        first = await service.process_vendor(vendor_id, PERIOD, now=NOW)
        second = await service.process_vendor(vendor_id, PERIOD, now=NOW + timedelta(hours=2))

        assert first.status == "sent"
        assert second.status == "skipped"
        assert second.message == "Already billed for this period"
        assert second.invoice_id == first.invoice_id
        assert len(dispatcher.sent) == 1
        assert await count_rows(session, Invoice) == 1

    async def test_cap_split_carries_remainder_forward(self, service, factory, session):
        """The boundary entry is split so the invoice equals the cap."""
        vendor = await factory.vendor(billing_mode="capped", cap="500.00", tax_rate="0.00")
        for day, minutes in ((1, 120), (2, 120), (3, 132)):
            await factory.time_entry(
                vendor, minutes, hourly_rate="100.00", entry_date=date(2026, 9, day)
            )
        vendor_id = vendor.vendor_id
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        assert result.status == "sent"
        assert result.carried_forward_inc_tax == Decimal("120.00")
        invoice = await service.invoice_service.get_invoice(result.invoice_id)
        assert invoice.total_amount == Decimal("500.00")
        assert "Carried forward to future periods (inc tax): 120.00" in invoice.notes

        entries = await entries_for(session, vendor_id)
        assert [(e.minutes, e.status) for e in entries] == [
            (120, "billed"),
            (120, "billed"),
            (60, "billed"),
            (72, "unbilled"),
        ]

    async def test_recurring_split_in_itemized_invoice(self, service, factory, session):
        """A split recurring charge bills part now and leaves an S-labelled instance."""
        vendor = await factory.vendor(billing_mode="capped", cap="500.00")
        await factory.recurring_charge(vendor, "Retainer A", "166.67", sort_order=1)
        await factory.recurring_charge(vendor, "Retainer B", "166.67", sort_order=2)
        await factory.recurring_charge(vendor, "Retainer C", "183.33", sort_order=3)
        vendor_id = vendor.vendor_id
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        invoice = await service.invoice_service.get_invoice(result.invoice_id)
        assert invoice.total_amount == Decimal("500.00")
        remainder = await session.execute(
            select(RecurringChargeInstance).where(
                RecurringChargeInstance.vendor_id == vendor_id,
                RecurringChargeInstance.status == "unbilled",
            )
        )
        (left,) = remainder.scalars().all()
        assert left.period_label == "2026-09-S1"
        assert left.amount_ex_tax_snapshot == Decimal("100.00")

    async def test_nothing_to_bill(self, service, factory, session):
        """A vendor with no items completes without an invoice."""
        vendor = await factory.vendor()
        vendor_id = vendor.vendor_id
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        assert result.status == "skipped"
        assert result.message == "No billable items"
        assert (await run_for(session, vendor_id)).status == "sent"
        assert await count_rows(session, Invoice) == 0

    async def test_cap_unsatisfiable_fails_run(self, service, factory, session):
        """A cap too small for any item fails the run and releases nothing."""
        vendor = await factory.vendor(billing_mode="capped", cap="5.00", tax_rate="0.00")
        entry = await factory.time_entry(vendor, 60, hourly_rate="28.00")
        vendor_id, entry_id = vendor.vendor_id, entry.entry_id
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        assert result.status == "failed"
        assert "Increase the cap or reduce charges" in result.error
        run = await run_for(session, vendor_id)
        assert run.status == "failed"
        assert run.error_message == result.error
        assert (await reload_entry(session, entry_id)).status == "unbilled"


class TestStatementMode:
    """Test capped statement invoices."""

    async def test_top_up_to_cap_with_projection(self, service, factory, session):
        """The invoice collects up to the cap against the whole balance."""
        vendor = await factory.vendor(
            billing_mode="capped",
            cap="500.00",
            statement_mode=True,
            hourly_rate="100.00",
        )
        await factory.open_invoice(vendor, "700.00")
        await factory.time_entry(vendor, 120)
        vendor_id = vendor.vendor_id
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        assert result.status == "sent"
        invoice = await service.invoice_service.get_invoice(result.invoice_id)
        assert invoice.total_amount == Decimal("500.00")
        lines = await service.invoice_service.get_lines(invoice.invoice_id)
        assert [line.description for line in lines] == ["Account balance payment (20% tax)"]
        assert lines[0].unit_price == Decimal("416.67")

        notes = invoice.notes.splitlines()
        assert "Balance before this invoice: 940.00" in notes
        assert "Balance after this invoice: 440.00" in notes
        assert "- Nov 2026: 440.00" in notes


class TestRecovery:
    """Test crash recovery and concurrency guards."""

    async def test_stale_processing_run_is_recovered(self, service, factory, session):
        """Locks stranded by a crashed run are released and the run redone."""
        vendor = await factory.vendor()
        entry = await factory.time_entry(vendor, 60)
        vendor_id, entry_id = vendor.vendor_id, entry.entry_id
        crashed = await stranded_run(session, vendor_id, "processing", timedelta(hours=1))
        entry.status = "pending"
        entry.billing_run_id = crashed.billing_run_id
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        assert result.status == "sent"
        assert result.billing_run_id == crashed.billing_run_id
        billed = await reload_entry(session, entry_id)
        assert billed.status == "billed"
        assert billed.invoice_id == result.invoice_id

    async def test_fresh_processing_run_is_left_alone(self, service, factory, session):
        """Another invocation's live run is reported, not touched."""
        vendor = await factory.vendor()
        entry = await factory.time_entry(vendor, 60)
        vendor_id, entry_id = vendor.vendor_id, entry.entry_id
        await stranded_run(session, vendor_id, "processing", timedelta(minutes=1))
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        assert result.status == "skipped"
        assert result.message == "Billing run in progress elsewhere"
        assert (await reload_entry(session, entry_id)).status == "unbilled"

    async def test_partial_lock_fails_then_retries(self, service, factory, session, monkeypatch):
        """Losing an item to another run rolls the attempt back; a retry succeeds."""
        vendor = await factory.vendor()
        contested = await factory.time_entry(vendor, 60, entry_date=date(2026, 9, 1))
        await factory.time_entry(vendor, 30, entry_date=date(2026, 9, 2))
        vendor_id, contested_id = vendor.vendor_id, contested.entry_id
        await session.commit()

        lock_items = service.locking_service.lock_items

        async def lock_after_competitor(billing_run_id, items):
            await session.execute(
                update(WorkEntry)
                .where(WorkEntry.entry_id == contested_id)
                .values(status="pending")
            )
            return await lock_items(billing_run_id, items)

        monkeypatch.setattr(service.locking_service, "lock_items", lock_after_competitor)
        failed = await service.process_vendor(vendor_id, PERIOD, now=NOW)

        assert failed.status == "failed"
        assert "Locked 1 of 2" in failed.error
        assert {e.status for e in await entries_for(session, vendor_id)} == {"unbilled"}
        assert await count_rows(session, Invoice) == 0

        monkeypatch.undo()
        retried = await service.process_vendor(vendor_id, PERIOD, now=NOW + timedelta(minutes=5))

        assert retried.status == "sent"
        assert retried.billing_run_id == failed.billing_run_id
        assert {e.status for e in await entries_for(session, vendor_id)} == {"billed"}

    async def test_dispatch_failure_resumes_with_same_invoice(self, factory, session, settings):
        """A failed send keeps the invoice and locks; the retry only sends."""
        vendor = await factory.vendor()
        entry = await factory.time_entry(vendor, 60)
        vendor_id, entry_id = vendor.vendor_id, entry.entry_id
        await session.commit()

        unconfigured = BillingService(session, dispatcher=UnconfiguredDispatcher(), settings=settings)
        failed = await unconfigured.process_vendor(vendor_id, PERIOD, now=NOW)

        assert failed.status == "failed"
        assert failed.error == "Email service is not configured"
        assert failed.invoice_id is not None
        assert (await reload_entry(session, entry_id)).status == "pending"

        dispatcher = RecordingDispatcher()
        working = BillingService(session, dispatcher=dispatcher, settings=settings)
        resumed = await working.process_vendor(vendor_id, PERIOD, now=NOW + timedelta(minutes=5))

        assert resumed.status == "sent"
        assert resumed.invoice_id == failed.invoice_id
        assert [inv.invoice_id for inv in dispatcher.sent] == [failed.invoice_id]
        assert await count_rows(session, Invoice) == 1
        assert (await reload_entry(session, entry_id)).status == "billed"

    async def test_preview_skips_dispatch(self, service, factory, session, dispatcher):
        """Preview creates the invoice but never sends it."""
        vendor = await factory.vendor()
        entry = await factory.time_entry(vendor, 60)
        vendor_id, entry_id = vendor.vendor_id, entry.entry_id
        await session.commit()

        result = await service.process_vendor(vendor_id, PERIOD, preview=True, now=NOW)

        assert result.status == "skipped"
        assert result.message == "Preview only"
        assert result.invoice_number == "INV-003UX"
        assert dispatcher.sent == []
        invoice = await service.invoice_service.get_invoice(result.invoice_id)
        assert invoice.status == "draft"
        assert (await reload_entry(session, entry_id)).status == "pending"


class TestRun:
    """Test batch runs."""

    async def test_only_runs_on_first_of_month(self, service, factory, session):
        """Without force, runs on other days are skipped."""
        vendor = await factory.vendor()
        await factory.time_entry(vendor, 60)
        await session.commit()

        batch = await service.run(BillingRequest(), now=NOW + timedelta(days=14))

        assert batch.period == "2026-09"
        assert batch.skipped_reason is not None
        assert batch.results == []

    async def test_force_and_explicit_period(self, service, factory, session):
        """Force bills on any day; an explicit period overrides the default."""
        vendor = await factory.vendor()
        await factory.time_entry(vendor, 60, entry_date=date(2026, 8, 20))
        vendor_id = vendor.vendor_id
        await session.commit()

        batch = await service.run(
            BillingRequest(period="2026-08", force=True),
            now=NOW + timedelta(days=14),
        )

        assert batch.period == "2026-08"
        assert [(r.vendor_id, r.status) for r in batch.results] == [(vendor_id, "sent")]
        assert (await run_for(session, vendor_id)).period_label == "2026-08"

    async def test_failure_isolation(self, service, factory, session):
        """One vendor's bad settings do not stop the others."""
        broken = await factory.vendor(name="Broken", billing_mode="capped", cap=None)
        await factory.time_entry(broken, 60)
        healthy = await factory.vendor(name="Healthy")
        await factory.time_entry(healthy, 60)
        broken_id, healthy_id = broken.vendor_id, healthy.vendor_id
        await session.commit()

        batch = await service.run(BillingRequest(), now=NOW)

        statuses = {r.vendor_id: r.status for r in batch.results}
        assert statuses == {broken_id: "failed", healthy_id: "sent"}
        assert batch.sent_count == 1
        assert batch.failed_count == 1
        assert (await run_for(session, broken_id)).status == "failed"

    async def test_dry_run_writes_nothing(self, service, factory, session, dispatcher):
        """Dry runs report the draft and leave the store untouched."""
        vendor = await factory.vendor(billing_mode="capped", cap="65.00")
        await factory.recurring_charge(vendor, "Hosting", "50.00")
        await factory.time_entry(vendor, 60, hourly_rate="100.00")
        vendor_id = vendor.vendor_id
        await session.commit()

        batch = await service.run(BillingRequest(dry_run=True), now=NOW)

        (result,) = batch.results
        assert result.vendor_id == vendor_id
        assert result.status == "skipped"
        assert result.message == "Dry run"
        assert result.draft.total_amount == Decimal("60.00")
        assert result.carried_forward_inc_tax == Decimal("120.00")
        assert [line.description for line in result.draft.lines] == ["Hosting"]

        assert dispatcher.sent == []
        assert await count_rows(session, BillingRun) == 0
        assert await count_rows(session, Invoice) == 0
        assert await count_rows(session, RecurringChargeInstance) == 0
        assert {e.status for e in await entries_for(session, vendor_id)} == {"unbilled"}
