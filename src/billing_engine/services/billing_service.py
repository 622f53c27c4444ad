"""Billing batch coordinator - main orchestrator for periodic billing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.allocator import AllocationResult, CapAllocator
from billing_engine.calculators.line_builder import (
    InvoiceDraft,
    InvoiceLineBuilder,
    build_invoice_draft,
    build_timesheet_notes,
)
from billing_engine.calculators.statement import StatementProjection, StatementProjector
from billing_engine.calculators.types import BillingPeriod
from billing_engine.config import Settings, get_settings
from billing_engine.errors import BillingError, DownstreamFailure
from billing_engine.models import BillingRun, Invoice, Vendor
from billing_engine.models.base import utcnow
from billing_engine.schemas import (
    BatchResult,
    BillingRequest,
    DraftLineSummary,
    DraftSummary,
    VendorRunResult,
)
from billing_engine.services.billing_run_service import BillingRunService
from billing_engine.services.dispatch import InvoiceDispatcher, UnconfiguredDispatcher
from billing_engine.services.eligibility_service import CapSetting, EligibilityService
from billing_engine.services.invoice_service import InvoiceService, SqlInvoiceService
from billing_engine.services.locking_service import LockingService
from billing_engine.services.state_machine import ClaimOutcome

logger = logging.getLogger(__name__)

# Invoice statuses meaning dispatch already happened before a crash
DISPATCHED_INVOICE_STATUSES = {"sent", "partially_paid", "paid", "overdue"}


@dataclass
class DraftBundle:
    """Everything computed for a vendor before anything is persisted."""

    cap_setting: CapSetting
    allocation: AllocationResult
    draft: InvoiceDraft | None
    projection: StatementProjection | None = None


class BillingService:
    """Runs one billing period across vendors.

    Operations:
    - run: date gating, vendor discovery, per-vendor processing with isolation
    - process_vendor: claim the run, allocate, lock, invoice, dispatch, finalize
    - dry_run_vendor: compute the would-be invoice without writing anything

    Commit checkpoints per vendor, so a crash always leaves a recoverable run:
    1. run claimed
    2. selection, split and item locks
    3. invoice created and linked to the run
    4. dispatch confirmed, items billed, run sent
    """

    def __init__(
        self,
        session: AsyncSession,
        invoice_service: InvoiceService | None = None,
        dispatcher: InvoiceDispatcher | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.invoice_service = invoice_service or SqlInvoiceService(
            session, self.settings.invoice_series_code
        )
        self.dispatcher = dispatcher or UnconfiguredDispatcher()
        self.run_service = BillingRunService(
            session, stale_after=timedelta(minutes=self.settings.stale_run_minutes)
        )
        self.locking_service = LockingService(session)
        self.eligibility = EligibilityService(session, self.settings.time_block_minutes)
        self.allocator = CapAllocator(self.settings.money_max_iterations)
        self.line_builder = InvoiceLineBuilder(self.settings.money_max_iterations)
        self.projector = StatementProjector(self.settings.projection_max_months)

    # ===== Batch =====

    def local_date(self, now: datetime) -> date:
        return now.astimezone(ZoneInfo(self.settings.timezone)).date()

    async def run(self, request: BillingRequest, now: datetime | None = None) -> BatchResult:
        """Bill every eligible vendor (or one) for the requested period."""
        now = now or utcnow()
        today = self.local_date(now)
        if request.period:
            period = BillingPeriod.parse(request.period)
        else:
            period = BillingPeriod.previous_month(today)

        if not request.force and today.day != 1:
            logger.info("Billing skipped: %s is not the first day of the month", today)
            return BatchResult(
                period=period.label,
                skipped_reason="Billing runs on the first day of the month; use force to override",
            )

        if request.vendor_id is not None:
            vendor_ids = [request.vendor_id]
        else:
            vendor_ids = await self.eligibility.discover_vendor_ids(period)

        batch = BatchResult(period=period.label)
        for vendor_id in vendor_ids:
            try:
                if request.dry_run:
                    result = await self.dry_run_vendor(vendor_id, period, now)
                else:
                    result = await self.process_vendor(
                        vendor_id, period, preview=request.preview, now=now
                    )
            except Exception as e:
                # Failure isolation: one vendor must not stop the batch
                logger.exception("Billing failed for vendor %s (%s)", vendor_id, period)
                await self.session.rollback()
                result = VendorRunResult(vendor_id=vendor_id, status="failed", error=str(e))
            batch.results.append(result)

        logger.info(
            "Billing %s complete: %d sent, %d skipped, %d failed",
            period,
            batch.sent_count,
            batch.skipped_count,
            batch.failed_count,
        )
        return batch

    # ===== Vendor =====

    async def process_vendor(
        self,
        vendor_id: UUID,
        period: BillingPeriod,
        preview: bool = False,
        now: datetime | None = None,
    ) -> VendorRunResult:
        now = now or utcnow()
        claim = await self.run_service.create_or_recover(vendor_id, period, now)
        await self.session.commit()

        run = claim.run
        run_id = run.billing_run_id
        if claim.outcome == ClaimOutcome.ALREADY_SENT:
            return VendorRunResult(
                vendor_id=vendor_id,
                status="skipped",
                billing_run_id=run_id,
                invoice_id=run.invoice_id,
                message="Already billed for this period",
            )
        if claim.outcome == ClaimOutcome.IN_FLIGHT:
            return VendorRunResult(
                vendor_id=vendor_id,
                status="skipped",
                billing_run_id=run_id,
                message="Billing run in progress elsewhere",
            )

        try:
            if claim.outcome == ClaimOutcome.RESUME_SEND:
                return await self._resume_send(run, preview, now)
            return await self._bill(run, period, preview, now)
        except BillingError as e:
            logger.warning("Billing run %s failed: %s", run_id, e)
            return await self._fail(vendor_id, run_id, e, now)
        except Exception as e:
            logger.exception("Billing run %s failed unexpectedly", run_id)
            return await self._fail(vendor_id, run_id, e, now)

    async def _bill(
        self,
        run: BillingRun,
        period: BillingPeriod,
        preview: bool,
        now: datetime,
    ) -> VendorRunResult:
        vendor_id = run.vendor_id
        await self.eligibility.ensure_recurring_instances(vendor_id, period)
        bundle = await self.compute(vendor_id, period, now, persist=True)
        allocation = bundle.allocation

        if allocation.split is not None:
            await self.eligibility.persist_split(allocation.split)
        run = await self.run_service.record_selection(run, allocation, now)

        if not allocation.selected:
            run = await self.run_service.mark_sent(run, now)
            await self.session.commit()
            return VendorRunResult(
                vendor_id=vendor_id,
                status="skipped",
                billing_run_id=run.billing_run_id,
                message="No billable items",
            )

        await self.locking_service.lock_items(run.billing_run_id, allocation.selected)
        await self.session.commit()

        draft = bundle.draft
        draft.internal_notes = f"Generated by billing run {run.billing_run_id}"
        invoice = await self.invoice_service.create_invoice(draft, run.billing_run_id)
        run = await self.run_service.link_invoice(run, invoice.invoice_id, now)
        await self.session.commit()

        return await self._send(run, invoice, preview, now)

    async def _resume_send(self, run: BillingRun, preview: bool, now: datetime) -> VendorRunResult:
        invoice = await self.invoice_service.get_invoice(run.invoice_id)
        if invoice is None:
            invoice = await self.invoice_service.find_invoice_for_run(run.billing_run_id)
        if invoice is None:
            raise BillingError(f"Invoice {run.invoice_id} linked to run {run.billing_run_id} is missing")
        logger.info("Resuming billing run %s at send with invoice %s", run.billing_run_id, invoice.invoice_number)
        return await self._send(run, invoice, preview, now)

    async def _send(
        self,
        run: BillingRun,
        invoice: Invoice,
        preview: bool,
        now: datetime,
    ) -> VendorRunResult:
        if invoice.status in DISPATCHED_INVOICE_STATUSES:
            # Dispatched before a crash; only bookkeeping is missing
            return await self._finalize(run, invoice, now)

        if preview:
            return VendorRunResult(
                vendor_id=run.vendor_id,
                status="skipped",
                billing_run_id=run.billing_run_id,
                invoice_id=invoice.invoice_id,
                invoice_number=invoice.invoice_number,
                carried_forward_inc_tax=run.carried_forward_inc_tax,
                message="Preview only",
            )

        vendor = await self.session.get(Vendor, run.vendor_id)
        outcome = await self.dispatcher.send(invoice, vendor)
        if not outcome.success:
            raise DownstreamFailure(invoice.invoice_id, outcome.error or "Invoice dispatch failed")

        await self.invoice_service.mark_sent(invoice, now)
        return await self._finalize(run, invoice, now)

    async def _finalize(self, run: BillingRun, invoice: Invoice, now: datetime) -> VendorRunResult:
        billed = await self.locking_service.finalize_billed(run.billing_run_id, invoice.invoice_id, now)
        run = await self.run_service.mark_sent(run, now)
        await self.session.commit()
        logger.info(
            "Billing run %s sent invoice %s (%d items)",
            run.billing_run_id,
            invoice.invoice_number,
            billed,
        )
        return VendorRunResult(
            vendor_id=run.vendor_id,
            status="sent",
            billing_run_id=run.billing_run_id,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            carried_forward_inc_tax=run.carried_forward_inc_tax,
        )

    async def _fail(
        self,
        vendor_id: UUID,
        run_id: UUID,
        error: Exception,
        now: datetime,
    ) -> VendorRunResult:
        """Roll back, release locks unless an invoice exists, mark the run failed."""
        await self.session.rollback()
        run = await self.run_service.reload(run_id)
        if run.invoice_id is None:
            released = await self.locking_service.release_run_locks(run_id)
            if released:
                logger.info("Released %d locks for failed billing run %s", released, run_id)
        run = await self.run_service.mark_failed(run, str(error), now)
        await self.session.commit()
        return VendorRunResult(
            vendor_id=vendor_id,
            status="failed",
            billing_run_id=run_id,
            invoice_id=run.invoice_id,
            error=str(error),
        )

    # ===== Computation =====

    async def compute(
        self,
        vendor_id: UUID,
        period: BillingPeriod,
        now: datetime,
        persist: bool,
    ) -> DraftBundle:
        """Load, allocate and materialize; writes nothing."""
        cap_setting = await self.eligibility.load_cap_setting(vendor_id)
        candidates = await self.eligibility.load_candidates(
            vendor_id, period, cap_setting, persist=persist
        )
        allocation = self.allocator.allocate(candidates, cap_setting.effective_cap)
        if not allocation.selected:
            return DraftBundle(cap_setting=cap_setting, allocation=allocation, draft=None)

        vendor = await self.session.get(Vendor, vendor_id)
        invoice_date = self.local_date(now)
        terms = self.settings.default_payment_terms_days
        if vendor is not None and vendor.payment_terms_days is not None:
            terms = vendor.payment_terms_days

        draft = build_invoice_draft(
            vendor_id,
            period.label,
            self.settings.reference_prefix,
            invoice_date,
            terms,
            statement_mode=cap_setting.statement_mode,
        )

        projection = None
        if cap_setting.statement_mode:
            draft.lines = self.line_builder.build_statement_lines(allocation.selected)
            if cap_setting.is_capped:
                inputs = await self.eligibility.load_statement_inputs(
                    vendor_id,
                    self.settings.reference_prefix,
                    cap_setting,
                    [*allocation.selected, *allocation.deferred],
                )
                target = min(self.projector.balance_before(inputs), cap_setting.cap_inc_tax)
                self.line_builder.apply_top_up(draft.lines, target, cap_setting.tax_rate)
                projection = self.projector.project(
                    inputs,
                    draft.totals.total_amount,
                    cap_setting.cap_inc_tax,
                    invoice_date,
                )
                draft.notes = projection.to_notes()
            else:
                self.line_builder.reconcile_rounding(draft.lines, allocation.running_inc_tax)
        else:
            draft.lines = self.line_builder.build_itemized_lines(allocation.selected, period.label)
            self.line_builder.reconcile_rounding(draft.lines, allocation.running_inc_tax)
            draft.notes = build_timesheet_notes(allocation, period.label)

        return DraftBundle(
            cap_setting=cap_setting,
            allocation=allocation,
            draft=draft,
            projection=projection,
        )

    async def dry_run_vendor(
        self,
        vendor_id: UUID,
        period: BillingPeriod,
        now: datetime | None = None,
    ) -> VendorRunResult:
        """Compute the would-be invoice; never writes."""
        now = now or utcnow()
        try:
            bundle = await self.compute(vendor_id, period, now, persist=False)
        except BillingError as e:
            return VendorRunResult(vendor_id=vendor_id, status="failed", error=str(e))
        finally:
            await self.session.rollback()

        allocation = bundle.allocation
        if bundle.draft is None:
            return VendorRunResult(
                vendor_id=vendor_id,
                status="skipped",
                message="Dry run: no billable items",
                carried_forward_inc_tax=allocation.carried_forward_inc_tax,
            )

        totals = bundle.draft.totals
        return VendorRunResult(
            vendor_id=vendor_id,
            status="skipped",
            message="Dry run",
            carried_forward_inc_tax=allocation.carried_forward_inc_tax,
            draft=DraftSummary(
                reference=bundle.draft.reference,
                subtotal_amount=totals.subtotal_amount,
                tax_amount=totals.tax_amount,
                total_amount=totals.total_amount,
                lines=[DraftLineSummary.model_validate(line) for line in bundle.draft.lines],
                notes=bundle.draft.notes,
            ),
        )
