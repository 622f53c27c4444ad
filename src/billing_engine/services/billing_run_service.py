"""Billing run lifecycle: create-or-recover, selection bookkeeping, finalization."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.allocator import AllocationResult
from billing_engine.calculators.money import ZERO
from billing_engine.calculators.types import BillingPeriod
from billing_engine.database import dialect_insert
from billing_engine.errors import ConflictError
from billing_engine.models import BillingRun
from billing_engine.models.base import as_utc, utcnow
from billing_engine.services.locking_service import LockingService
from billing_engine.services.state_machine import (
    BillingRunStateMachine,
    ClaimOutcome,
    RunStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=15)


@dataclass(frozen=True)
class RunClaim:
    """Tagged result of create_or_recover."""

    outcome: ClaimOutcome
    run: BillingRun
    released_locks: int = 0

    @property
    def owned(self) -> bool:
        return BillingRunStateMachine.is_owned(self.outcome)


class BillingRunService:
    """Owns billing_run rows.

    Key invariants:
    1. One run per (vendor, period), enforced by unique constraint
    2. Claiming an existing run is a compare-and-set on (status, updated_at),
       so two invocations can never both own it
    3. ``sent`` is reached at most once and never left
    """

    def __init__(
        self,
        session: AsyncSession,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        self.session = session
        self.stale_after = stale_after
        self.locking_service = LockingService(session)

    async def get_run(self, vendor_id: UUID, period_label: str) -> BillingRun | None:
        result = await self.session.execute(
            select(BillingRun)
            .where(
                BillingRun.vendor_id == vendor_id,
                BillingRun.period_label == period_label,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reload(self, run_id: UUID) -> BillingRun:
        run = await self.session.get(BillingRun, run_id, populate_existing=True)
        if run is None:
            raise ConflictError(f"Billing run {run_id} no longer exists", run_id)
        return run

    def is_stale(self, run: BillingRun, now: datetime) -> bool:
        return now - as_utc(run.updated_at) >= self.stale_after

    async def create_or_recover(
        self,
        vendor_id: UUID,
        period: BillingPeriod,
        now: datetime | None = None,
    ) -> RunClaim:
        """Claim the (vendor, period) run.

        Inserts a fresh ``processing`` run, or on conflict inspects the
        existing one through the recovery table:
        - sent: already done, nothing to do
        - processing and fresh: another invocation is working on it
        - stale processing or failed, no invoice: release stranded locks, restart
        - invoice linked: resume at the send step
        """
        now = now or utcnow()
        stmt = (
            dialect_insert(self.session, BillingRun)
            .values(
                billing_run_id=uuid4(),
                vendor_id=vendor_id,
                period_label=period.label,
                period_start=period.start,
                period_end=period.end,
                status=RunStatus.PROCESSING.value,
                selected_item_ids=[],
                carried_forward_inc_tax=ZERO,
                run_started_at=now,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["vendor_id", "period_label"])
        )
        result = await self.session.execute(stmt)
        run = await self.get_run(vendor_id, period.label)
        if run is None:
            raise ConflictError(f"Billing run for {vendor_id} {period} vanished")

        if result.rowcount == 1:
            return RunClaim(ClaimOutcome.CREATED, run)

        outcome = BillingRunStateMachine.recovery_outcome(
            run.status,
            has_invoice=run.invoice_id is not None,
            is_stale=self.is_stale(run, now),
        )
        if not BillingRunStateMachine.is_owned(outcome):
            return RunClaim(outcome, run)

        reset_values: dict[str, object] = {
            "status": RunStatus.PROCESSING.value,
            "error_message": None,
            "run_started_at": now,
            "run_finished_at": None,
            "updated_at": now,
        }
        if outcome == ClaimOutcome.RECOVERED:
            reset_values.update(selected_item_ids=[], carried_forward_inc_tax=ZERO)

        claimed = await self.session.execute(
            update(BillingRun)
            .where(
                BillingRun.billing_run_id == run.billing_run_id,
                BillingRun.status == run.status,
                BillingRun.updated_at == run.updated_at,
            )
            .values(**reset_values)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info("Billing run %s claimed by another invocation", run.billing_run_id)
            return RunClaim(ClaimOutcome.IN_FLIGHT, await self.reload(run.billing_run_id))

        released = 0
        if outcome == ClaimOutcome.RECOVERED:
            released = await self.locking_service.release_run_locks(run.billing_run_id)

        run = await self.reload(run.billing_run_id)
        logger.warning(
            "Recovered billing run %s (%s): released %d stranded locks",
            run.billing_run_id,
            outcome.value,
            released,
        )
        return RunClaim(outcome, run, released_locks=released)

    async def _set_status(
        self,
        run: BillingRun,
        to_status: RunStatus,
        now: datetime,
        **values: object,
    ) -> BillingRun:
        """Conditional status update; raises ConflictError if the run moved."""
        BillingRunStateMachine.validate_transition(run.status, to_status)
        result = await self.session.execute(
            update(BillingRun)
            .where(
                BillingRun.billing_run_id == run.billing_run_id,
                BillingRun.status == run.status,
            )
            .values(status=to_status.value, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Billing run {run.billing_run_id} changed status concurrently",
                run.billing_run_id,
            )
        return await self.reload(run.billing_run_id)

    async def record_selection(
        self,
        run: BillingRun,
        allocation: AllocationResult,
        now: datetime | None = None,
    ) -> BillingRun:
        run.selected_item_ids = allocation.selected_ids
        run.carried_forward_inc_tax = allocation.carried_forward_inc_tax
        run.updated_at = now or utcnow()
        await self.session.flush()
        return run

    async def link_invoice(
        self,
        run: BillingRun,
        invoice_id: UUID,
        now: datetime | None = None,
    ) -> BillingRun:
        run.invoice_id = invoice_id
        run.updated_at = now or utcnow()
        await self.session.flush()
        return run

    async def mark_sent(self, run: BillingRun, now: datetime | None = None) -> BillingRun:
        now = now or utcnow()
        return await self._set_status(
            run,
            RunStatus.SENT,
            now,
            error_message=None,
            run_finished_at=now,
        )

    async def mark_failed(
        self,
        run: BillingRun,
        message: str,
        now: datetime | None = None,
    ) -> BillingRun:
        now = now or utcnow()
        return await self._set_status(
            run,
            RunStatus.FAILED,
            now,
            error_message=message,
            run_finished_at=now,
        )
