"""Compare-and-set item locking for billing runs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.chargeables import Chargeable
from billing_engine.calculators.types import ItemKind, ItemStatus
from billing_engine.errors import PartialLockFailure
from billing_engine.models import RecurringChargeInstance, WorkEntry

logger = logging.getLogger(__name__)


class LockingService:
    """Moves billable items through unbilled → pending → billed.

    Every status change is a conditional UPDATE scoped to the expected prior
    status, so concurrent invocations can only ever claim an item once:
    1. lock_items: unbilled → pending, tagged with the run
    2. release_run_locks: pending → unbilled for a run that never invoiced
    3. finalize_billed: pending → billed with the invoice reference
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _partition(items: Sequence[Chargeable]) -> tuple[list[UUID], list[UUID]]:
        instance_ids = [i.item_id for i in items if i.kind == ItemKind.RECURRING]
        entry_ids = [i.item_id for i in items if i.kind != ItemKind.RECURRING]
        return instance_ids, entry_ids

    async def lock_items(self, billing_run_id: UUID, items: Sequence[Chargeable]) -> int:
        """Lock items to a run; all or nothing.

        Returns count of locked items.

        Raises:
            PartialLockFailure: If another run claimed any of the items first
        """
        instance_ids, entry_ids = self._partition(items)
        locked = 0

        if instance_ids:
            result = await self.session.execute(
                update(RecurringChargeInstance)
                .where(
                    RecurringChargeInstance.instance_id.in_(instance_ids),
                    RecurringChargeInstance.status == ItemStatus.UNBILLED.value,
                )
                .values(status=ItemStatus.PENDING.value, billing_run_id=billing_run_id)
                .execution_options(synchronize_session=False)
            )
            locked += result.rowcount or 0

        if entry_ids:
            result = await self.session.execute(
                update(WorkEntry)
                .where(
                    WorkEntry.entry_id.in_(entry_ids),
                    WorkEntry.status == ItemStatus.UNBILLED.value,
                )
                .values(status=ItemStatus.PENDING.value, billing_run_id=billing_run_id)
                .execution_options(synchronize_session=False)
            )
            locked += result.rowcount or 0

        requested = len(instance_ids) + len(entry_ids)
        if locked < requested:
            await self._revert(billing_run_id, instance_ids, entry_ids)
            logger.warning(
                "Billing run %s locked %d of %d items; reverted",
                billing_run_id,
                locked,
                requested,
            )
            raise PartialLockFailure(requested, locked)

        return locked

    async def _revert(
        self,
        billing_run_id: UUID,
        instance_ids: list[UUID],
        entry_ids: list[UUID],
    ) -> None:
        if instance_ids:
            await self.session.execute(
                update(RecurringChargeInstance)
                .where(
                    RecurringChargeInstance.instance_id.in_(instance_ids),
                    RecurringChargeInstance.billing_run_id == billing_run_id,
                    RecurringChargeInstance.status == ItemStatus.PENDING.value,
                )
                .values(status=ItemStatus.UNBILLED.value, billing_run_id=None)
                .execution_options(synchronize_session=False)
            )
        if entry_ids:
            await self.session.execute(
                update(WorkEntry)
                .where(
                    WorkEntry.entry_id.in_(entry_ids),
                    WorkEntry.billing_run_id == billing_run_id,
                    WorkEntry.status == ItemStatus.PENDING.value,
                )
                .values(status=ItemStatus.UNBILLED.value, billing_run_id=None)
                .execution_options(synchronize_session=False)
            )

    async def release_run_locks(self, billing_run_id: UUID) -> int:
        """Revert every pending item held by a run back to unbilled.

        Returns count of released items.
        """
        released = 0
        for model in (RecurringChargeInstance, WorkEntry):
            result = await self.session.execute(
                update(model)
                .where(
                    model.billing_run_id == billing_run_id,
                    model.status == ItemStatus.PENDING.value,
                )
                .values(status=ItemStatus.UNBILLED.value, billing_run_id=None)
                .execution_options(synchronize_session=False)
            )
            released += result.rowcount or 0
        return released

    async def finalize_billed(
        self,
        billing_run_id: UUID,
        invoice_id: UUID,
        billed_at: datetime,
    ) -> int:
        """Mark a run's pending items billed against its invoice.

        Returns count of finalized items.
        """
        finalized = 0
        for model in (RecurringChargeInstance, WorkEntry):
            result = await self.session.execute(
                update(model)
                .where(
                    model.billing_run_id == billing_run_id,
                    model.status == ItemStatus.PENDING.value,
                )
                .values(
                    status=ItemStatus.BILLED.value,
                    invoice_id=invoice_id,
                    billed_at=billed_at,
                )
                .execution_options(synchronize_session=False)
            )
            finalized += result.rowcount or 0
        return finalized
