"""Candidate loading, recurring instance upkeep and split persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.chargeables import (
    Chargeable,
    ItemSplit,
    MileageItem,
    RecurringChargeItem,
    TimeItem,
    next_split_period_label,
)
from billing_engine.calculators.money import ZERO
from billing_engine.calculators.statement import OpenInvoice, StatementInputs
from billing_engine.calculators.types import BillingMode, BillingPeriod, ItemStatus
from billing_engine.database import dialect_insert
from billing_engine.errors import ValidationError
from billing_engine.models import (
    OPEN_INVOICE_EXCLUDED_STATUSES,
    BillingRun,
    Invoice,
    Project,
    RecurringCharge,
    RecurringChargeInstance,
    VendorBillingSettings,
    WorkEntry,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapSetting:
    """Validated vendor billing configuration."""

    billing_mode: BillingMode = BillingMode.UNCAPPED
    cap_inc_tax: Decimal | None = None
    statement_mode: bool = False
    hourly_rate_ex_tax: Decimal = Decimal("75.00")
    tax_rate: Decimal = Decimal("20.00")
    mileage_rate: Decimal = Decimal("0.420")

    @property
    def is_capped(self) -> bool:
        return self.billing_mode == BillingMode.CAPPED

    @property
    def effective_cap(self) -> Decimal | None:
        """Cap passed to the allocator; None when uncapped."""
        return self.cap_inc_tax if self.is_capped else None

    @classmethod
    def from_row(cls, row: VendorBillingSettings | None) -> CapSetting:
        """Validate a settings row; a missing row means uncapped defaults.

        Raises:
            ValidationError: If the mode is unknown, the cap is missing or
                non-positive while capped, or any default rate is negative
        """
        if row is None:
            return cls()

        try:
            mode = BillingMode(row.billing_mode)
        except ValueError:
            raise ValidationError(f"Unknown billing mode '{row.billing_mode}'") from None

        if mode == BillingMode.CAPPED and (row.cap_inc_tax is None or row.cap_inc_tax <= ZERO):
            raise ValidationError("Capped billing requires a positive monthly cap")

        for name in ("hourly_rate_ex_tax", "tax_rate", "mileage_rate"):
            value = getattr(row, name)
            if value is None or value < ZERO:
                raise ValidationError(f"Vendor setting {name} must be a non-negative amount")

        return cls(
            billing_mode=mode,
            cap_inc_tax=row.cap_inc_tax,
            statement_mode=bool(row.statement_mode),
            hourly_rate_ex_tax=row.hourly_rate_ex_tax,
            tax_rate=row.tax_rate,
            mileage_rate=row.mileage_rate,
        )


class EligibilityService:
    """Reads billable candidates for a vendor and period.

    Candidate order is the allocation priority:
    - recurring instances by (period_end, sort order, created_at)
    - mileage entries by (entry_date, created_at)
    - time entries by (entry_date, created_at)
    """

    def __init__(self, session: AsyncSession, time_block_minutes: int = 15):
        self.session = session
        self.time_block_minutes = time_block_minutes

    async def load_cap_setting(self, vendor_id: UUID) -> CapSetting:
        row = await self.session.get(VendorBillingSettings, vendor_id)
        return CapSetting.from_row(row)

    # ===== Recurring Instances =====

    async def _active_charges(self, vendor_id: UUID) -> list[RecurringCharge]:
        result = await self.session.execute(
            select(RecurringCharge)
            .where(
                RecurringCharge.vendor_id == vendor_id,
                RecurringCharge.is_active.is_(True),
            )
            .order_by(RecurringCharge.sort_order, RecurringCharge.created_at)
        )
        return list(result.scalars().all())

    async def ensure_recurring_instances(self, vendor_id: UUID, period: BillingPeriod) -> int:
        """Create this period's instance for every active charge.

        Idempotent: the (vendor, charge, period) unique constraint turns
        repeats into no-ops. Returns count of newly created instances.
        """
        created = 0
        for charge in await self._active_charges(vendor_id):
            stmt = (
                dialect_insert(self.session, RecurringChargeInstance)
                .values(
                    instance_id=uuid4(),
                    vendor_id=vendor_id,
                    recurring_charge_id=charge.recurring_charge_id,
                    period_label=period.label,
                    period_start=period.start,
                    period_end=period.end,
                    description_snapshot=charge.description,
                    amount_ex_tax_snapshot=charge.amount_ex_tax,
                    tax_rate_snapshot=charge.tax_rate,
                    sort_order_snapshot=charge.sort_order,
                    status=ItemStatus.UNBILLED.value,
                )
                .on_conflict_do_nothing(
                    index_elements=["vendor_id", "recurring_charge_id", "period_label"]
                )
            )
            result = await self.session.execute(stmt)
            created += result.rowcount or 0
        return created

    async def _virtual_instances(
        self,
        vendor_id: UUID,
        period: BillingPeriod,
    ) -> list[RecurringChargeItem]:
        """In-memory instances for a dry run, for charges not yet instantiated."""
        existing = await self.session.execute(
            select(RecurringChargeInstance.recurring_charge_id).where(
                RecurringChargeInstance.vendor_id == vendor_id,
                RecurringChargeInstance.period_label == period.label,
            )
        )
        instantiated = set(existing.scalars().all())
        return [
            RecurringChargeItem(
                item_id=uuid4(),
                vendor_id=vendor_id,
                description=charge.description,
                amount_ex_tax=charge.amount_ex_tax,
                charge_tax_rate=charge.tax_rate,
                period_label=period.label,
                period_end=period.end,
                recurring_charge_id=charge.recurring_charge_id,
                sort_order=charge.sort_order,
            )
            for charge in await self._active_charges(vendor_id)
            if charge.recurring_charge_id not in instantiated
        ]

    # ===== Candidates =====

    async def _project_labels(self, vendor_id: UUID) -> dict[UUID, str]:
        result = await self.session.execute(select(Project).where(Project.vendor_id == vendor_id))
        return {project.project_id: project.label for project in result.scalars().all()}

    @staticmethod
    def instance_to_item(row: RecurringChargeInstance) -> RecurringChargeItem:
        if row.amount_ex_tax_snapshot < ZERO or row.tax_rate_snapshot < ZERO:
            raise ValidationError(f"Recurring charge instance {row.instance_id} has a negative snapshot")
        return RecurringChargeItem(
            item_id=row.instance_id,
            vendor_id=row.vendor_id,
            description=row.description_snapshot,
            amount_ex_tax=row.amount_ex_tax_snapshot,
            charge_tax_rate=row.tax_rate_snapshot,
            period_label=row.period_label,
            period_end=row.period_end,
            recurring_charge_id=row.recurring_charge_id,
            sort_order=row.sort_order_snapshot,
        )

    def entry_to_item(
        self,
        row: WorkEntry,
        settings: CapSetting,
        project_labels: dict[UUID, str],
    ) -> MileageItem | TimeItem:
        """Convert a work entry, falling back to vendor defaults for missing snapshots.

        Raises:
            ValidationError: If quantities or rate snapshots are malformed
        """
        label = project_labels.get(row.project_id) if row.project_id else None

        if row.entry_type == "mileage":
            rate = row.mileage_rate_snapshot
            if rate is None:
                rate = settings.mileage_rate
            if row.miles is None or row.miles < ZERO or rate < ZERO:
                raise ValidationError(f"Mileage entry {row.entry_id} has invalid miles or rate")
            return MileageItem(
                item_id=row.entry_id,
                vendor_id=row.vendor_id,
                miles=row.miles,
                mileage_rate=rate,
                entry_date=row.entry_date,
                project_id=row.project_id,
                project_label=label,
                description=row.description,
            )

        if row.entry_type == "time":
            hourly = row.hourly_rate_ex_tax_snapshot
            if hourly is None:
                hourly = settings.hourly_rate_ex_tax
            tax_rate = row.tax_rate_snapshot
            if tax_rate is None:
                tax_rate = settings.tax_rate
            if row.minutes is None or row.minutes < 0 or hourly < ZERO or tax_rate < ZERO:
                raise ValidationError(f"Time entry {row.entry_id} has invalid minutes or rates")
            return TimeItem(
                item_id=row.entry_id,
                vendor_id=row.vendor_id,
                minutes=row.minutes,
                hourly_rate=hourly,
                entry_tax_rate=tax_rate,
                entry_date=row.entry_date,
                project_id=row.project_id,
                project_label=label,
                description=row.description,
                block_minutes=self.time_block_minutes,
            )

        raise ValidationError(f"Work entry {row.entry_id} has unknown type '{row.entry_type}'")

    async def load_candidates(
        self,
        vendor_id: UUID,
        period: BillingPeriod,
        settings: CapSetting,
        persist: bool = True,
    ) -> list[Chargeable]:
        """Unbilled items up to the period end, in allocation priority order.

        With ``persist=False`` this period's missing recurring instances are
        synthesized in memory instead of being read from the store.
        """
        instances = await self.session.execute(
            select(RecurringChargeInstance)
            .where(
                RecurringChargeInstance.vendor_id == vendor_id,
                RecurringChargeInstance.status == ItemStatus.UNBILLED.value,
                RecurringChargeInstance.period_end <= period.end,
            )
            .order_by(
                RecurringChargeInstance.period_end,
                RecurringChargeInstance.sort_order_snapshot,
                RecurringChargeInstance.created_at,
            )
        )
        recurring: list[RecurringChargeItem] = [
            self.instance_to_item(row) for row in instances.scalars().all()
        ]
        if not persist:
            recurring.extend(await self._virtual_instances(vendor_id, period))

        entries = await self.session.execute(
            select(WorkEntry)
            .where(
                WorkEntry.vendor_id == vendor_id,
                WorkEntry.status == ItemStatus.UNBILLED.value,
                WorkEntry.billable.is_(True),
                WorkEntry.entry_date <= period.end,
            )
            .order_by(WorkEntry.entry_date, WorkEntry.created_at)
        )
        labels = await self._project_labels(vendor_id)
        work = [self.entry_to_item(row, settings, labels) for row in entries.scalars().all()]

        mileage = [item for item in work if isinstance(item, MileageItem)]
        time_items = [item for item in work if isinstance(item, TimeItem)]
        return [*recurring, *mileage, *time_items]

    # ===== Splits =====

    async def persist_split(self, split: ItemSplit) -> None:
        """Shrink the original row to the retained part and insert the remainder."""
        retained, remainder = split.retained, split.remainder

        if isinstance(retained, RecurringChargeItem):
            await self._persist_recurring_split(retained, remainder)
            return

        row = await self.session.get(WorkEntry, retained.item_id)
        if row is None:
            raise ValidationError(f"Work entry {retained.item_id} vanished before split")

        copy = row.to_dict()
        copy.pop("created_at")
        copy.update(
            entry_id=remainder.item_id,
            status=ItemStatus.UNBILLED.value,
            billing_run_id=None,
            invoice_id=None,
            billed_at=None,
        )
        if isinstance(retained, TimeItem):
            row.minutes = retained.minutes
            copy["minutes"] = remainder.minutes
        else:
            row.miles = retained.miles
            copy["miles"] = remainder.miles

        self.session.add(WorkEntry(**copy))
        await self.session.flush()
        logger.info(
            "Split work entry %s: retained %s, remainder %s as %s",
            retained.item_id,
            retained.quantity,
            remainder.quantity,
            remainder.item_id,
        )

    async def _persist_recurring_split(
        self,
        retained: RecurringChargeItem,
        remainder: RecurringChargeItem,
    ) -> None:
        row = await self.session.get(RecurringChargeInstance, retained.item_id)
        if row is None:
            raise ValidationError(f"Recurring instance {retained.item_id} vanished before split")

        labels = await self.session.execute(
            select(RecurringChargeInstance.period_label).where(
                RecurringChargeInstance.vendor_id == row.vendor_id,
                RecurringChargeInstance.recurring_charge_id == row.recurring_charge_id,
            )
        )
        remainder_label = next_split_period_label(row.period_label, list(labels.scalars().all()))

        row.amount_ex_tax_snapshot = retained.amount_ex_tax
        self.session.add(
            RecurringChargeInstance(
                instance_id=remainder.item_id,
                vendor_id=row.vendor_id,
                recurring_charge_id=row.recurring_charge_id,
                period_label=remainder_label,
                period_start=row.period_start,
                period_end=row.period_end,
                description_snapshot=row.description_snapshot,
                amount_ex_tax_snapshot=remainder.amount_ex_tax,
                tax_rate_snapshot=row.tax_rate_snapshot,
                sort_order_snapshot=row.sort_order_snapshot,
                status=ItemStatus.UNBILLED.value,
            )
        )
        await self.session.flush()
        logger.info(
            "Split recurring instance %s: retained %s, remainder %s as %s (%s)",
            retained.item_id,
            retained.amount_ex_tax,
            remainder.amount_ex_tax,
            remainder.item_id,
            remainder_label,
        )

    # ===== Discovery & Statement Inputs =====

    async def discover_vendor_ids(self, period: BillingPeriod) -> list[UUID]:
        """Vendors with anything that could be billed or retried this period."""
        queries = [
            select(WorkEntry.vendor_id).where(
                WorkEntry.status == ItemStatus.UNBILLED.value,
                WorkEntry.billable.is_(True),
                WorkEntry.entry_date <= period.end,
            ),
            select(RecurringCharge.vendor_id).where(RecurringCharge.is_active.is_(True)),
            select(RecurringChargeInstance.vendor_id).where(
                RecurringChargeInstance.status == ItemStatus.UNBILLED.value,
                RecurringChargeInstance.period_end <= period.end,
            ),
            select(BillingRun.vendor_id).where(
                BillingRun.period_label == period.label,
                BillingRun.status == "failed",
            ),
        ]
        vendor_ids: set[UUID] = set()
        for query in queries:
            result = await self.session.execute(query.distinct())
            vendor_ids.update(result.scalars().all())
        return sorted(vendor_ids, key=str)

    async def load_statement_inputs(
        self,
        vendor_id: UUID,
        reference_prefix: str,
        settings: CapSetting,
        unbilled: Sequence[Chargeable],
    ) -> StatementInputs:
        """Open prior invoices under this billing program and items billed on them."""
        invoices = await self.session.execute(
            select(Invoice).where(
                Invoice.vendor_id == vendor_id,
                Invoice.reference.startswith(reference_prefix),
                Invoice.status.not_in(OPEN_INVOICE_EXCLUDED_STATUSES),
            )
        )
        open_invoices = [
            OpenInvoice(
                invoice_id=inv.invoice_id,
                total_amount=inv.total_amount,
                paid_amount=inv.paid_amount,
            )
            for inv in invoices.scalars().all()
        ]
        open_ids = [inv.invoice_id for inv in open_invoices if inv.outstanding > ZERO]

        billed_unpaid: list[Chargeable] = []
        if open_ids:
            instances = await self.session.execute(
                select(RecurringChargeInstance).where(
                    RecurringChargeInstance.invoice_id.in_(open_ids),
                    RecurringChargeInstance.status == ItemStatus.BILLED.value,
                )
            )
            billed_unpaid.extend(self.instance_to_item(row) for row in instances.scalars().all())

            entries = await self.session.execute(
                select(WorkEntry).where(
                    WorkEntry.invoice_id.in_(open_ids),
                    WorkEntry.status == ItemStatus.BILLED.value,
                )
            )
            labels = await self._project_labels(vendor_id)
            billed_unpaid.extend(
                self.entry_to_item(row, settings, labels) for row in entries.scalars().all()
            )

        return StatementInputs(
            open_invoices=open_invoices,
            billed_unpaid=billed_unpaid,
            unbilled=list(unbilled),
        )
