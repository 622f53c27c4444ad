"""Billable item variants.

Recurring charges, mileage and time are a closed set of frozen dataclasses
sharing one chargeable capability: each knows its ex-tax and inc-tax
amounts, its split unit, and how to divide itself into a retained part and a
remainder. The allocator only ever talks to that capability.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import ClassVar, Union
from uuid import UUID, uuid4

from billing_engine.calculators.money import (
    DEFAULT_MAX_ITERATIONS,
    MINOR_UNIT,
    ZERO,
    MoneyPair,
    largest_ex_tax_within,
    pair_for,
    round_money,
)
from billing_engine.calculators.types import ItemKind

RECURRING_BUCKET = "Recurring charges"
UNASSIGNED_BUCKET = "Unassigned"

_SPLIT_SUFFIX_RE = re.compile(r"^(?P<base>.+)-S(?P<n>\d+)$")


class BillableItem(ABC):
    """Shared chargeable capability."""

    kind: ClassVar[ItemKind]

    item_id: UUID
    vendor_id: UUID

    @property
    @abstractmethod
    def quantity(self) -> Decimal:
        """Amount of the split dimension (currency, miles or minutes)."""

    @property
    @abstractmethod
    def split_unit(self) -> Decimal:
        """Smallest quantity a split may retain or leave behind."""

    @property
    @abstractmethod
    def tax_rate(self) -> Decimal:
        ...

    @abstractmethod
    def ex_tax_for(self, quantity: Decimal) -> Decimal:
        """Ex-tax amount charged for ``quantity`` of this item."""

    @abstractmethod
    def with_quantity(self, quantity: Decimal) -> BillableItem:
        ...

    @property
    @abstractmethod
    def bucket_label(self) -> str:
        """Attribution bucket for statement projections."""

    def amounts_for(self, quantity: Decimal) -> MoneyPair:
        return pair_for(self.ex_tax_for(quantity), self.tax_rate)

    @property
    def amounts(self) -> MoneyPair:
        return self.amounts_for(self.quantity)

    @property
    def ex_tax(self) -> Decimal:
        return self.amounts.ex_tax

    @property
    def inc_tax(self) -> Decimal:
        return self.amounts.inc_tax

    def conserves(self, quantity: Decimal) -> bool:
        """True when splitting at ``quantity`` loses no minor unit."""
        part = self.amounts_for(quantity)
        rest = self.amounts_for(self.quantity - quantity)
        whole = self.amounts
        return (
            part.ex_tax + rest.ex_tax == whole.ex_tax
            and part.inc_tax + rest.inc_tax == whole.inc_tax
        )

    def split_estimate(self, headroom: Decimal, max_iterations: int) -> Decimal:
        """Proportional first guess, floored to whole split units."""
        unit = self.split_unit
        return (self.quantity * headroom / self.inc_tax / unit).to_integral_value(ROUND_FLOOR) * unit

    def largest_split_within(
        self,
        headroom: Decimal,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> Decimal | None:
        """Largest retained quantity whose inc-tax fits ``headroom``.

        The quantity is a whole number of split units, leaves part of the item
        behind, and conserves both ex-tax and inc-tax across the two parts.
        Returns None when no such quantity exists.
        """
        unit = self.split_unit
        whole = self.inc_tax
        if whole <= ZERO or headroom < MINOR_UNIT or self.quantity <= unit:
            return None

        # Largest whole number of units strictly below the quantity
        ceiling = ((self.quantity / unit).to_integral_value(ROUND_CEILING) - 1) * unit
        quantity = min(self.split_estimate(headroom, max_iterations), ceiling)

        # Estimate can undershoot after rounding; walk up first
        for _ in range(max_iterations):
            bigger = quantity + unit
            if bigger > ceiling or self.amounts_for(bigger).inc_tax > headroom:
                break
            quantity = bigger

        for _ in range(max_iterations):
            if quantity < unit:
                return None
            if self.amounts_for(quantity).inc_tax <= headroom and self.conserves(quantity):
                return quantity
            quantity -= unit
        return None

    def split(self, quantity: Decimal) -> ItemSplit:
        """Divide into a retained part (same id) and a remainder (new id)."""
        if quantity <= ZERO or quantity >= self.quantity:
            raise ValueError(f"Split quantity {quantity} outside (0, {self.quantity})")
        retained = self.with_quantity(quantity)
        remainder = replace(self.with_quantity(self.quantity - quantity), item_id=uuid4())
        return ItemSplit(original=self, retained=retained, remainder=remainder)


@dataclass(frozen=True)
class RecurringChargeItem(BillableItem):
    """A recurring charge instance; splits to the penny of ex-tax amount."""

    kind: ClassVar[ItemKind] = ItemKind.RECURRING

    item_id: UUID
    vendor_id: UUID
    description: str
    amount_ex_tax: Decimal
    charge_tax_rate: Decimal
    period_label: str
    period_end: date
    recurring_charge_id: UUID | None = None
    sort_order: int = 0

    @property
    def quantity(self) -> Decimal:
        return round_money(self.amount_ex_tax)

    @property
    def split_unit(self) -> Decimal:
        return MINOR_UNIT

    @property
    def tax_rate(self) -> Decimal:
        return self.charge_tax_rate

    def ex_tax_for(self, quantity: Decimal) -> Decimal:
        return round_money(quantity)

    def split_estimate(self, headroom: Decimal, max_iterations: int) -> Decimal:
        fit = largest_ex_tax_within(headroom, self.tax_rate, max_iterations)
        return fit.ex_tax if fit is not None else ZERO

    def with_quantity(self, quantity: Decimal) -> RecurringChargeItem:
        return replace(self, amount_ex_tax=round_money(quantity))

    @property
    def bucket_label(self) -> str:
        return RECURRING_BUCKET


@dataclass(frozen=True)
class MileageItem(BillableItem):
    """A mileage entry; zero-rated, splits to hundredths of a mile."""

    kind: ClassVar[ItemKind] = ItemKind.MILEAGE
    MILE_UNIT: ClassVar[Decimal] = Decimal("0.01")

    item_id: UUID
    vendor_id: UUID
    miles: Decimal
    mileage_rate: Decimal
    entry_date: date
    project_id: UUID | None = None
    project_label: str | None = None
    description: str | None = None

    @property
    def quantity(self) -> Decimal:
        return self.miles

    @property
    def split_unit(self) -> Decimal:
        return self.MILE_UNIT

    @property
    def tax_rate(self) -> Decimal:
        return ZERO

    def ex_tax_for(self, quantity: Decimal) -> Decimal:
        return round_money(quantity * self.mileage_rate)

    def with_quantity(self, quantity: Decimal) -> MileageItem:
        return replace(self, miles=quantity)

    @property
    def bucket_label(self) -> str:
        return self.project_label or UNASSIGNED_BUCKET


@dataclass(frozen=True)
class TimeItem(BillableItem):
    """A time entry; splits in whole time blocks."""

    kind: ClassVar[ItemKind] = ItemKind.TIME

    item_id: UUID
    vendor_id: UUID
    minutes: int
    hourly_rate: Decimal
    entry_tax_rate: Decimal
    entry_date: date
    project_id: UUID | None = None
    project_label: str | None = None
    description: str | None = None
    block_minutes: int = 15

    @property
    def quantity(self) -> Decimal:
        return Decimal(self.minutes)

    @property
    def split_unit(self) -> Decimal:
        return Decimal(self.block_minutes)

    @property
    def tax_rate(self) -> Decimal:
        return self.entry_tax_rate

    @property
    def hours(self) -> Decimal:
        return Decimal(self.minutes) / Decimal(60)

    def ex_tax_for(self, quantity: Decimal) -> Decimal:
        return round_money(quantity * self.hourly_rate / Decimal(60))

    def with_quantity(self, quantity: Decimal) -> TimeItem:
        return replace(self, minutes=int(quantity))

    @property
    def bucket_label(self) -> str:
        return self.project_label or UNASSIGNED_BUCKET


Chargeable = Union[RecurringChargeItem, MileageItem, TimeItem]


@dataclass(frozen=True)
class ItemSplit:
    """A boundary split. Retained keeps the original id."""

    original: Chargeable
    retained: Chargeable
    remainder: Chargeable


def next_split_period_label(period_label: str, existing_labels: list[str]) -> str:
    """Label for a recurring remainder: ``<base>-S<n>`` with n one past the highest used."""
    match = _SPLIT_SUFFIX_RE.match(period_label)
    base = match.group("base") if match else period_label
    highest = 0
    for label in existing_labels:
        found = _SPLIT_SUFFIX_RE.match(label)
        if found and found.group("base") == base:
            highest = max(highest, int(found.group("n")))
    return f"{base}-S{highest + 1}"
