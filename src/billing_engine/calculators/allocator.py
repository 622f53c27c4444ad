"""Cap allocation with boundary splitting."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Sequence

from billing_engine.calculators.chargeables import Chargeable, ItemSplit
from billing_engine.calculators.money import DEFAULT_MAX_ITERATIONS, MINOR_UNIT, ZERO
from billing_engine.calculators.types import CATEGORY_PRIORITY
from billing_engine.errors import CapUnsatisfiable


@dataclass
class AllocationResult:
    """Outcome of allocating candidates against an optional cap."""

    selected: list[Chargeable] = field(default_factory=list)
    deferred: list[Chargeable] = field(default_factory=list)
    running_inc_tax: Decimal = ZERO
    split: ItemSplit | None = None
    cap_inc_tax: Decimal | None = None

    @property
    def carried_forward_inc_tax(self) -> Decimal:
        return sum((item.inc_tax for item in self.deferred), ZERO)

    @property
    def eligible_inc_tax(self) -> Decimal:
        return self.running_inc_tax + self.carried_forward_inc_tax

    @property
    def headroom(self) -> Decimal | None:
        if self.cap_inc_tax is None:
            return None
        return self.cap_inc_tax - self.running_inc_tax

    @property
    def selected_ids(self) -> list[str]:
        return [str(item.item_id) for item in self.selected]


class CapAllocator:
    """Deterministic selection of billable items under a monthly cap.

    Algorithm:
    1. Walk candidates in category priority (recurring, mileage, time), keeping
       each category's incoming order. Include an item when uncapped or when
       it still fits; otherwise defer it and keep walking.
    2. If headroom above one minor unit remains, split the first deferred item
       (category priority again) that yields a conserving partial within the
       headroom. At most one split per allocation.
    3. Whatever stays deferred, remainder included, is carried forward.
    """

    def __init__(self, max_iterations: int = DEFAULT_MAX_ITERATIONS):
        self.max_iterations = max_iterations

    @staticmethod
    def order_candidates(candidates: Sequence[Chargeable]) -> list[Chargeable]:
        """Stable sort by category priority."""
        return sorted(candidates, key=lambda item: CATEGORY_PRIORITY.index(item.kind))

    def allocate(
        self,
        candidates: Sequence[Chargeable],
        cap_inc_tax: Decimal | None = None,
    ) -> AllocationResult:
        """Allocate candidates; raises CapUnsatisfiable if a cap admits nothing."""
        result = AllocationResult(cap_inc_tax=cap_inc_tax)
        ordered = self.order_candidates(candidates)

        for item in ordered:
            amount = item.inc_tax
            if cap_inc_tax is None or result.running_inc_tax + amount <= cap_inc_tax:
                result.selected.append(item)
                result.running_inc_tax += amount
            else:
                result.deferred.append(item)

        if cap_inc_tax is not None and result.headroom > MINOR_UNIT:
            self._split_boundary_item(result)

        if cap_inc_tax is not None and ordered and not result.selected:
            raise CapUnsatisfiable(cap_inc_tax, len(ordered))

        return result

    def _split_boundary_item(self, result: AllocationResult) -> None:
        headroom = result.headroom
        for kind in CATEGORY_PRIORITY:
            position, item = next(
                (
                    (index, deferred)
                    for index, deferred in enumerate(result.deferred)
                    if deferred.kind == kind and deferred.inc_tax > ZERO
                ),
                (None, None),
            )
            if item is None:
                continue

            quantity = item.largest_split_within(headroom, self.max_iterations)
            if quantity is None:
                continue

            split = item.split(quantity)
            result.deferred[position] = split.remainder
            result.selected.append(split.retained)
            result.running_inc_tax += split.retained.inc_tax
            result.split = split
            return
