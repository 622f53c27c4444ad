"""Exact minor-unit money arithmetic.

All amounts are ``Decimal`` values quantized to 0.01 with ROUND_HALF_UP.
Tax is always derived from a rounded ex-tax amount, so inc-tax values only
move in steps dictated by the tax rate. Inverting that mapping therefore
needs a bounded search rather than plain division.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from billing_engine.errors import BillingError

MINOR_UNIT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
DEFAULT_MAX_ITERATIONS = 500


class MoneyConvergenceError(BillingError):
    """Raised when no ex-tax amount produces the requested inc-tax target.

    ``closest_below`` carries the largest pair whose inc-tax stays under the
    target when the search bracketed it, so callers can decide how to express
    the residual. It is None when the iteration bound ran out first.
    """

    def __init__(
        self,
        target: Decimal,
        tax_rate: Decimal,
        closest_below: MoneyPair | None = None,
    ):
        self.target = target
        self.tax_rate = tax_rate
        self.closest_below = closest_below
        if closest_below is not None:
            detail = f"not representable at {tax_rate}% tax"
        else:
            detail = "iteration limit reached"
        super().__init__(f"Cannot reach inc-tax {target}: {detail}")


@dataclass(frozen=True)
class MoneyPair:
    """An ex-tax amount and the inc-tax amount it produces."""

    ex_tax: Decimal
    inc_tax: Decimal

    @property
    def tax(self) -> Decimal:
        return self.inc_tax - self.ex_tax


def to_decimal(value: Decimal | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(amount: Decimal | int | str) -> Decimal:
    """Round to the minor unit (ROUND_HALF_UP)."""
    return to_decimal(amount).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def tax_amount(ex_tax: Decimal, tax_rate: Decimal) -> Decimal:
    return round_money(round_money(ex_tax) * to_decimal(tax_rate) / HUNDRED)


def inc_tax(ex_tax: Decimal, tax_rate: Decimal) -> Decimal:
    """Round ex-tax, apply tax, round again."""
    ex = round_money(ex_tax)
    return ex + tax_amount(ex, tax_rate)


def pair_for(ex_tax: Decimal, tax_rate: Decimal) -> MoneyPair:
    ex = round_money(ex_tax)
    return MoneyPair(ex_tax=ex, inc_tax=inc_tax(ex, tax_rate))


def ex_tax_for_target_inc_tax(
    target: Decimal,
    tax_rate: Decimal,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> MoneyPair:
    """Find the ex-tax amount whose inc-tax value equals ``target`` exactly.

    Starts from ``target / (1 + rate/100)`` and nudges one minor unit at a
    time. Raises MoneyConvergenceError rather than returning an approximation.
    """
    target = round_money(target)
    rate = to_decimal(tax_rate)
    ex = round_money(target / (1 + rate / HUNDRED))
    direction = 0

    for _ in range(max_iterations):
        current = inc_tax(ex, rate)
        if current == target:
            return MoneyPair(ex_tax=ex, inc_tax=current)

        step = 1 if current < target else -1
        if direction and step != direction:
            # Stepped across the target: it falls between two reachable values
            below = ex if current < target else ex - MINOR_UNIT
            raise MoneyConvergenceError(target, rate, closest_below=pair_for(below, rate))
        direction = step
        ex += MINOR_UNIT * step

    raise MoneyConvergenceError(target, rate)



def largest_ex_tax_within(
    headroom: Decimal,
    tax_rate: Decimal,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> MoneyPair | None:
    """Largest ex-tax amount whose inc-tax does not exceed ``headroom``.

    Returns None when not even one minor unit fits.
    """
    headroom = round_money(headroom)
    if headroom < MINOR_UNIT:
        return None
    try:
        return ex_tax_for_target_inc_tax(headroom, tax_rate, max_iterations)
    except MoneyConvergenceError as exc:
        if exc.closest_below is None:
            raise
        if exc.closest_below.ex_tax < MINOR_UNIT:
            return None
        return exc.closest_below
