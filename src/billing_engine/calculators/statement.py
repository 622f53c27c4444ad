"""Statement balance projection for capped, statement-mode accounts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from billing_engine.calculators.chargeables import RECURRING_BUCKET, Chargeable
from billing_engine.calculators.money import ZERO, round_money

DEFAULT_MAX_MONTHS = 120


@dataclass(frozen=True)
class OpenInvoice:
    """A prior invoice that still carries a balance."""

    invoice_id: UUID
    total_amount: Decimal
    paid_amount: Decimal

    @property
    def outstanding(self) -> Decimal:
        return max(self.total_amount - self.paid_amount, ZERO)


@dataclass
class StatementInputs:
    """Everything the projector needs about the vendor's account."""

    open_invoices: list[OpenInvoice] = field(default_factory=list)
    billed_unpaid: list[Chargeable] = field(default_factory=list)
    unbilled: list[Chargeable] = field(default_factory=list)


@dataclass(frozen=True)
class Attribution:
    label: str
    amount: Decimal


@dataclass(frozen=True)
class Instalment:
    label: str
    amount: Decimal


@dataclass
class StatementProjection:
    """Balance narrative attached to a statement invoice."""

    balance_before: Decimal
    invoice_total: Decimal
    balance_after: Decimal
    attributions: list[Attribution] = field(default_factory=list)
    unallocated: Decimal = ZERO
    payment_plan: list[Instalment] = field(default_factory=list)
    remaining_after_horizon: Decimal = ZERO

    def to_notes(self) -> str:
        parts = [
            f"Balance before this invoice: {self.balance_before:.2f}",
            f"This invoice: {self.invoice_total:.2f}",
            f"Balance after this invoice: {self.balance_after:.2f}",
        ]
        if self.attributions:
            parts.append("Outstanding balance by project:")
            parts.extend(f"- {a.label}: {a.amount:.2f}" for a in self.attributions)
        if self.unallocated > ZERO:
            parts.append(f"Unallocated balance: {self.unallocated:.2f}")
        if self.payment_plan:
            parts.append("Projected payments:")
            parts.extend(f"- {i.label}: {i.amount:.2f}" for i in self.payment_plan)
        if self.remaining_after_horizon > ZERO:
            parts.append(
                f"Remaining after {len(self.payment_plan)} months: "
                f"{self.remaining_after_horizon:.2f}"
            )
        return "\n".join(parts)


def add_months(day: date, months: int) -> date:
    """First day of the month ``months`` after ``day``'s month."""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


class StatementProjector:
    """Outstanding-balance reconciliation and payment-plan projection.

    Informational only: nothing here feeds back into allocation.
    """

    def __init__(self, max_months: int = DEFAULT_MAX_MONTHS):
        self.max_months = max_months

    @staticmethod
    def balance_before(inputs: StatementInputs) -> Decimal:
        """Outstanding on open prior invoices plus every unbilled item."""
        outstanding = sum((inv.outstanding for inv in inputs.open_invoices), ZERO)
        unbilled = sum((item.inc_tax for item in inputs.unbilled), ZERO)
        return outstanding + unbilled

    @staticmethod
    def attribute(
        balance_before: Decimal,
        buckets: Sequence[Chargeable],
    ) -> tuple[list[Attribution], Decimal]:
        """Scale per-project gross amounts so they reconcile to ``balance_before``.

        Returns (attributions, unallocated). Projects are ordered by amount,
        largest first, with recurring charges last; the last bucket absorbs
        the scaling residual.
        """
        if balance_before <= ZERO:
            return [], ZERO

        gross: dict[str, Decimal] = {}
        for item in buckets:
            gross[item.bucket_label] = gross.get(item.bucket_label, ZERO) + item.inc_tax
        gross = {label: amount for label, amount in gross.items() if amount > ZERO}
        gross_total = sum(gross.values(), ZERO)

        if gross_total <= ZERO:
            return [], balance_before

        ordered = sorted(
            gross.items(),
            key=lambda pair: (pair[0] == RECURRING_BUCKET, -pair[1], pair[0]),
        )
        scale = balance_before / gross_total
        attributions = [
            Attribution(label=label, amount=round_money(amount * scale))
            for label, amount in ordered
        ]
        residual = balance_before - sum((a.amount for a in attributions), ZERO)
        if residual != ZERO:
            last = attributions[-1]
            attributions[-1] = Attribution(label=last.label, amount=last.amount + residual)
        return attributions, ZERO

    def payment_plan(
        self,
        balance_after: Decimal,
        monthly_cap: Decimal,
        invoice_date: date,
        invoice_total: Decimal,
    ) -> tuple[list[Instalment], Decimal]:
        """Repeatedly take min(cap, remaining), labelling calendar months."""
        plan: list[Instalment] = []
        remaining = balance_after
        if monthly_cap <= ZERO:
            return plan, remaining

        offset = 1 if invoice_total > ZERO else 0
        for month in range(self.max_months):
            if remaining <= ZERO:
                break
            amount = min(monthly_cap, remaining)
            label = add_months(invoice_date, offset + month).strftime("%b %Y")
            plan.append(Instalment(label=label, amount=amount))
            remaining -= amount
        return plan, remaining

    def project(
        self,
        inputs: StatementInputs,
        invoice_total: Decimal,
        monthly_cap: Decimal,
        invoice_date: date,
    ) -> StatementProjection:
        before = self.balance_before(inputs)
        after = max(before - invoice_total, ZERO)
        attributions, unallocated = self.attribute(
            before,
            [*inputs.billed_unpaid, *inputs.unbilled],
        )
        plan, remaining = self.payment_plan(after, monthly_cap, invoice_date, invoice_total)
        return StatementProjection(
            balance_before=before,
            invoice_total=invoice_total,
            balance_after=after,
            attributions=attributions,
            unallocated=unallocated,
            payment_plan=plan,
            remaining_after_horizon=remaining,
        )
