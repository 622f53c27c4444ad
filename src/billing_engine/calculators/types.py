"""Type definitions shared by the billing calculators."""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


class ItemKind(str, Enum):
    """Billable item categories, declared in allocation priority order."""

    RECURRING = "recurring"
    MILEAGE = "mileage"
    TIME = "time"


CATEGORY_PRIORITY: tuple[ItemKind, ...] = (ItemKind.RECURRING, ItemKind.MILEAGE, ItemKind.TIME)


class ItemStatus(str, Enum):
    """Billable item lifecycle."""

    UNBILLED = "unbilled"
    PENDING = "pending"
    BILLED = "billed"


class BillingMode(str, Enum):
    """Vendor billing modes."""

    UNCAPPED = "uncapped"
    CAPPED = "capped"


@dataclass(frozen=True)
class BillingPeriod:
    """A calendar-month billing period labelled YYYY-MM."""

    year: int
    month: int

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    @classmethod
    def parse(cls, label: str) -> BillingPeriod:
        """Parse a YYYY-MM label."""
        match = _PERIOD_RE.match(label)
        if match is None:
            raise ValueError(f"Invalid billing period '{label}', expected YYYY-MM")
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise ValueError(f"Invalid billing period '{label}', month out of range")
        return cls(year, month)

    @classmethod
    def previous_month(cls, day: date) -> BillingPeriod:
        """The period before the one containing ``day``."""
        if day.month == 1:
            return cls(day.year - 1, 12)
        return cls(day.year, day.month - 1)

    def __str__(self) -> str:
        return self.label
