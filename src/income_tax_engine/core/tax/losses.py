"""Loss carry-forward allocation (Art. 7 ust. 5 ustawy o CIT / Art. 9 ust. 3 ustawy o PIT).

A tax loss may reduce income of the following N years (N = 5), by at most
a capped share of the current year's income (cap = 50%). Records are
consumed oldest origin year first, since they expire first; ties go to the
record created first.

    cap       = round(income × cap_rate)
    allocated = fold over records: take min(cap_left, available) each

This module is pure: it plans an allocation from records passed in. The
ledger (core.ledger) persists it.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from functools import reduce
from typing import Optional

from ..models import LossRecord
from ..money import ZERO, round_money


@dataclass
class LossSlice:
    """Planned effect of one calculation on one loss record."""

    record: LossRecord
    available: Decimal          #: remaining + released
    applied: Decimal
    released: Decimal = ZERO    #: returned by a superseded calculation

    @property
    def remaining_after(self) -> Decimal:
        return self.available - self.applied


@dataclass
class LossAllocation:
    year: int
    income: Decimal
    cap_rate: Decimal
    cap: Decimal
    slices: list = field(default_factory=list)  #: list[LossSlice], allocation order
    notes: list = field(default_factory=list)

    @property
    def total_applied(self) -> Decimal:
        return sum((s.applied for s in self.slices), ZERO)

    @property
    def total_available(self) -> Decimal:
        return sum((s.available for s in self.slices), ZERO)


def _eligible(record: LossRecord, year: int) -> bool:
    return not record.voided and record.origin_year < year <= record.expiration_year


def allocate_losses(
    records: list[LossRecord],
    year: int,
    income: Decimal,
    cap_rate: Decimal,
    released: Optional[dict[int, Decimal]] = None,
) -> LossAllocation:
    """Plan FIFO loss usage against ``income`` for tax ``year``.

    Args:
        records: All loss records of one taxpayer and regime.
        year: Tax year being calculated.
        income: Positive income before loss deduction.
        cap_rate: Share of income that may be offset (e.g. Decimal("0.50")).
        released: record id → amount a superseded calculation gave back.

    Returns:
        LossAllocation whose slices cover every record touched, applied
        or released. ``total_applied`` never exceeds ``cap``.
    """
    released = released or {}
    cap = round_money(max(income, ZERO) * cap_rate)

    ordered = sorted(records, key=lambda r: (r.origin_year, r.id or 0))

    def step(acc: tuple, record: LossRecord) -> tuple:
        left, slices = acc
        give_back = released.get(record.id, ZERO)
        available = record.remaining_amount + give_back
        take = min(left, available) if _eligible(record, year) else ZERO
        if take > 0 or give_back > 0:
            slices = slices + [LossSlice(record, available, take, give_back)]
        return left - take, slices

    _, slices = reduce(step, ordered, (cap, []))

    allocation = LossAllocation(year=year, income=income, cap_rate=cap_rate, cap=cap, slices=slices)
    if allocation.total_applied == 0:
        allocation.notes.append("No loss carry-forward available for this year")
    elif allocation.total_applied == cap:
        allocation.notes.append(f"Loss deduction limited to {cap} ({cap_rate * 100:.0f}% of income)")
    return allocation
