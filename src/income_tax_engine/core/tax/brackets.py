"""Bracket calculator — progressive scale and flat rate.

Progressive scale (e.g. Art. 27 ustawy o PIT):
  1. Effective allowance A(I):
       I ≤ degression_start          → full nominal allowance
       I ≥ degression_end            → 0
       otherwise                     → nominal × (1 − (I − start) / (end − start))
  2. The allowance occupies the lowest slice of income [0, A).
  3. Each bracket's marginal rate applies to
       max(0, min(I, upper) − max(lower, A))
     and each bracket tax is rounded half-up to cents before summing.

Example, 12% / 32% scale, 30,000 allowance, threshold 120,000, I = 170,000:
  I próg   (120,000 − 30,000) × 12% = 10,800.00
  II próg  (170,000 − 120,000) × 32% = 16,000.00
  total                              = 26,800.00

Joint filing (income splitting, Art. 6 ust. 2 ustawy o PIT): the combined
income of both spouses is halved, taxed once on the single-filer scale, and
the result is doubled.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from ..models import BracketLine, BracketSet
from ..money import ZERO, format_rate, round_money


@dataclass
class BracketResult:
    tax: Decimal
    allowance: Decimal = ZERO
    lines: list = field(default_factory=list)  #: list[BracketLine]


def effective_allowance(income: Decimal, scale: BracketSet) -> Decimal:
    """Tax-free allowance after degression, rounded to cents."""
    nominal = scale.allowance
    if scale.degression_start is None:
        return nominal
    if income <= scale.degression_start:
        return nominal
    if income >= scale.degression_end:
        return ZERO
    span = scale.degression_end - scale.degression_start
    return round_money(nominal * (1 - (income - scale.degression_start) / span))


def _walk(income: Decimal, scale: BracketSet, allowance: Decimal) -> list[BracketLine]:
    lines = []
    for b in scale.brackets:
        top = income if b.upper is None else min(income, b.upper)
        bottom = max(b.lower, allowance)
        slice_ = max(top - bottom, ZERO)
        lines.append(BracketLine(
            label=b.label,
            rate=b.rate,
            income=slice_,
            tax=round_money(slice_ * b.rate),
        ))
    return lines


def calculate_progressive(
    income: Decimal,
    scale: BracketSet,
    joint: bool = False,
    partner_income: Decimal = ZERO,
) -> BracketResult:
    """Tax on ``income`` under a progressive bracket set.

    Args:
        income: Taxable income after losses. Values ≤ 0 yield zero tax.
        scale: Bracket set resolved for the period.
        joint: Income splitting with a spouse.
        partner_income: Spouse's taxable income (may be 0) when ``joint``.

    Returns:
        BracketResult with one line per bracket. For joint filing, line
        incomes and taxes are the doubled per-spouse figures.
    """
    base = max(income, ZERO)
    if joint:
        base = (base + max(partner_income, ZERO)) / 2

    allowance = effective_allowance(base, scale)
    lines = _walk(base, scale, allowance)

    if joint:
        lines = [
            BracketLine(l.label, l.rate, l.income * 2, l.tax * 2) for l in lines
        ]
        allowance = allowance * 2

    tax = sum((l.tax for l in lines), ZERO)
    return BracketResult(tax=tax, allowance=allowance, lines=lines)


def calculate_flat(income: Decimal, rate: Decimal, label: str = "") -> BracketResult:
    """round(income × rate) — no allowance, no brackets."""
    base = max(income, ZERO)
    tax = round_money(base * rate)
    line = BracketLine(label=label or f"Flat {format_rate(rate)}", rate=rate, income=base, tax=tax)
    return BracketResult(tax=tax, lines=[line])
