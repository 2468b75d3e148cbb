"""Income tax engine — pure calculation steps.

High-level entry point:
    from income_tax_engine.core.tax import assess_tax

Tax calculation pipeline for one period:
  1. Expense classification   (expenses)  — deductible vs non-deductible
  2. Loss carry-forward       (losses)    — FIFO, capped at 50% of income
  3. Rate application         (brackets)  — progressive scale or flat rate
  4. Reliefs and levies       (here)      — child relief, health deduction,
                                            solidarity surcharge
  5. Advance reconciliation   (advances)  — installment due and deadline

Sub-modules (importable individually for testing or reuse):
    advances  — cumulative / simplified installments, due dates
    brackets  — progressive scale with degressive allowance, flat rate
    expenses  — expense deductibility policy
    losses    — FIFO loss allocation under a cap
    regimes   — regime variants resolved from the rule catalog
"""

from dataclasses import dataclass, field
from decimal import Decimal

from ..models import CalculationOptions
from ..money import ZERO, format_rate, round_money
from .advances import (
    DEFAULT_DUE_DAY,
    AdvanceResult,
    advance_due_date,
    reconcile_advance,
    reconcile_cumulative,
    reconcile_simplified,
)
from .brackets import BracketResult, calculate_flat, calculate_progressive, effective_allowance
from .expenses import classify, classify_all
from .losses import LossAllocation, LossSlice, allocate_losses
from .regimes import (
    EstonianDistribution,
    FlatRate,
    IncomeRules,
    LumpSum,
    PreferentialSmall,
    ProgressiveScale,
    ResolvedRegime,
    Solidarity,
    TaxationMethod,
    resolve_regime,
)

__all__ = [
    "TaxAssessment",
    "assess_tax",
    # advances
    "DEFAULT_DUE_DAY",
    "AdvanceResult",
    "advance_due_date",
    "reconcile_advance",
    "reconcile_cumulative",
    "reconcile_simplified",
    # brackets
    "BracketResult",
    "calculate_flat",
    "calculate_progressive",
    "effective_allowance",
    # expenses
    "classify",
    "classify_all",
    # losses
    "LossAllocation",
    "LossSlice",
    "allocate_losses",
    # regimes
    "EstonianDistribution",
    "FlatRate",
    "IncomeRules",
    "LumpSum",
    "PreferentialSmall",
    "ProgressiveScale",
    "ResolvedRegime",
    "Solidarity",
    "TaxationMethod",
    "resolve_regime",
]


@dataclass
class TaxAssessment:
    """Tax figures for one period, before advance reconciliation."""

    taxable_base: Decimal = ZERO
    tax: Decimal = ZERO                 #: from brackets / rate, before reliefs
    allowance: Decimal = ZERO
    lines: list = field(default_factory=list)
    child_relief: Decimal = ZERO
    health_deduction: Decimal = ZERO
    solidarity_surcharge: Decimal = ZERO
    total_tax: Decimal = ZERO
    rate_code: str = ""
    rate_label: str = ""
    notes: list = field(default_factory=list)


def _child_relief(schedule: tuple, child_count: int) -> Decimal:
    """Sum per-child amounts; children past the schedule get its last amount."""
    if not schedule or child_count <= 0:
        return ZERO
    return sum(
        (schedule[min(i, len(schedule) - 1)] for i in range(child_count)),
        ZERO,
    )


def _solidarity_levy(solidarity, income: Decimal) -> Decimal:
    if solidarity is None or income <= solidarity.threshold:
        return ZERO
    return round_money((income - solidarity.threshold) * solidarity.rate)


def assess_tax(
    method: TaxationMethod,
    taxable_income: Decimal,
    revenue: Decimal,
    options: CalculationOptions,
) -> TaxAssessment:
    """Apply the regime's rate(s), reliefs and levies.

    Args:
        method: Variant from resolve_regime().
        taxable_income: Income after expenses and loss deduction; may be
            negative (loss year → no tax).
        revenue: Period revenue — the base for lump-sum taxation.
        options: Calculation options (joint filing, children, health
            contributions, distributed profit).

    Returns:
        TaxAssessment with the bracket lines and every adjustment.
    """
    a = TaxAssessment(rate_code=method.rate_code)

    if isinstance(method, LumpSum):
        a.taxable_base = revenue
        result = calculate_flat(revenue, method.rate, label=f"Ryczałt {format_rate(method.rate)}")
        a.rate_label = format_rate(method.rate)
        a.notes.append("Lump-sum tax is levied on revenue; costs and losses do not reduce it")
    elif isinstance(method, EstonianDistribution):
        a.taxable_base = options.distributed_profit
        result = calculate_flat(
            options.distributed_profit, method.rate,
            label=f"Distributed profit {format_rate(method.rate)}",
        )
        a.rate_label = format_rate(method.rate)
        if options.distributed_profit == 0:
            a.notes.append("No profit distributed — retained earnings are not taxed")
    elif isinstance(method, ProgressiveScale):
        a.taxable_base = max(taxable_income, ZERO)
        result = calculate_progressive(
            taxable_income, method.scale,
            joint=options.joint_filing, partner_income=options.partner_income,
        )
        a.rate_label = " / ".join(format_rate(b.rate) for b in method.scale.brackets)
        if options.joint_filing:
            a.notes.append("Joint filing: tax computed on half the combined income, doubled")
    else:
        a.taxable_base = max(taxable_income, ZERO)
        result = calculate_flat(taxable_income, method.rate)
        a.rate_label = format_rate(method.rate)

    a.tax = result.tax
    a.allowance = result.allowance
    a.lines = result.lines

    remaining = a.tax
    if isinstance(method, ProgressiveScale) and options.child_count > 0:
        a.child_relief = min(_child_relief(method.child_relief, options.child_count), remaining)
        remaining -= a.child_relief

    if isinstance(method, FlatRate) and options.health_insurance > 0:
        cap = method.health_deduction_cap
        if cap is None:
            a.notes.append("No health contribution deduction in force for this period")
        else:
            a.health_deduction = min(options.health_insurance, cap, remaining)
            remaining -= a.health_deduction

    if isinstance(method, (ProgressiveScale, FlatRate, PreferentialSmall)):
        a.solidarity_surcharge = _solidarity_levy(method.solidarity, a.taxable_base)

    a.total_tax = remaining + a.solidarity_surcharge
    return a
