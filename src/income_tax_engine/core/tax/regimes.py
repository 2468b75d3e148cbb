"""Regime variants — resolved once per calculation from the rule catalog.

Each variant carries the rule values it needs, so the calculation path
never looks up rates by string code.

    ProgressiveScale       skala podatkowa (brackets + allowance)
    FlatRate               CIT 19% / PIT liniowy 19%
    PreferentialSmall      CIT 9% for small taxpayers
    LumpSum                ryczałt on revenue, rate per activity code
    EstonianDistribution   CIT on distributed profit only

The 4% surcharge on income above 1M is attached to every income-taxed
variant whose regime has SOLIDARITY_* rules in force.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Union

from ..exceptions import InvalidInputError
from ..models import (
    BracketSet,
    CalculationOptions,
    ExpensePolicy,
    Regime,
    RuleKind,
    TaxMethod,
)
from ..rules.catalog import RuleCatalog


@dataclass(frozen=True)
class Solidarity:
    threshold: Decimal
    rate: Decimal


@dataclass(frozen=True)
class ProgressiveScale:
    scale: BracketSet
    child_relief: tuple = ()
    solidarity: Optional[Solidarity] = None
    rate_code: str = "SCALE"


@dataclass(frozen=True)
class FlatRate:
    rate: Decimal
    health_deduction_cap: Optional[Decimal] = None
    solidarity: Optional[Solidarity] = None
    rate_code: str = "RATE"


@dataclass(frozen=True)
class PreferentialSmall:
    rate: Decimal
    solidarity: Optional[Solidarity] = None
    rate_code: str = "RATE"


@dataclass(frozen=True)
class LumpSum:
    rate: Decimal
    rate_code: str


@dataclass(frozen=True)
class EstonianDistribution:
    rate: Decimal
    rate_code: str


TaxationMethod = Union[ProgressiveScale, FlatRate, PreferentialSmall, LumpSum, EstonianDistribution]


@dataclass(frozen=True)
class IncomeRules:
    """Rules that apply when tax is levied on income (revenue − costs)."""
    loss_cap: Decimal
    carry_forward_years: int
    expense_policy: ExpensePolicy


@dataclass(frozen=True)
class ResolvedRegime:
    regime: Regime              #: regime whose rules were resolved
    method: TaxationMethod
    income_rules: Optional[IncomeRules] = None


def _effective_regime(regime: Regime, options: CalculationOptions) -> Regime:
    if options.method is not None:
        if regime not in (Regime.PERSONAL_PROGRESSIVE, Regime.PERSONAL_FLAT):
            raise InvalidInputError(
                "Method selection applies to personal income regimes only", regime=regime
            )
        return (
            Regime.PERSONAL_FLAT if options.method == TaxMethod.FLAT
            else Regime.PERSONAL_PROGRESSIVE
        )
    if regime == Regime.CORPORATE_STANDARD and options.small_taxpayer:
        return Regime.CORPORATE_SMALL
    return regime


def _solidarity(catalog: RuleCatalog, regime: Regime, as_of: date) -> Optional[Solidarity]:
    threshold = catalog.find(regime, "SOLIDARITY_THRESHOLD", as_of)
    rate = catalog.find(regime, "SOLIDARITY_RATE", as_of)
    if threshold is None or rate is None:
        return None
    return Solidarity(threshold=threshold.value, rate=rate.value)


def _income_rules(catalog: RuleCatalog, regime: Regime, as_of: date) -> IncomeRules:
    return IncomeRules(
        loss_cap=catalog.value(regime, "LOSS_CAP", as_of, RuleKind.RATE),
        carry_forward_years=int(catalog.value(regime, "LOSS_CARRY_FORWARD_YEARS", as_of, RuleKind.AMOUNT)),
        expense_policy=catalog.value(regime, "EXPENSE_POLICY", as_of, RuleKind.EXPENSE_POLICY),
    )


def resolve_regime(
    catalog: RuleCatalog,
    regime: Regime,
    as_of: date,
    options: CalculationOptions,
) -> ResolvedRegime:
    """Pick the taxation variant for ``regime`` and load its rules as of ``as_of``.

    Raises:
        RuleNotFoundError: a required rule has no version covering ``as_of``.
        InvalidInputError: options do not fit the regime.
    """
    effective = _effective_regime(regime, options)

    if effective == Regime.PERSONAL_LUMP_SUM:
        code = options.lump_sum_code.upper()
        rate = catalog.value(effective, code, as_of, RuleKind.RATE)
        return ResolvedRegime(effective, LumpSum(rate=rate, rate_code=code))

    if effective == Regime.CORPORATE_ESTONIAN:
        code = "DISTRIBUTION_RATE" if options.small_taxpayer else "DISTRIBUTION_RATE_LARGE"
        rate = catalog.value(effective, code, as_of, RuleKind.RATE)
        return ResolvedRegime(effective, EstonianDistribution(rate=rate, rate_code=code))

    income_rules = _income_rules(catalog, effective, as_of)

    if effective == Regime.PERSONAL_PROGRESSIVE:
        relief = catalog.find(effective, "CHILD_RELIEF", as_of)
        method = ProgressiveScale(
            scale=catalog.value(effective, "SCALE", as_of, RuleKind.SCALE),
            child_relief=tuple(relief.value) if relief else (),
            solidarity=_solidarity(catalog, effective, as_of),
        )
    elif effective == Regime.PERSONAL_FLAT:
        cap = catalog.find(effective, "HEALTH_DEDUCTION_CAP", as_of)
        method = FlatRate(
            rate=catalog.value(effective, "RATE", as_of, RuleKind.RATE),
            health_deduction_cap=cap.value if cap else None,
            solidarity=_solidarity(catalog, effective, as_of),
        )
    elif effective == Regime.CORPORATE_SMALL:
        method = PreferentialSmall(
            rate=catalog.value(effective, "RATE", as_of, RuleKind.RATE),
            solidarity=_solidarity(catalog, effective, as_of),
        )
    else:
        method = FlatRate(
            rate=catalog.value(effective, "RATE", as_of, RuleKind.RATE),
            solidarity=_solidarity(catalog, effective, as_of),
        )

    return ResolvedRegime(effective, method, income_rules)
