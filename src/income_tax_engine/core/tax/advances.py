"""Advance (installment) reconciliation.

Cumulative method (default):
    due = max(0, tax on year-to-date income − advances already paid this year)

Simplified method (uproszczone zaliczki, Art. 44 ust. 6b ustawy o PIT /
Art. 25 ust. 6 ustawy o CIT) — monthly, elected for the whole fiscal year:
    due = prior-year tax / 12

Due date: the given day (20th) of the month following the period end;
December and Q4 roll over to January of the next year.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from ..exceptions import InvalidInputError
from ..models import AdvanceMethod, Period, PeriodType
from ..money import ZERO, round_money

DEFAULT_DUE_DAY = 20


@dataclass
class AdvanceResult:
    method: AdvanceMethod
    due_amount: Decimal
    due_date: date
    cumulative_tax: Decimal = ZERO
    prior_advances_paid: Decimal = ZERO


def advance_due_date(period: Period, due_day: int = DEFAULT_DUE_DAY) -> date:
    """Deadline for the installment covering ``period``."""
    if not 1 <= due_day <= 28:
        raise InvalidInputError(f"Due day must be between 1 and 28, got {due_day}")
    month = period.end_month + 1
    year = period.year
    if month > 12:
        month = 1
        year += 1
    return date(year, month, due_day)


def reconcile_cumulative(cumulative_tax: Decimal, prior_advances_paid: Decimal) -> Decimal:
    if cumulative_tax < 0 or prior_advances_paid < 0:
        raise InvalidInputError("Cumulative tax and prior advances must not be negative")
    return max(round_money(cumulative_tax - prior_advances_paid), ZERO)


def reconcile_simplified(prior_year_tax: Optional[Decimal], elected: bool) -> Decimal:
    if prior_year_tax is None:
        raise InvalidInputError("Simplified advances need the prior-year total tax")
    if prior_year_tax < 0:
        raise InvalidInputError("Prior-year tax must not be negative")
    if not elected:
        raise InvalidInputError("Simplified advances were not elected for this fiscal year")
    return round_money(prior_year_tax / 12)


def reconcile_advance(
    period: Period,
    method: AdvanceMethod = AdvanceMethod.CUMULATIVE,
    cumulative_tax: Optional[Decimal] = None,
    prior_advances_paid: Decimal = ZERO,
    prior_year_tax: Optional[Decimal] = None,
    elected_simplified: bool = False,
    due_day: int = DEFAULT_DUE_DAY,
) -> AdvanceResult:
    """Installment due for ``period`` under the chosen method."""
    due_date = advance_due_date(period, due_day)

    if method == AdvanceMethod.SIMPLIFIED:
        if period.period_type != PeriodType.MONTHLY:
            raise InvalidInputError("Simplified advances are paid monthly only")
        due = reconcile_simplified(prior_year_tax, elected_simplified)
        return AdvanceResult(method=method, due_amount=due, due_date=due_date)

    if cumulative_tax is None:
        raise InvalidInputError("Cumulative method needs the year-to-date tax figure")
    due = reconcile_cumulative(cumulative_tax, prior_advances_paid)
    return AdvanceResult(
        method=method,
        due_amount=due,
        due_date=due_date,
        cumulative_tax=cumulative_tax,
        prior_advances_paid=prior_advances_paid,
    )
