"""Expense classifier — deductible vs non-deductible costs.

Policy table (versioned EXPENSE_POLICY rule, resolved per period):
  share 0           fully non-deductible, e.g. representation
                    (Art. 16 ust. 1 pkt 28 ustawy o CIT)
  0 < share < 1     mixed use, e.g. passenger car costs at 75%
                    (Art. 16 ust. 1 pkt 51 ustawy o CIT)
  not listed        fully deductible
"""

import dataclasses
from decimal import Decimal

from ..exceptions import InvalidAmountError
from ..models import ExpenseLine, ExpensePolicy
from ..money import ZERO, format_rate, round_money


def classify(expense: ExpenseLine, policy: ExpensePolicy) -> ExpenseLine:
    """Return a copy of ``expense`` with its deductible split filled in.

    Examples:
        representation 1,000  → deductible 0,      non-deductible 1,000
        vehicle        1,000  → deductible 750,    non-deductible 250
        office           500  → deductible 500,    non-deductible 0
    """
    if expense.amount < 0:
        raise InvalidAmountError(f"Expense '{expense.category}' has negative amount {expense.amount}")

    rule = policy.categories.get(expense.category.lower())
    if rule is None:
        return dataclasses.replace(
            expense,
            deductible_amount=expense.amount,
            non_deductible_amount=ZERO,
            legal_basis="",
            reason="Fully deductible",
        )

    if rule.deductible_share <= 0:
        deductible = ZERO
        reason = "Not deductible"
    else:
        deductible = round_money(expense.amount * rule.deductible_share)
        reason = f"Mixed use: {format_rate(rule.deductible_share)} deductible"

    return dataclasses.replace(
        expense,
        deductible_amount=deductible,
        non_deductible_amount=expense.amount - deductible,
        legal_basis=rule.legal_basis,
        reason=reason,
    )


def classify_all(expenses: list[ExpenseLine], policy: ExpensePolicy) -> list[ExpenseLine]:
    return [classify(e, policy) for e in expenses]


def totals(lines: list[ExpenseLine]) -> tuple[Decimal, Decimal, Decimal]:
    """(total, deductible, non_deductible) over classified lines."""
    total = sum((l.amount for l in lines), ZERO)
    deductible = sum((l.deductible_amount or ZERO for l in lines), ZERO)
    return total, deductible, total - deductible
