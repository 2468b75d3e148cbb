"""Tests for core.tax.advances.

  cumulative:  due = max(0, YTD tax − advances already due)
  simplified:  due = prior-year tax / 12
  due date:    20th of the month after the period; December → January
"""

from datetime import date
from decimal import Decimal

import pytest

from income_tax_engine.core.exceptions import InvalidInputError
from income_tax_engine.core.models import AdvanceMethod, Period
from income_tax_engine.core.tax.advances import (
    advance_due_date,
    reconcile_advance,
    reconcile_cumulative,
    reconcile_simplified,
)

D = Decimal


class TestCumulative:
    def test_spec_example(self):
        # 47,500 − 20,000 = 27,500
        assert reconcile_cumulative(D("47500.00"), D("20000.00")) == D("27500.00")

    def test_overpaid_floors_at_zero(self):
        assert reconcile_cumulative(D("10000"), D("12000")) == D("0")

    def test_negative_inputs_rejected(self):
        with pytest.raises(InvalidInputError):
            reconcile_cumulative(D("-1"), D("0"))


class TestSimplified:
    def test_twelfth_of_prior_year(self):
        assert reconcile_simplified(D("120000"), elected=True) == D("10000.00")

    def test_rounds_half_up(self):
        # 1000 / 12 = 83.333… → 83.33
        assert reconcile_simplified(D("1000"), elected=True) == D("83.33")

    def test_requires_election(self):
        with pytest.raises(InvalidInputError):
            reconcile_simplified(D("120000"), elected=False)

    def test_requires_prior_year_figure(self):
        with pytest.raises(InvalidInputError):
            reconcile_simplified(None, elected=True)


class TestDueDate:
    @pytest.mark.parametrize("period, expected", [
        (Period.monthly(2024, 3), date(2024, 4, 20)),
        (Period.monthly(2024, 11), date(2024, 12, 20)),
        (Period.monthly(2024, 12), date(2025, 1, 20)),
        (Period.quarterly(2024, 1), date(2024, 4, 20)),
        (Period.quarterly(2024, 4), date(2025, 1, 20)),
    ])
    def test_following_month(self, period, expected):
        assert advance_due_date(period) == expected

    def test_custom_day(self):
        assert advance_due_date(Period.monthly(2024, 1), due_day=25) == date(2024, 2, 25)

    @pytest.mark.parametrize("day", [0, 29, 31])
    def test_day_out_of_range(self, day):
        with pytest.raises(InvalidInputError):
            advance_due_date(Period.monthly(2024, 1), due_day=day)


class TestReconcileAdvance:
    def test_cumulative(self):
        result = reconcile_advance(
            Period.monthly(2024, 6), cumulative_tax=D("47500"), prior_advances_paid=D("20000")
        )
        assert result.method == AdvanceMethod.CUMULATIVE
        assert result.due_amount == D("27500.00")
        assert result.due_date == date(2024, 7, 20)

    def test_cumulative_needs_ytd_figure(self):
        with pytest.raises(InvalidInputError):
            reconcile_advance(Period.monthly(2024, 6))

    def test_simplified(self):
        result = reconcile_advance(
            Period.monthly(2024, 12),
            AdvanceMethod.SIMPLIFIED,
            prior_year_tax=D("60000"),
            elected_simplified=True,
        )
        assert result.due_amount == D("5000.00")
        assert result.due_date == date(2025, 1, 20)

    def test_simplified_is_monthly_only(self):
        with pytest.raises(InvalidInputError):
            reconcile_advance(
                Period.quarterly(2024, 2),
                AdvanceMethod.SIMPLIFIED,
                prior_year_tax=D("60000"),
                elected_simplified=True,
            )
