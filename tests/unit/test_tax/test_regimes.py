"""Tests for core.tax.regimes and core.tax.assess_tax.

Reliefs and levies on top of the bracket tax:
  child relief     progressive scale only, never below zero tax
  health deduction flat PIT only, capped per year
  solidarity       4% of income above 1,000,000 after losses (CIT and PIT;
                   not Estonian CIT, which taxes distributions)
"""

from datetime import date
from decimal import Decimal

import pytest

from income_tax_engine.core.exceptions import InvalidInputError, RuleNotFoundError
from income_tax_engine.core.models import CalculationOptions, Regime, TaxMethod
from income_tax_engine.core.tax import (
    EstonianDistribution,
    FlatRate,
    LumpSum,
    PreferentialSmall,
    ProgressiveScale,
    assess_tax,
    resolve_regime,
)

D = Decimal
END_2024 = date(2024, 12, 31)


class TestResolveRegime:
    def test_corporate_standard(self, catalog):
        resolved = resolve_regime(catalog, Regime.CORPORATE_STANDARD, END_2024, CalculationOptions())
        assert isinstance(resolved.method, FlatRate)
        assert resolved.method.rate == D("0.19")
        assert resolved.income_rules.loss_cap == D("0.50")
        assert resolved.income_rules.carry_forward_years == 5

    def test_small_taxpayer_switches_to_preferential_rate(self, catalog):
        resolved = resolve_regime(
            catalog, Regime.CORPORATE_STANDARD, END_2024, CalculationOptions(small_taxpayer=True)
        )
        assert resolved.regime == Regime.CORPORATE_SMALL
        assert isinstance(resolved.method, PreferentialSmall)
        assert resolved.method.rate == D("0.09")
        assert resolved.method.solidarity.rate == D("0.04")

    def test_progressive_carries_reliefs(self, catalog):
        resolved = resolve_regime(catalog, Regime.PERSONAL_PROGRESSIVE, END_2024, CalculationOptions())
        method = resolved.method
        assert isinstance(method, ProgressiveScale)
        assert method.scale.allowance == D("30000")
        assert len(method.child_relief) == 4
        assert method.solidarity.threshold == D("1000000")

    def test_method_selection_picks_flat_rules(self, catalog):
        resolved = resolve_regime(
            catalog, Regime.PERSONAL_PROGRESSIVE, END_2024, CalculationOptions(method=TaxMethod.FLAT)
        )
        assert resolved.regime == Regime.PERSONAL_FLAT
        assert isinstance(resolved.method, FlatRate)
        assert resolved.method.health_deduction_cap == D("11600")

    def test_method_selection_rejected_for_corporate(self, catalog):
        with pytest.raises(InvalidInputError):
            resolve_regime(
                catalog, Regime.CORPORATE_STANDARD, END_2024, CalculationOptions(method=TaxMethod.FLAT)
            )

    def test_health_cap_absent_before_july_2022(self, catalog):
        resolved = resolve_regime(catalog, Regime.PERSONAL_FLAT, date(2021, 12, 31), CalculationOptions())
        assert resolved.method.health_deduction_cap is None

    def test_lump_sum_rate_per_activity(self, catalog):
        resolved = resolve_regime(
            catalog, Regime.PERSONAL_LUMP_SUM, END_2024, CalculationOptions(lump_sum_code="it_services")
        )
        assert isinstance(resolved.method, LumpSum)
        assert resolved.method.rate == D("0.12")
        assert resolved.method.rate_code == "IT_SERVICES"
        assert resolved.income_rules is None

    def test_unknown_activity_code(self, catalog):
        with pytest.raises(RuleNotFoundError):
            resolve_regime(
                catalog, Regime.PERSONAL_LUMP_SUM, END_2024, CalculationOptions(lump_sum_code="MINING")
            )

    def test_estonian_rate_by_size(self, catalog):
        small = resolve_regime(
            catalog, Regime.CORPORATE_ESTONIAN, END_2024, CalculationOptions(small_taxpayer=True)
        )
        large = resolve_regime(catalog, Regime.CORPORATE_ESTONIAN, END_2024, CalculationOptions())
        assert isinstance(small.method, EstonianDistribution)
        assert small.method.rate == D("0.10")
        assert large.method.rate == D("0.20")

    def test_no_rule_before_regime_existed(self, catalog):
        with pytest.raises(RuleNotFoundError):
            resolve_regime(catalog, Regime.CORPORATE_ESTONIAN, date(2021, 12, 31), CalculationOptions())


class TestAssessTax:
    def _method(self, catalog, regime, **opts):
        return resolve_regime(catalog, regime, END_2024, CalculationOptions(**opts)).method

    def test_child_relief(self, catalog):
        # 26,800.00 − 2 × 1,112.04 = 24,575.92
        method = self._method(catalog, Regime.PERSONAL_PROGRESSIVE)
        a = assess_tax(method, D("170000"), D("170000"), CalculationOptions(child_count=2))
        assert a.tax == D("26800.00")
        assert a.child_relief == D("2224.08")
        assert a.total_tax == D("24575.92")

    def test_child_relief_never_below_zero(self, catalog):
        # (35,000 − 30,000) × 12% = 600; three children would give 4,224.12
        method = self._method(catalog, Regime.PERSONAL_PROGRESSIVE)
        a = assess_tax(method, D("35000"), D("35000"), CalculationOptions(child_count=3))
        assert a.child_relief == D("600.00")
        assert a.total_tax == D("0")

    def test_health_deduction_capped(self, catalog):
        # 100,000 × 19% = 19,000; 15,000 paid, cap 11,600 → 7,400
        method = self._method(catalog, Regime.PERSONAL_FLAT)
        a = assess_tax(method, D("100000"), D("100000"), CalculationOptions(health_insurance=D("15000")))
        assert a.health_deduction == D("11600")
        assert a.total_tax == D("7400.00")

    def test_solidarity_levy(self, catalog):
        # 1,500,000 × 19% = 285,000; (1,500,000 − 1,000,000) × 4% = 20,000
        method = self._method(catalog, Regime.PERSONAL_FLAT)
        a = assess_tax(method, D("1500000"), D("1500000"), CalculationOptions())
        assert a.solidarity_surcharge == D("20000.00")
        assert a.total_tax == D("305000.00")

    def test_corporate_surcharge(self, catalog):
        # 2,000,000 × 19% = 380,000; (2,000,000 − 1,000,000) × 4% = 40,000
        method = self._method(catalog, Regime.CORPORATE_STANDARD)
        a = assess_tax(method, D("2000000"), D("2000000"), CalculationOptions())
        assert a.tax == D("380000.00")
        assert a.solidarity_surcharge == D("40000.00")
        assert a.total_tax == D("420000.00")

    def test_small_taxpayer_surcharge(self, catalog):
        # 1,250,000 × 9% = 112,500; 250,000 × 4% = 10,000
        method = self._method(catalog, Regime.CORPORATE_STANDARD, small_taxpayer=True)
        a = assess_tax(method, D("1250000"), D("1250000"), CalculationOptions())
        assert a.solidarity_surcharge == D("10000.00")
        assert a.total_tax == D("122500.00")

    @pytest.mark.parametrize("income", ["999999.99", "1000000"])
    def test_no_surcharge_up_to_threshold(self, catalog, income):
        method = self._method(catalog, Regime.CORPORATE_STANDARD)
        assert assess_tax(method, D(income), D(income), CalculationOptions()).solidarity_surcharge == D("0")

    def test_no_surcharge_on_estonian_distribution(self, catalog):
        # 3,000,000 distributed × 20% = 600,000, no surcharge
        method = self._method(catalog, Regime.CORPORATE_ESTONIAN)
        a = assess_tax(method, D("3000000"), D("3000000"), CalculationOptions(distributed_profit=D("3000000")))
        assert a.solidarity_surcharge == D("0")
        assert a.total_tax == D("600000.00")

    def test_lump_sum_taxes_revenue(self, catalog):
        # 100,000 revenue × 12%; income after costs does not matter
        method = self._method(catalog, Regime.PERSONAL_LUMP_SUM, lump_sum_code="IT_SERVICES")
        a = assess_tax(method, D("40000"), D("100000"), CalculationOptions())
        assert a.taxable_base == D("100000")
        assert a.total_tax == D("12000.00")
        assert a.notes

    def test_estonian_taxes_distribution_only(self, catalog):
        method = self._method(catalog, Regime.CORPORATE_ESTONIAN, small_taxpayer=True)
        a = assess_tax(method, D("900000"), D("2000000"), CalculationOptions(distributed_profit=D("50000")))
        assert a.total_tax == D("5000.00")

    def test_estonian_retained_profit(self, catalog):
        method = self._method(catalog, Regime.CORPORATE_ESTONIAN)
        a = assess_tax(method, D("900000"), D("2000000"), CalculationOptions())
        assert a.total_tax == D("0")
        assert any("retained" in n for n in a.notes)

    def test_progressive_rate_label(self, catalog):
        method = self._method(catalog, Regime.PERSONAL_PROGRESSIVE)
        a = assess_tax(method, D("50000"), D("50000"), CalculationOptions())
        assert a.rate_label == "12% / 32%"
        assert a.rate_code == "SCALE"
