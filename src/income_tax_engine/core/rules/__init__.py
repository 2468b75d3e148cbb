"""Versioned tax rules.

    from income_tax_engine.core.rules import RuleCatalog
    catalog = RuleCatalog.with_defaults()
    catalog.resolve(Regime.CORPORATE_STANDARD, "RATE", date(2024, 12, 31))
"""

from .catalog import InMemoryRuleStore, RuleCatalog, RuleStore
from .defaults import INCOME_REGIMES, LUMP_SUM_RATES, default_rules

__all__ = [
    "RuleCatalog",
    "RuleStore",
    "InMemoryRuleStore",
    "default_rules",
    "INCOME_REGIMES",
    "LUMP_SUM_RATES",
]
