"""Helpers shared by the CLI command modules."""

from decimal import Decimal
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape

from ...core.engine import TaxEngine
from ...core.exceptions import TaxEngineError
from ...core.models import ExpenseLine, Regime
from ...core.money import to_decimal
from ...core.rules.catalog import RuleCatalog
from ...core.rules.defaults import default_rules
from ...data.repositories.rules_repo import RulesRepository

console = Console()

REGIMES = [r.value for r in Regime]


def fail(message: str) -> NoReturn:
    console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(1)


def load_catalog() -> RuleCatalog:
    """Catalog over the SQLite rule table, seeded with the default rules on first use."""
    repo = RulesRepository()
    if repo.count() == 0:
        repo.seed(default_rules())
    return RuleCatalog(repo)


def build_engine() -> TaxEngine:
    return TaxEngine(load_catalog())


def parse_regime(value: str) -> Regime:
    try:
        return Regime(value.lower())
    except ValueError:
        fail(f"Invalid regime '{value}'. Choose from: {', '.join(REGIMES)}")


def parse_amount(value: str, name: str) -> Decimal:
    try:
        return to_decimal(value, name)
    except TaxEngineError as e:
        fail(str(e))


def parse_expense(text: str) -> ExpenseLine:
    """'vehicle=1000' or 'vehicle=1000:fuel for March'."""
    category, sep, rest = text.partition("=")
    if not sep or not category.strip():
        fail(f"Invalid expense '{text}'. Use CATEGORY=AMOUNT[:DESCRIPTION]")
    amount, _, description = rest.partition(":")
    return ExpenseLine(
        category=category.strip().lower(),
        amount=parse_amount(amount, f"expense '{category.strip()}'"),
        description=description.strip(),
    )


def money(value: Decimal) -> str:
    return f"{value:,.2f}"
