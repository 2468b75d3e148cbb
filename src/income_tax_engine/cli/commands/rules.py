"""Rule catalog commands — list, history, resolution and feed sync."""

from datetime import date, datetime
from typing import Optional

import typer
from rich.table import Table

from ...core.config import get_config
from ...core.exceptions import TaxEngineError
from ...core.models import BracketSet, ExpensePolicy, RuleEntry
from ...core.money import format_rate
from ...external.rules_feed import RulesFeed, sync_rules
from .common import console, fail, load_catalog, money, parse_regime

app = typer.Typer(help="Versioned tax rules")


def _fmt_value(entry: RuleEntry) -> str:
    v = entry.value
    if isinstance(v, BracketSet):
        parts = [f"{b.label}: {format_rate(b.rate)}" for b in v.brackets]
        return f"{', '.join(parts)}; allowance {money(v.allowance)}"
    if isinstance(v, ExpensePolicy):
        return ", ".join(f"{k} {format_rate(p.deductible_share)}" for k, p in v.categories.items())
    if isinstance(v, tuple):
        return " / ".join(money(x) for x in v)
    if entry.kind.value == "rate":
        return format_rate(v)
    return money(v)


def _period(entry: RuleEntry) -> tuple[str, str]:
    return (
        entry.effective_from.isoformat(),
        entry.effective_to.isoformat() if entry.effective_to else "open",
    )


@app.command("list")
def list_rules(
    regime: Optional[str] = typer.Option(None, "--regime", "-r", help="Only this regime"),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="Only versions in force on YYYY-MM-DD"),
):
    """List rule versions."""
    catalog = load_catalog()
    entries = catalog.entries()
    if regime:
        r = parse_regime(regime)
        entries = [e for e in entries if e.regime == r]
    if as_of:
        try:
            d = date.fromisoformat(as_of)
        except ValueError:
            fail(f"Invalid date '{as_of}'. Use YYYY-MM-DD")
        entries = [e for e in entries if e.covers(d)]

    if not entries:
        console.print("[yellow]No rules match[/yellow]")
        return

    table = Table(title="Tax rules")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Regime", style="bold")
    table.add_column("Code")
    table.add_column("Value")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Legal basis")
    for e in entries:
        start, end = _period(e)
        table.add_row(str(e.id), e.regime.value, e.rate_code, _fmt_value(e), start, end, e.legal_reference)
    console.print(table)


@app.command("show")
def show(
    regime: str = typer.Argument(..., help="Regime, e.g. corporate-standard"),
    code: str = typer.Argument(..., help="Rate code, e.g. RATE, SCALE, LOSS_CAP"),
):
    """Show every version of one rule."""
    r = parse_regime(regime)
    versions = load_catalog().history(r, code.upper())
    if not versions:
        fail(f"No rule {code.upper()} for {r.value}")

    table = Table(title=f"{code.upper()} — {r.value}")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Value")
    table.add_column("Description")
    table.add_column("Legal basis")
    for e in versions:
        start, end = _period(e)
        table.add_row(start, end, _fmt_value(e), e.description, e.legal_reference)
    console.print(table)


@app.command("resolve")
def resolve(
    regime: str = typer.Argument(..., help="Regime"),
    code: str = typer.Argument(..., help="Rate code"),
    on: str = typer.Option(date.today().isoformat(), "--date", "-d", help="Date (YYYY-MM-DD)"),
):
    """Show the rule version in force on a date."""
    r = parse_regime(regime)
    try:
        as_of = date.fromisoformat(on)
    except ValueError:
        fail(f"Invalid date '{on}'. Use YYYY-MM-DD")
    try:
        e = load_catalog().resolve(r, code.upper(), as_of)
    except TaxEngineError as err:
        fail(str(err))
    start, end = _period(e)
    console.print(f"[bold]{e.rate_code}[/bold] ({r.value}) on {as_of.isoformat()}: {_fmt_value(e)}")
    console.print(f"  in force {start} → {end}  |  {e.legal_reference}")


@app.command("sync")
def sync(
    url: Optional[str] = typer.Option(None, "--url", help="Feed URL (default: rules_feed_url from config.json)"),
):
    """Fetch published rule versions and add the new ones."""
    cfg = get_config()
    try:
        feed = RulesFeed(url or cfg.rules_feed_url)
        entries = feed.fetch(jurisdiction=cfg.jurisdiction)
        added = sync_rules(load_catalog(), entries, today=datetime.now().date())
    except TaxEngineError as e:
        fail(str(e))

    if not added:
        console.print(f"[yellow]Fetched {len(entries)} rules — catalog already up to date[/yellow]")
        return
    for e in added:
        console.print(f"[green]Added {e.regime.value} {e.rate_code} from {e.effective_from.isoformat()}[/green]")
