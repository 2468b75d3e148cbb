"""Loss ledger commands."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import typer
from rich.table import Table

from ...core.exceptions import TaxEngineError
from .common import build_engine, console, fail, money, parse_amount, parse_regime

app = typer.Typer(help="Loss carry-forward ledger")


@app.command("record")
def record(
    taxpayer: str = typer.Argument(..., help="Taxpayer ID"),
    regime: str = typer.Argument(..., help="Regime"),
    year: int = typer.Argument(..., help="Year the loss arose"),
    amount: str = typer.Argument(..., help="Loss amount (positive)"),
):
    """Enter a historical loss (e.g. from before onboarding)."""
    r = parse_regime(regime)
    value = parse_amount(amount, "loss amount")
    try:
        loss_id = build_engine().record_loss(taxpayer, r, year, value)
    except TaxEngineError as e:
        fail(str(e))
    console.print(f"[green]Recorded loss #{loss_id} of {money(value)} for {year}[/green]")


@app.command("list")
def list_losses(
    taxpayer: str = typer.Argument(..., help="Taxpayer ID"),
    regime: str = typer.Argument(..., help="Regime"),
    year: Optional[int] = typer.Option(
        None, "--year", "-y", help="Mark which records are usable in this year (default: current year)"
    ),
):
    """Show loss records with remaining balances."""
    r = parse_regime(regime)
    year = year or datetime.now().year
    records = build_engine().ledger.records(taxpayer, r)
    if not records:
        console.print(f"[yellow]No losses recorded for {taxpayer} ({r.value})[/yellow]")
        return

    table = Table(title=f"Losses — {taxpayer} ({r.value})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Origin", justify="right")
    table.add_column("Original", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Usable until", justify="right")
    table.add_column(f"Usable in {year}")
    for rec in records:
        if rec.voided:
            status = "[dim]voided[/dim]"
        elif rec.is_active(year):
            status = "[green]yes[/green]"
        else:
            status = "[dim]no[/dim]"
        table.add_row(
            str(rec.id),
            str(rec.origin_year),
            money(rec.original_amount),
            money(rec.remaining_amount),
            str(rec.expiration_year),
            status,
        )
    console.print(table)
    usable = sum((rec.remaining_amount for rec in records if rec.is_active(year)), Decimal("0"))
    console.print(f"  Available in {year}: [bold]{money(usable)}[/bold]\n")
