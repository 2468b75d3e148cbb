"""Advance payment commands — reconcile, mark paid, yearly schedule."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import typer
from rich.table import Table

from ...core.exceptions import TaxEngineError
from ...core.models import AdvanceMethod, Period
from .common import build_engine, console, fail, money, parse_amount, parse_regime

app = typer.Typer(help="Advance payments (zaliczki)")


@app.command("reconcile")
def reconcile(
    taxpayer: str = typer.Argument(..., help="Taxpayer ID"),
    regime: str = typer.Argument(..., help="Regime"),
    period: str = typer.Argument(..., help="Period: YYYY-MM or YYYY-Qn"),
    method: str = typer.Option("cumulative", "--method", "-m", help="cumulative or simplified"),
    cumulative_tax: Optional[str] = typer.Option(None, "--cumulative-tax", help="Year-to-date tax"),
    prior_paid: Optional[str] = typer.Option(None, "--prior-paid", help="Advances already due this year"),
    prior_year_tax: Optional[str] = typer.Option(None, "--prior-year-tax", help="Last year's total tax"),
    elected: bool = typer.Option(False, "--elected", help="Simplified advances elected for this year"),
):
    """Compute and store the installment for a period."""
    try:
        p = Period.parse(period)
        m = AdvanceMethod(method.lower())
    except TaxEngineError as e:
        fail(str(e))
    except ValueError:
        fail("Invalid --method. Choose from: cumulative, simplified")

    try:
        result = build_engine().reconcile_advance(
            taxpayer,
            parse_regime(regime),
            p,
            method=m,
            cumulative_tax=parse_amount(cumulative_tax, "cumulative tax") if cumulative_tax else None,
            prior_advances_paid=parse_amount(prior_paid, "prior advances") if prior_paid else None,
            prior_year_tax=parse_amount(prior_year_tax, "prior-year tax") if prior_year_tax else None,
            elected_simplified=elected,
        )
    except TaxEngineError as e:
        fail(str(e))

    console.print(
        f"[green]{p.key} ({result.method.value}): {money(result.due_amount)} "
        f"due {result.due_date.isoformat()}[/green]"
    )
    if result.method == AdvanceMethod.CUMULATIVE:
        console.print(
            f"  year-to-date tax {money(result.cumulative_tax)} − "
            f"advances {money(result.prior_advances_paid)}"
        )


@app.command("pay")
def pay(
    advance_id: int = typer.Argument(..., help="Advance ID (see 'advances schedule')"),
    amount: str = typer.Argument(..., help="Amount paid"),
    paid_on: Optional[str] = typer.Option(None, "--date", "-d", help="Payment date YYYY-MM-DD (default: today)"),
):
    """Record a payment against an installment."""
    try:
        d = date.fromisoformat(paid_on) if paid_on else datetime.now().date()
    except ValueError:
        fail(f"Invalid date '{paid_on}'. Use YYYY-MM-DD")
    try:
        adv = build_engine().record_advance_payment(advance_id, parse_amount(amount, "payment"), d)
    except TaxEngineError as e:
        fail(str(e))
    console.print(f"[green]Recorded payment of {money(adv.paid_amount)} for {adv.period.key}[/green]")
    if adv.paid_amount < adv.due_amount:
        console.print(f"[yellow]Underpaid by {money(adv.due_amount - adv.paid_amount)}[/yellow]")


@app.command("schedule")
def schedule(
    taxpayer: str = typer.Argument(..., help="Taxpayer ID"),
    regime: str = typer.Argument(..., help="Regime"),
    year: int = typer.Argument(..., help="Tax year"),
):
    """Show installments for a year with payment status."""
    r = parse_regime(regime)
    rows = build_engine().advance_schedule(taxpayer, r, year)
    if not rows:
        console.print(f"[yellow]No advances for {taxpayer} ({r.value}) in {year}[/yellow]")
        return

    today = datetime.now().date()
    table = Table(title=f"Advances — {taxpayer} ({r.value}) {year}")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Period")
    table.add_column("Method")
    table.add_column("Due", justify="right")
    table.add_column("Due date")
    table.add_column("Paid", justify="right")
    table.add_column("Status")

    total_due = Decimal("0")
    total_paid = Decimal("0")
    for a in rows:
        total_due += a.due_amount
        total_paid += a.paid_amount or Decimal("0")
        if a.is_paid:
            status = "[green]paid[/green]"
        elif a.due_date < today:
            status = "[red]overdue[/red]"
        else:
            status = "open"
        table.add_row(
            str(a.id),
            a.period.key,
            a.method.value,
            money(a.due_amount),
            a.due_date.isoformat(),
            money(a.paid_amount) if a.is_paid else "—",
            status,
        )
    table.add_row("", "", "", f"[bold]{money(total_due)}[/bold]", "", f"[bold]{money(total_paid)}[/bold]", "")
    console.print(table)
