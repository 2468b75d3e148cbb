"""Calculation commands — run (or preview) a period and review history."""

from typing import Optional

import typer
from rich.table import Table

from ...core.exceptions import TaxEngineError
from ...core.models import CalculationOptions, CalculationRecord, CalculationRequest, Period, TaxMethod
from ...core.money import format_rate
from .common import build_engine, console, fail, money, parse_amount, parse_expense, parse_regime

app = typer.Typer(help="Run and review calculations")


def _print_record(rec: CalculationRecord, preview: bool) -> None:
    title = f"{rec.taxpayer_id} — {rec.regime.value} — {rec.period.key}"
    if preview:
        title += " [yellow](preview, not saved)[/yellow]"
    elif rec.id:
        title += f" (#{rec.id})"

    table = Table(title=title, show_header=False)
    table.add_column("Item")
    table.add_column("Amount", justify="right")
    table.add_row("Revenue", money(rec.revenue))
    if rec.exempt_revenue:
        table.add_row("  of which tax-exempt", money(rec.exempt_revenue))
    table.add_row("Expenses", money(rec.expenses))
    if rec.non_deductible_total:
        table.add_row("  of which non-deductible", money(rec.non_deductible_total))
    table.add_row("Gross income", money(rec.gross_income))
    if rec.zus_deduction:
        table.add_row("ZUS contributions", f"-{money(rec.zus_deduction)}")
    if rec.loss_deduction:
        table.add_row("Loss deduction", f"-{money(rec.loss_deduction)}")
    table.add_row("[bold]Taxable income[/bold]", f"[bold]{money(rec.taxable_income)}[/bold]")
    if rec.allowance:
        table.add_row("Tax-free allowance", money(rec.allowance))
    for line in rec.brackets:
        table.add_row(f"  {line.label} ({format_rate(line.rate)} × {money(line.income)})", money(line.tax))
    table.add_row("Tax", money(rec.tax_amount))
    if rec.child_relief:
        table.add_row("Child relief", f"-{money(rec.child_relief)}")
    if rec.health_deduction:
        table.add_row("Health contribution deduction", f"-{money(rec.health_deduction)}")
    if rec.solidarity_surcharge:
        table.add_row("Solidarity surcharge", money(rec.solidarity_surcharge))
    table.add_row("[bold]Total tax[/bold]", f"[bold]{money(rec.total_tax)}[/bold]")
    table.add_row("Effective rate", f"{rec.effective_rate}%")
    table.add_row("Prior advances", money(rec.prior_advances_paid))
    due = f" (due {rec.due_date.isoformat()})" if rec.due_date else ""
    table.add_row("[bold]Due now[/bold]", f"[bold]{money(rec.installment_due)}[/bold]{due}")
    console.print(table)

    for app_ in rec.loss_applications:
        console.print(
            f"  Loss #{app_.loss_record_id}: applied {money(app_.amount_applied)}, "
            f"remaining {money(app_.remaining_after)}"
        )
    for line in rec.expense_lines:
        if line.non_deductible_amount:
            console.print(
                f"  [dim]{line.category} {money(line.amount)}: {line.reason} "
                f"({line.legal_basis})[/dim]"
            )
    for note in rec.notes:
        console.print(f"  [cyan]•[/cyan] {note}")


@app.command("run")
def run(
    taxpayer: str = typer.Argument(..., help="Taxpayer ID"),
    regime: str = typer.Argument(..., help="Regime, e.g. corporate-standard, personal-progressive"),
    period: str = typer.Argument(..., help="Period: YYYY, YYYY-Qn or YYYY-MM"),
    revenue: str = typer.Option(..., "--revenue", help="Revenue (year-to-date for months/quarters)"),
    expense: Optional[list[str]] = typer.Option(None, "--expense", "-e", help="CATEGORY=AMOUNT[:DESCRIPTION], repeatable"),
    use_losses: bool = typer.Option(False, "--losses", help="Apply loss carry-forward"),
    small: bool = typer.Option(False, "--small", help="Small taxpayer (9% CIT / 10% Estonian CIT)"),
    joint: bool = typer.Option(False, "--joint", help="Joint filing with spouse (progressive scale)"),
    partner_income: str = typer.Option("0", "--partner-income", help="Spouse income for joint filing"),
    method: Optional[str] = typer.Option(None, "--method", help="progressive or flat (personal regimes)"),
    activity: str = typer.Option("OTHER_SERVICES", "--activity", help="Lump-sum activity code"),
    distributed: str = typer.Option("0", "--distributed", help="Distributed profit (Estonian CIT)"),
    children: int = typer.Option(0, "--children", help="Number of children for child relief"),
    health: str = typer.Option("0", "--health", help="Health contributions paid (flat PIT)"),
    zus: str = typer.Option("0", "--zus", help="ZUS social contributions paid (progressive / flat PIT)"),
    exempt_revenue: str = typer.Option("0", "--exempt-revenue", help="Tax-exempt part of revenue (CIT)"),
    prior_advances: Optional[str] = typer.Option(None, "--prior-advances", help="Override advances already due"),
    preview: bool = typer.Option(False, "--preview", help="Calculate without saving"),
):
    """Calculate the tax obligation for one period."""
    try:
        p = Period.parse(period)
    except TaxEngineError as e:
        fail(str(e))

    tax_method = None
    if method:
        try:
            tax_method = TaxMethod(method.lower())
        except ValueError:
            fail("Invalid --method. Choose from: progressive, flat")

    request = CalculationRequest(
        taxpayer_id=taxpayer,
        regime=parse_regime(regime),
        period=p,
        revenue=parse_amount(revenue, "revenue"),
        expenses=[parse_expense(e) for e in expense or []],
        options=CalculationOptions(
            apply_loss_carry_forward=use_losses,
            small_taxpayer=small,
            joint_filing=joint,
            partner_income=parse_amount(partner_income, "partner income"),
            method=tax_method,
            lump_sum_code=activity.upper(),
            distributed_profit=parse_amount(distributed, "distributed profit"),
            child_count=children,
            health_insurance=parse_amount(health, "health contributions"),
            zus_contributions=parse_amount(zus, "ZUS contributions"),
            exempt_revenue=parse_amount(exempt_revenue, "exempt revenue"),
            prior_advances_paid=parse_amount(prior_advances, "prior advances") if prior_advances else None,
        ),
    )

    try:
        result = build_engine().calculate(request, commit=not preview)
    except TaxEngineError as e:
        fail(str(e))

    _print_record(result.record, preview)
    if result.recorded_loss:
        console.print(
            f"[green]Recorded loss #{result.recorded_loss.id}: "
            f"{money(result.recorded_loss.original_amount)} usable until "
            f"{result.recorded_loss.expiration_year}[/green]"
        )


@app.command("history")
def history(
    taxpayer: str = typer.Argument(..., help="Taxpayer ID"),
    regime: Optional[str] = typer.Option(None, "--regime", "-r", help="Only this regime"),
    year: Optional[int] = typer.Option(None, "--year", "-y", help="Only this year"),
    all_versions: bool = typer.Option(False, "--all", help="Include superseded calculations"),
):
    """List calculations for a taxpayer."""
    records = build_engine().list_calculations(
        taxpayer,
        regime=parse_regime(regime) if regime else None,
        year=year,
        include_superseded=all_versions,
    )
    if not records:
        console.print(f"[yellow]No calculations for {taxpayer}[/yellow]")
        return

    table = Table(title=f"Calculations — {taxpayer}")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Period")
    table.add_column("Regime")
    table.add_column("Taxable", justify="right")
    table.add_column("Total tax", justify="right")
    table.add_column("Due", justify="right")
    table.add_column("Status")
    for r in records:
        status_color = "green" if r.status.value == "committed" else "dim"
        table.add_row(
            str(r.id),
            r.period.key,
            r.regime.value,
            money(r.taxable_income),
            money(r.total_tax),
            money(r.installment_due),
            f"[{status_color}]{r.status.value}[/{status_color}]",
        )
    console.print(table)


@app.command("show")
def show(calculation_id: int = typer.Argument(..., help="Calculation ID")):
    """Show the full breakdown of a stored calculation."""
    try:
        rec = build_engine().get_calculation(calculation_id)
    except TaxEngineError as e:
        fail(str(e))
    _print_record(rec, preview=False)
