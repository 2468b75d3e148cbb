"""Income tax engine CLI — main entry point."""

import logging
import sys
from typing import Optional

import structlog
import typer

from ..data.database import get_db, set_db_path
from .commands import advances, calc, losses, rules

app = typer.Typer(
    name="itax",
    help="Income tax obligations — CIT / PIT calculations, losses and advances (Poland)",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

app.add_typer(rules.app, name="rules", help="Versioned tax rules")
app.add_typer(calc.app, name="calc", help="Run and review calculations")
app.add_typer(losses.app, name="losses", help="Loss carry-forward ledger")
app.add_typer(advances.app, name="advances", help="Advance payments (zaliczki)")


def configure_logging(verbose: bool = False) -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.WARNING
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


@app.callback()
def startup(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine events to stderr"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to the SQLite database"),
):
    """Initialize logging and the database on first run."""
    configure_logging(verbose)
    if db:
        set_db_path(db)
    else:
        get_db()


if __name__ == "__main__":
    app()
