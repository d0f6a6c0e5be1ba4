"""Main CLI entry point using Typer."""

import logging

import typer
from rich.console import Console

from portfolio_recon.db.database import init_db
from portfolio_recon.config import PRODUCT_NAME, PRODUCT_TAGLINE, PRODUCT_VERSION, get_settings

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Reduce noise from third-party libraries
logging.getLogger("yfinance").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

console = Console()
app = typer.Typer(
    name="recon",
    help=f"{PRODUCT_NAME}: {PRODUCT_TAGLINE}",
    add_completion=False,
)


@app.callback()
def main_callback():
    """Initialize database on startup."""
    init_db()


# Import and add subcommands
from portfolio_recon.cli import portfolio as portfolio_cli
from portfolio_recon.cli.brokers import app as connections_app

app.command("sync")(portfolio_cli.sync)
app.command("snapshot")(portfolio_cli.snapshot)
app.command("import-csv")(portfolio_cli.import_csv_command)
app.command("schedule")(portfolio_cli.schedule)
app.add_typer(portfolio_cli.duplicates_app, name="duplicates", help="Review duplicate candidates")
app.add_typer(connections_app, name="connections", help="Manage broker connections")


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]{PRODUCT_NAME}[/] {PRODUCT_VERSION}")
    console.print(f"[dim]{PRODUCT_TAGLINE}[/]")


if __name__ == "__main__":
    app()
