"""Broker connection CLI commands."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from portfolio_recon.config import get_settings
from portfolio_recon.core.brokers.models import BrokerId, ConnectionStatus
from portfolio_recon.core.portfolio.repository import SqlPortfolioStore

settings = get_settings()
console = Console()
app = typer.Typer()


@app.command("list")
def list_connections(
    portfolio_id: Optional[str] = typer.Option(None, "--portfolio", "-p", help="Portfolio ID"),
):
    """List broker connections."""
    connections = SqlPortfolioStore().load_connections(portfolio_id or settings.default_portfolio_id)

    if not connections:
        console.print("[dim]No connections.[/dim] Use 'recon connections add' to create one.")
        return

    table = Table(title="Broker Connections")
    table.add_column("ID", style="dim")
    table.add_column("Broker")
    table.add_column("Name")
    table.add_column("Currency")
    table.add_column("Last Synced")
    table.add_column("Status")

    for c in connections:
        status = "[green]Connected[/green]"
        if c.status == ConnectionStatus.ERROR:
            status = f"[red]Error[/red] {c.last_error or ''}"
        elif c.status == ConnectionStatus.DISCONNECTED:
            status = "[dim]Disabled[/dim]"

        table.add_row(
            c.id,
            c.broker_id.value,
            c.display_name or "-",
            c.currency,
            c.last_sync_time.strftime("%Y-%m-%d %H:%M") if c.last_sync_time else "Never",
            status,
        )

    console.print(table)


@app.command("add")
def add_connection(
    broker: BrokerId = typer.Argument(..., help="manual, csv, plaid, schwab, ..."),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
    currency: str = typer.Option("USD", "--currency", "-c", help="Account currency"),
    exchange: Optional[str] = typer.Option(
        None, "--exchange", "-e", help="Default exchange for bare symbols (e.g., XNAS, XOSL)"
    ),
    token: Optional[str] = typer.Option(None, "--token", help="Access token from the broker's link flow"),
    portfolio_id: Optional[str] = typer.Option(None, "--portfolio", "-p", help="Portfolio ID"),
):
    """Add a broker connection."""
    if broker in (BrokerId.PLAID, BrokerId.SCHWAB) and not token:
        console.print(f"[red]Error:[/red] {broker.value} connections need --token")
        raise typer.Exit(1)

    connection = SqlPortfolioStore().add_connection(
        portfolio_id or settings.default_portfolio_id,
        broker,
        display_name=name,
        currency=currency,
        default_exchange=exchange,
        access_token=token,
    )
    console.print(f"[green]Added:[/green] {connection.broker_id.value} connection {connection.id}")


@app.command("disable")
def disable_connection(
    connection_id: str = typer.Argument(..., help="Connection ID"),
):
    """Disable a connection so syncs skip it."""
    connection = SqlPortfolioStore().disable_connection(connection_id)
    if connection is None:
        console.print(f"[red]Error:[/red] Connection {connection_id} not found")
        raise typer.Exit(1)
    console.print(f"[green]Disabled:[/green] {connection_id}")
