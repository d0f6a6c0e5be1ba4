"""Portfolio reconciliation CLI commands."""

from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from portfolio_recon.config import get_settings
from portfolio_recon.core.aggregation.models import PortfolioSnapshot
from portfolio_recon.core.duplicates.models import ResolutionStatus
from portfolio_recon.core.duplicates.resolutions import ResolutionService
from portfolio_recon.core.errors import (
    AllConnectionsFailedError,
    CandidateNotFoundError,
    ConcurrentSyncInProgressError,
)
from portfolio_recon.core.portfolio.importers import decode_csv_bytes, import_csv, parse_csv
from portfolio_recon.core.portfolio.repository import SqlPortfolioStore
from portfolio_recon.core.scheduler import SyncScheduler
from portfolio_recon.core.services import build_coordinator

settings = get_settings()

console = Console()
duplicates_app = typer.Typer()

PORTFOLIO_OPTION = typer.Option(None, "--portfolio", "-p", help="Portfolio ID (defaults to settings)")


def _portfolio(portfolio_id: Optional[str]) -> str:
    return portfolio_id or settings.default_portfolio_id


def _print_snapshot(snapshot: PortfolioSnapshot, limit: Optional[int] = None) -> None:
    cur = snapshot.base_currency
    holdings = snapshot.top_holdings(limit) if limit else snapshot.holdings

    table = Table(title=f"Portfolio {snapshot.portfolio_id} as of {snapshot.as_of:%Y-%m-%d %H:%M} UTC")
    table.add_column("Instrument", style="cyan")
    table.add_column("Quantity", justify="right")
    table.add_column(f"Cost ({cur})", justify="right")
    table.add_column(f"Value ({cur})", justify="right")
    table.add_column("P&L", justify="right")
    table.add_column("P&L %", justify="right")
    table.add_column("Flags")

    for h in holdings:
        pnl_style = "green" if h.unrealized_pnl >= 0 else "red"
        flags = []
        if h.price_stale:
            flags.append("[yellow]stale price[/yellow]")
        if h.degraded_conversion:
            flags.append("[yellow]no FX rate[/yellow]")
        if any(cp.excluded for cp in h.contributing_positions):
            flags.append("[dim]dedup[/dim]")
        label = h.instrument_key if not h.symbol else f"{h.symbol} [dim]{h.instrument_key}[/dim]"
        table.add_row(
            label,
            f"{h.total_quantity:,.4f}".rstrip("0").rstrip("."),
            f"{h.total_cost:,.2f}",
            f"{h.market_value:,.2f}",
            f"[{pnl_style}]{h.unrealized_pnl:+,.2f}[/{pnl_style}]",
            f"[{pnl_style}]{h.unrealized_pnl_percent:+.2f}%[/{pnl_style}]",
            " ".join(flags),
        )

    console.print(table)

    pnl_style = "green" if snapshot.total_pnl >= 0 else "red"
    console.print(
        f"\n[bold]Total value:[/bold] {snapshot.total_value:,.2f} {cur}   "
        f"[bold]Cost:[/bold] {snapshot.total_cost:,.2f} {cur}   "
        f"[bold]P&L:[/bold] [{pnl_style}]{snapshot.total_pnl:+,.2f} "
        f"({snapshot.total_pnl_percent:+.2f}%)[/{pnl_style}]"
    )
    if snapshot.daily_change is not None:
        console.print(f"[bold]Today:[/bold] {snapshot.daily_change:+,.2f} {cur}")

    breakdown = snapshot.broker_breakdown()
    if breakdown:
        parts = [f"{broker}: {value:,.2f}" for broker, value in breakdown.items()]
        console.print(f"[dim]By broker: {', '.join(parts)}[/dim]")

    allocation = snapshot.asset_allocation()
    if allocation:
        parts = [f"{name}: {a['percent']:.1f}%" for name, a in allocation.items()]
        console.print(f"[dim]By asset class: {', '.join(parts)}[/dim]")

    for line in snapshot.error_report.summary():
        console.print(f"[yellow]Warning:[/yellow] {line}")
    pending = len(snapshot.pending_duplicates)
    if pending:
        console.print(
            f"[yellow]{pending} possible duplicate(s) to review.[/yellow] "
            f"Run 'recon duplicates list'."
        )


def sync(
    portfolio_id: Optional[str] = PORTFOLIO_OPTION,
    top: int = typer.Option(10, "--top", "-n", help="Holdings to show"),
):
    """Run a reconciliation cycle now."""
    portfolio_id = _portfolio(portfolio_id)
    coordinator = build_coordinator()

    console.print(f"[bold]Reconciling {portfolio_id}...[/bold]")
    try:
        result = coordinator.reconcile(portfolio_id)
    except ConcurrentSyncInProgressError:
        console.print("[yellow]A sync is already running for this portfolio.[/yellow]")
        raise typer.Exit(1)
    except AllConnectionsFailedError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    for outcome in result.outcomes:
        if not outcome.success:
            console.print(
                f"[red]Failed:[/red] {outcome.connection.display_name or outcome.connection.id} "
                f"after {outcome.attempts} attempt(s): {outcome.error_message}"
            )

    if result.cancelled or result.snapshot is None:
        console.print("[yellow]Sync cancelled; nothing committed.[/yellow]")
        return

    _print_snapshot(result.snapshot, limit=top)


def snapshot(
    portfolio_id: Optional[str] = PORTFOLIO_OPTION,
):
    """Show the latest committed snapshot."""
    portfolio_id = _portfolio(portfolio_id)
    latest = SqlPortfolioStore().load_latest_snapshot(portfolio_id)
    if latest is None:
        console.print("[yellow]No snapshot yet.[/yellow] Run 'recon sync' first.")
        raise typer.Exit(1)
    _print_snapshot(latest)


@duplicates_app.command("list")
def list_duplicates(
    portfolio_id: Optional[str] = PORTFOLIO_OPTION,
    show_all: bool = typer.Option(False, "--all", "-a", help="Include resolved candidates"),
):
    """List duplicate candidates from the latest cycle."""
    candidates = SqlPortfolioStore().load_candidates(_portfolio(portfolio_id))
    if not show_all:
        candidates = [c for c in candidates if c.resolution_status == ResolutionStatus.PENDING]

    if not candidates:
        console.print("[green]No duplicate candidates to review.[/green]")
        return

    table = Table(title="Duplicate Candidates")
    table.add_column("ID", style="dim")
    table.add_column("Instrument", style="cyan")
    table.add_column("Confidence", justify="right")
    table.add_column("Reason")
    table.add_column("Status")
    table.add_column("Positions")

    for c in candidates:
        lines = []
        for p in c.positions:
            marker = "*" if p.position_id == c.canonical_position_id else " "
            lines.append(f"{marker} {p.position_id} ({p.broker_id}) qty {p.quantity}")
        table.add_row(
            c.candidate_id,
            c.instrument_key,
            f"{c.confidence:.1f}",
            c.match_reason.value,
            c.resolution_status.value,
            "\n".join(lines),
        )

    console.print(table)
    console.print("[dim]* = suggested position to keep[/dim]")


@duplicates_app.command("resolve")
def resolve_duplicate(
    candidate_id: str = typer.Argument(..., help="Candidate ID from 'duplicates list'"),
    distinct: bool = typer.Option(
        False, "--distinct", help="Positions are separate holdings (default: duplicate)"
    ),
    keep: Optional[str] = typer.Option(None, "--keep", help="Position ID to keep"),
    portfolio_id: Optional[str] = PORTFOLIO_OPTION,
):
    """Confirm a candidate; applied on the next sync."""
    decision = ResolutionStatus.CONFIRMED_DISTINCT if distinct else ResolutionStatus.CONFIRMED_DUPLICATE
    service = ResolutionService(SqlPortfolioStore())
    try:
        recorded = service.submit_resolution(
            _portfolio(portfolio_id), candidate_id, decision, canonical_position_id=keep
        )
    except CandidateNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(
        f"[green]Recorded:[/green] {recorded.candidate_id} -> {recorded.decision.value}. "
        f"Takes effect on the next sync."
    )


def import_csv_command(
    connection_id: str = typer.Argument(..., help="Manual or CSV connection ID"),
    file_path: Path = typer.Argument(..., help="Path to the CSV export", exists=True, readable=True),
    fmt: Optional[str] = typer.Option(None, "--format", "-f", help="'schwab' or 'transactions'"),
    preview: bool = typer.Option(False, "--preview", help="Parse only, store nothing"),
):
    """Load a broker CSV export into a connection."""
    content = decode_csv_bytes(file_path.read_bytes())

    if preview:
        detected, records, errors = parse_csv(content, fmt)
        table = Table(title=f"Preview ({detected})")
        table.add_column("Symbol", style="cyan")
        table.add_column("ISIN")
        table.add_column("Quantity", justify="right")
        table.add_column("Transactions", justify="right")
        for r in records:
            table.add_row(
                r.symbol,
                r.isin or "-",
                str(r.quantity) if r.quantity is not None else "-",
                str(len(r.transactions)),
            )
        console.print(table)
        for err in errors:
            console.print(f"[yellow]Warning:[/yellow] {err}")
        return

    store = SqlPortfolioStore()
    if store.get_connection(connection_id) is None:
        console.print(f"[red]Error:[/red] Connection {connection_id} not found")
        raise typer.Exit(1)

    result = import_csv(store, connection_id, content, fmt=fmt)
    if not result.records:
        console.print("[red]Import failed:[/red]")
        for err in result.errors:
            console.print(f"  {err}")
        raise typer.Exit(1)

    console.print(f"[green]Imported:[/green] {result.stored} record(s) from {result.format} CSV")
    for err in result.errors:
        console.print(f"[yellow]Warning:[/yellow] {err}")


def schedule(
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Minutes between syncs"),
    portfolios: Optional[List[str]] = typer.Option(None, "--portfolio", "-p", help="Portfolio ID (repeatable)"),
):
    """Run syncs on a schedule (blocking)."""
    scheduler = SyncScheduler(
        build_coordinator(),
        portfolio_ids=portfolios or None,
        interval_minutes=interval,
    )
    scheduler.start()
