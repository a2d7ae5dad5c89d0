"""
CLI interface for Cost Pulse.

Records samples and daily totals, shows today's hourly curve and the
daily history, and runs store maintenance.
"""

import sys
from dataclasses import replace
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from cost_pulse.config.loader import AppConfig, resolve_config
from cost_pulse.core.dates import date_key_days_ago, normalized_date_key
from cost_pulse.core.maintenance import MaintenanceRunner
from cost_pulse.core.refresh import load_usage_snapshot
from cost_pulse.logging import setup_logging
from cost_pulse.storage.errors import StoreError
from cost_pulse.storage.models import DailyTotal, UsageTool
from cost_pulse.storage.repository import UsageStore, open_store

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the database path from the configuration"
    ),
):
    """Cost Pulse CLI."""
    try:
        config = resolve_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if db_path:
        config = replace(config, db_path=db_path)

    setup_logging(config.log_level)
    ctx.obj = config

    if ctx.invoked_subcommand is None:
        console.print("Cost Pulse - Use --help to see available commands")


def _open_for_reading(config: AppConfig) -> UsageStore:
    store, notice = open_store(config.db_path)
    if notice:
        console.print(f"[yellow]{notice}[/]")
    return store


@app.command()
def init(ctx: typer.Context):
    """Create or migrate the Cost Pulse database."""
    config: AppConfig = ctx.obj
    try:
        UsageStore(config.db_path).close()
        console.print(f"[green]✓[/] Database ready at {config.db_path}")
        sys.exit(EXIT_CODE_OK)
    except StoreError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def record(
    ctx: typer.Context,
    tool: UsageTool = typer.Argument(..., help="Tool that reported the total"),
    cost: float = typer.Argument(..., min=0, help="Running total for the day in USD"),
    at: Optional[datetime] = typer.Option(
        None,
        "--at",
        help="Observation time (defaults to now)"
    ),
):
    """Record a point-in-time total for a tool."""
    config: AppConfig = ctx.obj
    try:
        with UsageStore(config.db_path) as store:
            sample = store.insert_sample(tool, cost, at or datetime.now())
    except StoreError as e:
        console.print(f"[red]Error recording sample:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] {tool.display_name} {sample.date_key}: "
        f"total {_format_currency(sample.total_cost)}, "
        f"delta {_format_currency(sample.delta_cost)}"
    )
    sys.exit(EXIT_CODE_OK)


@app.command("set-daily")
def set_daily(
    ctx: typer.Context,
    tool: UsageTool = typer.Argument(..., help="Tool the total belongs to"),
    date: str = typer.Argument(..., help="Day, e.g. 2024-01-15 or 'Jan 15, 2024'"),
    cost: float = typer.Argument(..., min=0, help="Total for the day in USD"),
):
    """Store the authoritative total of one day."""
    config: AppConfig = ctx.obj
    date_key = normalized_date_key(date)
    if date_key is None:
        console.print(f"[red]Unrecognized date:[/] {date}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        with UsageStore(config.db_path) as store:
            store.upsert_daily_totals(tool, [DailyTotal(date_key=date_key, cost=cost)])
    except StoreError as e:
        console.print(f"[red]Error storing daily total:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] {tool.display_name} {date_key}: {_format_currency(cost)}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def today(ctx: typer.Context):
    """Show today's totals and hourly usage."""
    config: AppConfig = ctx.obj
    tools = config.enabled_tools
    if not tools:
        console.print("[yellow]Enable Claude Code or Codex in the configuration.[/]")
        sys.exit(EXIT_CODE_OK)

    store = _open_for_reading(config)
    try:
        snapshot = load_usage_snapshot(store, tools)
    finally:
        store.close()

    console.print("\n[bold]Today[/bold]")
    for total in snapshot.tool_totals:
        console.print(f"{total.tool.display_name}: {_format_currency(total.total_cost)}")
    console.print(f"[bold]Total:[/bold] {_format_currency(snapshot.combined_total)}")

    if not snapshot.hourly_series:
        console.print("\n[dim]No samples recorded today.[/]")
        sys.exit(EXIT_CODE_OK)

    table = Table(title="Hourly usage")
    table.add_column("Hour")
    for tool in tools:
        table.add_column(tool.short_name, justify="right")

    by_hour = {}
    for point in snapshot.hourly_series:
        by_hour.setdefault(point.date.hour, {})[point.tool] = point.cost
    for hour in sorted(by_hour):
        row = by_hour[hour]
        table.add_row(
            f"{hour:02d}:00",
            *[_format_currency(row.get(tool, 0.0)) for tool in tools]
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def daily(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", min=1, help="Number of days to show"),
):
    """Show daily totals for recent days."""
    config: AppConfig = ctx.obj
    store = _open_for_reading(config)
    try:
        rollups = store.fetch_daily_rollups(date_key_days_ago(days - 1))
    finally:
        store.close()

    rollups = [r for r in rollups if r.tool in config.enabled_tools]
    if not rollups:
        console.print("\n[dim]No daily totals recorded.[/]")
        sys.exit(EXIT_CODE_OK)

    table = Table(title=f"Daily usage (last {days} days)")
    table.add_column("Date")
    table.add_column("Tool")
    table.add_column("Cost", justify="right")
    for rollup in rollups:
        table.add_row(rollup.date_key, rollup.tool.display_name, _format_currency(rollup.total_cost))
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def maintain(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Run even when maintenance mode is manual"
    ),
):
    """Repair sample deltas and daily date keys."""
    config: AppConfig = ctx.obj
    try:
        store = UsageStore(config.db_path)
    except StoreError as e:
        console.print(f"[red]Error opening database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        report = MaintenanceRunner(store, config.maintenance_mode).run(force=force)
    finally:
        store.close()

    if report is None:
        console.print("[yellow]Maintenance mode is manual. Use --force to run it.[/]")
        sys.exit(EXIT_CODE_OK)
    if report.succeeded:
        console.print(f"[green]✓[/] {report.message}")
        sys.exit(EXIT_CODE_OK)
    console.print(f"[red]{report.message}[/]")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format a USD amount with thousands separators and two decimals."""
    return f"${amount:,.2f}"


if __name__ == "__main__":
    app()
