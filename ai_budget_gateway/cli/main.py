"""
CLI interface for the AI budget gateway.

Administrative access to the persisted gateway state.
"""

import logging
import sys
from datetime import datetime
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_budget_gateway.config.loader import GatewayConfig, load_gateway_config
from ai_budget_gateway.core.budget import BudgetLimit, BudgetTracker, UsageMetrics, Window
from ai_budget_gateway.core.circuit_breaker import BreakerState, CircuitState
from ai_budget_gateway.core.errors import ConfigurationError, PersistenceError
from ai_budget_gateway.storage.db import DEFAULT_DB_PATH
from ai_budget_gateway.storage.repository import SQLiteStateStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the gateway SQLite database")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """AI Budget Gateway CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    if ctx.invoked_subcommand is None:
        console.print("AI Budget Gateway - Use --help to see available commands")


def _load_config(config_path: Optional[str]) -> GatewayConfig:
    return load_gateway_config(config_path) if config_path else GatewayConfig()


def _format_currency(amount: Decimal) -> str:
    return f"${amount:,.4f}"


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the gateway database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except PersistenceError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    db: str = DB_OPTION,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Gateway YAML config")
):
    """Show window usage, per-model breakdown and breaker state."""
    try:
        gateway_config = _load_config(config)
        store = SQLiteStateStore(db)
        # Boundary resets are applied as of now, like a restarting gateway would
        tracker = BudgetTracker(gateway_config.budget, store.load_metrics())
        circuit = store.load_circuit_state()
    except (ConfigurationError, FileNotFoundError, PersistenceError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    metrics = tracker.snapshot()
    percentages = tracker.usage_percentages(metrics)
    budget = gateway_config.budget

    table = Table(title="Budget Windows")
    table.add_column("Window")
    table.add_column("Units", justify="right")
    table.add_column("Quota", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Cost Limit", justify="right")
    for window in Window:
        units_limit = BudgetLimit[f"{window.name}_UNITS"]
        cost_limit = BudgetLimit[f"{window.name}_COST"]
        table.add_row(
            window.value,
            f"{metrics.units(window):,} ({percentages[units_limit]:.1f}%)",
            f"{units_limit.ceiling(budget):,}",
            f"{_format_currency(metrics.cost(window))} ({percentages[cost_limit]:.1f}%)",
            _format_currency(cost_limit.ceiling(budget)),
        )
    console.print(table)

    if metrics.per_model:
        models = Table(title="Per-Model Usage")
        models.add_column("Model")
        models.add_column("Calls", justify="right")
        models.add_column("Units", justify="right")
        models.add_column("Cost", justify="right")
        for name, usage in sorted(metrics.per_model.items()):
            models.add_row(name, str(usage.calls), f"{usage.units:,}", _format_currency(usage.cost))
        console.print(models)

    state = circuit.state.value if circuit else BreakerState.CLOSED.value
    console.print(f"\n[bold]Circuit breaker:[/bold] {state}")
    if circuit and circuit.open_reason:
        console.print(f"Reason: {circuit.open_reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-daily")
def reset_daily(db: str = DB_OPTION):
    """Zero the daily counters in the persisted snapshot."""
    try:
        store = SQLiteStateStore(db)
        metrics = store.load_metrics() or UsageMetrics()
        metrics.daily_units = 0
        metrics.daily_cost = Decimal("0")
        store.save_metrics(metrics)
    except PersistenceError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Daily metrics reset")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-breaker")
def reset_breaker(db: str = DB_OPTION):
    """Force the persisted circuit breaker state to CLOSED."""
    try:
        SQLiteStateStore(db).save_circuit_state(CircuitState(BreakerState.CLOSED, datetime.now()))
    except PersistenceError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Circuit breaker reset to closed")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def records(
    db: str = DB_OPTION,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Filter by model")
):
    """Show the most recent usage ledger entries."""
    try:
        rows = SQLiteStateStore(db).fetch_recent_usage_records(model=model, limit=limit)
    except PersistenceError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("[dim]No usage records found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Usage Records")
    table.add_column("Timestamp")
    table.add_column("Model")
    table.add_column("Units", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Flags")
    for row in rows:
        flags = []
        if row.fallback_used:
            flags.append("fallback")
        if row.usage_estimated:
            flags.append("estimated")
        table.add_row(
            row.timestamp.strftime("%Y-%m-%d %H:%M"),
            row.model,
            f"{row.total_units:,}",
            _format_currency(row.cost),
            ",".join(flags),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("check-config")
def check_config(path: str = typer.Argument(..., help="Gateway YAML config")):
    """Validate a configuration file and print its limits."""
    try:
        config = load_gateway_config(path)
    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    budget = config.budget
    console.print("[green]✓[/] Configuration is valid")
    for window in Window:
        console.print(
            f"{window.value}: {BudgetLimit[f'{window.name}_UNITS'].ceiling(budget):,} units, "
            f"{_format_currency(BudgetLimit[f'{window.name}_COST'].ceiling(budget))}"
        )
    fallback = budget.fallback_model if budget.enable_fallback else "disabled"
    console.print(f"fallback model: {fallback}")
    console.print(f"priced models: {', '.join(config.cost_table.models)}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
