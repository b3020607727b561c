"""
CLI interface for AI Spend Guard.

Provides command-line access to ingestion, rollup state and spend reports.
"""

import json
import sqlite3
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_spend_guard.config.loader import load_monitor_config
from ai_spend_guard.core.actor import DEFAULT_TENANT, RollupActor
from ai_spend_guard.core.ingest import run_ingestion_cycle
from ai_spend_guard.core.rollups import GroupBy
from ai_spend_guard.core.state import RollupState
from ai_spend_guard.log_config import configure_logging
from ai_spend_guard.storage.db import DEFAULT_DB_PATH
from ai_spend_guard.storage.models import SpendRecord
from ai_spend_guard.storage.repository import (
    StateRepository,
    fetch_spend_summary,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to SQLite database")
TENANT_OPTION = typer.Option(DEFAULT_TENANT, "--tenant", "-t", help="Tenant whose rollup to use")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
):
    """AI Spend Guard CLI."""
    configure_logging(log_level, json_output=json_logs)
    if ctx.invoked_subcommand is None:
        console.print("AI Spend Guard - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the AI Spend Guard database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def ingest(
    records_file: Path = typer.Argument(..., help="JSON file with a list of spend records"),
    config: Path = typer.Option(..., "--config", "-c", help="Monitor configuration YAML"),
    db: str = DB_OPTION,
    tenant: str = TENANT_OPTION,
    now: Optional[str] = typer.Option(None, "--now", help="Cycle time (ISO 8601, default: current UTC time)"),
    replace: bool = typer.Option(False, "--replace", help="Replace held records instead of merging"),
):
    """
    Run one ingestion cycle with the records in RECORDS_FILE.

    Records are merged into the rollup, caps are evaluated and alerts are
    sent to the configured channels.
    """
    try:
        monitor_config = load_monitor_config(str(config))
        records = _load_records(records_file)
        cycle_time = _parse_now(now)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        initialize_schema(db)
        with RollupActor(
            StateRepository(db),
            tenant=tenant,
            retention_days=monitor_config.retention_days,
            debounce_window=monitor_config.debounce_window,
        ) as actor:
            report = run_ingestion_cycle(
                actor,
                {"file": lambda from_day, to_day: records},
                monitor_config,
                cycle_time,
                db_path=db,
                replace=replace,
            )
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Ingested {report.records_ingested} record(s) for {report.from_day} → {report.to_day}")
    _display_state(report.state)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def state(db: str = DB_OPTION, tenant: str = TENANT_OPTION):
    """Show the persisted rollup state."""
    try:
        snapshot = StateRepository(db).load_state(tenant)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_no_data()
            sys.exit(EXIT_CODE_PASS)
        raise

    if snapshot is None:
        _print_no_data()
        sys.exit(EXIT_CODE_PASS)

    _display_state(snapshot)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def spend(
    db: str = DB_OPTION,
    tenant: str = TENANT_OPTION,
    from_day: Optional[str] = typer.Option(None, "--from", help="First day (YYYY-MM-DD)"),
    to_day: Optional[str] = typer.Option(None, "--to", help="Last day (YYYY-MM-DD)"),
    group_by: GroupBy = typer.Option(GroupBy.NONE, "--group-by", "-g", help="Grouping dimension"),
):
    """Show held spend, optionally filtered by date and grouped."""
    try:
        initialize_schema(db)
        with RollupActor(StateRepository(db), tenant=tenant) as actor:
            buckets = actor.query(from_day, to_day, group_by)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not buckets:
        console.print("\n[dim]No spend records in range.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"AI Spend ({group_by.value})")
    table.add_column("Key")
    table.add_column("Cost", justify="right")
    table.add_column("Input tokens", justify="right")
    table.add_column("Output tokens", justify="right")
    table.add_column("Records", justify="right")
    for bucket in buckets:
        table.add_row(
            bucket.key,
            _format_currency(bucket.cost_usd),
            _format_tokens(bucket.input_tokens),
            _format_tokens(bucket.output_tokens),
            str(len(bucket.records)),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def summary(
    from_day: str = typer.Option(..., "--from", help="First day (YYYY-MM-DD)"),
    to_day: str = typer.Option(..., "--to", help="Last day (YYYY-MM-DD)"),
    db: str = DB_OPTION,
):
    """Summarize recorded spend history per day and provider."""
    try:
        result = fetch_spend_summary(from_day, to_day, db)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_no_data()
            sys.exit(EXIT_CODE_PASS)
        raise

    providers = list(result.provider_totals)
    table = Table(title=f"Spend {result.from_day} → {result.to_day}")
    table.add_column("Day")
    for provider in providers:
        table.add_column(provider, justify="right")
    table.add_column("Total", justify="right")
    for day in result.days:
        table.add_row(
            day.day,
            *[_format_currency(day.provider_totals[p]) for p in providers],
            _format_currency(day.total_usd),
        )
    table.add_row(
        "[bold]Total[/]",
        *[_format_currency(result.provider_totals[p]) for p in providers],
        f"[bold]{_format_currency(result.total_usd)}[/]",
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _load_records(path: Path) -> List[SpendRecord]:
    """Read spend records from a JSON list (or an object with a "records" list)."""
    if not path.exists():
        raise FileNotFoundError(f"Records file not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in records file {path}: {e}")
    if isinstance(data, dict):
        data = data.get("records")
    if not isinstance(data, list):
        raise ValueError("Records file must contain a list of records")
    return [SpendRecord.from_dict(item) for item in data]


def _parse_now(value: Optional[str]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _print_no_data() -> None:
    console.print("\n[bold yellow]No rollup data found[/]")
    console.print("\nTo get started with AI Spend Guard:")
    console.print("1. Run `ai-spend-guard init` to initialize the database")
    console.print("2. Run `ai-spend-guard ingest` with a records file and config\n")


def _format_currency(amount: Decimal) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.2f}"


def _format_tokens(tokens: Optional[int]) -> str:
    return "-" if tokens is None else f"{tokens:,}"


def _display_state(snapshot: RollupState) -> None:
    """Display rollup state: run info, totals, breaches and deliveries."""
    console.print("\n[bold]AI Spend Rollup[/bold]")
    console.print("-" * 40)
    last_run = snapshot.last_run.isoformat() if snapshot.last_run else "never"
    console.print(f"Last run: {last_run}")
    console.print(f"Records held: {len(snapshot.records)}")
    if snapshot.last_error:
        console.print(f"[red]Last error:[/] {snapshot.last_error}")

    evaluation = snapshot.last_evaluation
    if evaluation is not None:
        totals = Table(title="Month-to-date totals")
        totals.add_column("Scope")
        totals.add_column("Total", justify="right")
        for scope, total in evaluation.totals.items():
            totals.add_row(scope.value, _format_currency(total))
        console.print(totals)

        if evaluation.breaches:
            for breach in evaluation.breaches:
                color = "red" if breach.level.value == "hard" else "yellow"
                console.print(
                    f"[{color}]{breach.level.value.upper()}[/] {breach.scope.value}: "
                    f"{_format_currency(breach.total)} >= {_format_currency(breach.threshold)}"
                )
        else:
            console.print("[green]✓[/] No caps breached")

    for result in snapshot.last_dispatch:
        status = "[green]sent[/]" if result.ok else f"[red]failed[/] ({result.message})"
        console.print(f"Alert {result.channel}: {status}")


if __name__ == "__main__":
    app()
