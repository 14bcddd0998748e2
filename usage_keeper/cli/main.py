"""
CLI interface for usage-keeper.

Provides command-line access to ingestion runs and usage analytics.
"""

import sys
from datetime import datetime, timedelta
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from usage_keeper.config.loader import Settings, UsageLimits, load_settings
from usage_keeper.config.log_setup import setup_run_logging
from usage_keeper.core.analytics import (
    Metric,
    UsageStatus,
    UsageSummary,
    activity_dates,
    aggregate,
    block_history,
    detect_gaps,
    run_duration_quartiles,
    usage_status,
)
from usage_keeper.core.archive import list_archives
from usage_keeper.core.coordinator import RunCoordinator, RunState
from usage_keeper.core.windows import block_window, daily_window, weekly_window
from usage_keeper.storage.models import View
from usage_keeper.storage.repository import HistoryStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# How many block rows to print
BLOCK_DISPLAY_LIMIT = 10

_STATUS_STYLE = {
    UsageStatus.OK: "green",
    UsageStatus.WARN: "yellow",
    UsageStatus.CRITICAL: "red",
}

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to YAML settings file"
)


def _load(config: Optional[str]) -> Settings:
    try:
        return load_settings(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _store(settings: Settings) -> HistoryStore:
    store = HistoryStore(str(settings.store_path), timeout=settings.store_timeout_seconds)
    store.initialize_schema()
    return store


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${float(amount):,.2f}"


def _format_used(summary: UsageSummary) -> str:
    if summary.metric == Metric.COST:
        return f"{_format_currency(summary.used)} / {_format_currency(summary.limit)}"
    return f"{int(summary.used):,} / {int(summary.limit):,}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """usage-keeper CLI."""
    if ctx.invoked_subcommand is None:
        console.print("usage-keeper - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption):
    """Initialize the history store."""
    settings = _load(config)
    try:
        _store(settings)
        console.print(f"[green]✓[/] History store initialized at {settings.store_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing history store:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def refresh(config: Optional[str] = ConfigOption):
    """
    Fetch upstream snapshots and merge them into the history store.

    Exits 0 on success or when another run already holds the lock,
    1 on any unrecovered failure.
    """
    settings = _load(config)
    setup_run_logging(settings.log_dir)
    try:
        result = RunCoordinator(settings).run()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if result.state == RunState.LOCKED_OUT:
        console.print("[yellow]Another refresh is running, skipped[/]")
    elif result.succeeded and result.merged is not None:
        merged = result.merged
        console.print(
            f"[green]✓[/] Merged {merged.total} records "
            f"({merged.inserted} new, {merged.replaced} replaced, {merged.unchanged} unchanged)"
        )
    else:
        console.print(f"[red]Refresh failed:[/] {result.error}")
    sys.exit(result.exit_code)


@app.command()
def status(
    config: Optional[str] = ConfigOption,
    project: Optional[List[str]] = typer.Option(
        None,
        "--project",
        "-p",
        help="Restrict to a project (repeatable)"
    )
):
    """Show today's, this week's and the current block's usage against limits."""
    settings = _load(config)
    limits = UsageLimits.from_env()
    store = _store(settings)
    now = datetime.now()
    today = now.date()

    daily_records = store.query(View.DAILY, start=today - timedelta(days=6), end=today + timedelta(days=1))
    block = block_window(now)
    block_records = store.query(View.BLOCKS, start=block.block_start, end=block.block_end)

    rows = [
        ("Today cost", aggregate(daily_records, daily_window(today), limits.daily_cost,
                                 Metric.COST, project)),
        ("Today tokens", aggregate(daily_records, daily_window(today), limits.daily_tokens,
                                   Metric.TOKENS, project)),
        ("Week cost", aggregate(daily_records, weekly_window(today), limits.weekly_cost,
                                Metric.COST, project)),
        ("Block tokens", aggregate(block_records, block.as_window(), limits.block_tokens,
                                   Metric.TOKENS, project)),
    ]

    table = Table(title="Usage against limits")
    table.add_column("Window")
    table.add_column("Used / Limit", justify="right")
    table.add_column("%", justify="right")
    for label, summary in rows:
        grade = usage_status(summary.percentage, limits.warn_threshold, limits.critical_threshold)
        style = _STATUS_STYLE[grade]
        suffix = " (over limit)" if summary.over_limit else ""
        table.add_row(label, _format_used(summary), f"[{style}]{summary.percentage}%{suffix}[/]")
    console.print(table)

    remaining = int(block.time_remaining.total_seconds() // 60)
    console.print(
        f"Current block {block.block_start:%H:%M}-{block.block_end:%H:%M}, "
        f"{remaining // 60}h {remaining % 60:02d}m remaining"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def gaps(config: Optional[str] = ConfigOption):
    """List calendar gaps in the preserved daily history."""
    settings = _load(config)
    store = _store(settings)
    found = detect_gaps(activity_dates(store.query(View.DAILY)))
    if not found:
        console.print("[green]✓[/] No gaps in daily history")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Gaps in daily history")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Days", justify="right")
    for gap in found:
        table.add_row(gap.gap_start.isoformat(), gap.gap_end.isoformat(), str(gap.gap_days))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def blocks(
    config: Optional[str] = ConfigOption,
    days: int = typer.Option(7, "--days", "-d", help="Days of block history to show")
):
    """Show token usage per 5-hour block, newest first."""
    settings = _load(config)
    limits = UsageLimits.from_env()
    store = _store(settings)
    now = datetime.now()
    history = block_history(
        store.query(View.BLOCKS, start=now - timedelta(days=days)),
        limits.block_tokens,
        now=now,
        days=days,
        warn_threshold=limits.warn_threshold,
        critical_threshold=limits.critical_threshold,
    )
    if not history:
        console.print("[dim]No block usage recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Block usage (limit {limits.block_tokens:,} tokens)")
    table.add_column("Date")
    table.add_column("Block")
    table.add_column("Tokens", justify="right")
    table.add_column("%", justify="right")
    for entry in history[:BLOCK_DISPLAY_LIMIT]:
        style = _STATUS_STYLE[entry.status]
        table.add_row(
            entry.block_date.isoformat(),
            f"{entry.block_start:%H:%M}-{entry.block_end:%H:%M}",
            f"{entry.total_tokens:,}",
            f"[{style}]{entry.usage_pct}%[/]",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def runs(
    config: Optional[str] = ConfigOption,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show")
):
    """Show recent collection runs and their duration quartiles."""
    settings = _load(config)
    store = _store(settings)
    recent = store.recent_runs(limit)
    if not recent:
        console.print("[dim]No collection runs recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent collection runs")
    table.add_column("Started")
    table.add_column("Seconds", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Replaced", justify="right")
    for run in recent:
        table.add_row(
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{run.duration_seconds:.1f}",
            str(run.records_inserted),
            str(run.records_replaced),
        )
    console.print(table)

    spread = run_duration_quartiles(recent)
    console.print(f"Duration p25/p50/p75: {spread.p25:.1f}s / {spread.p50:.1f}s / {spread.p75:.1f}s")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def archives(config: Optional[str] = ConfigOption):
    """List retained raw snapshot archives, newest first."""
    settings = _load(config)
    entries = list_archives(settings.archive_dir)
    if not entries:
        console.print("[dim]No archives retained.[/]")
        sys.exit(EXIT_CODE_PASS)
    for entry in entries:
        files = ", ".join(sorted(p.name for p in entry.iterdir()))
        console.print(f"{entry.name}  {files}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
