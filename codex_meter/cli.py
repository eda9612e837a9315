"""
Command Line Interface
======================
``codex-meter`` entry point: run the service or inspect the store.
"""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from codex_meter.config import Settings, get_settings
from codex_meter.main import configure_logging
from codex_meter.runtime import MeterRuntime, StartupError
from codex_meter.schemas.usage import DriftRow, PeriodTotals

app = typer.Typer(help="Local usage and cost meter for the Codex CLI.")
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

T = TypeVar("T")

DatabaseOption = typer.Option(None, "--database", "-d", help="Path to the SQLite database")


def _settings(database: Optional[Path] = None, **overrides) -> Settings:
    updates = {key: value for key, value in overrides.items() if value is not None}
    if database is not None:
        updates["database_path"] = database
    settings = get_settings()
    return settings.model_copy(update=updates) if updates else settings


def _run_with_runtime(settings: Settings, action: Callable[[MeterRuntime], Awaitable[T]]) -> T:
    """Start the pipeline without collector or scheduler, run ``action``, stop."""

    async def _main() -> T:
        runtime = MeterRuntime(settings, run_collector=False, run_scheduler=False)
        await runtime.start()
        try:
            return await action(runtime)
        finally:
            await runtime.stop()

    configure_logging(settings)
    try:
        return asyncio.run(_main())
    except StartupError as e:
        console.print(f"[red]Cannot start:[/] {e}")
        raise typer.Exit(code=EXIT_CODE_FAIL) from e


def _money(value) -> str:
    return f"${value:,.4f}"


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Listen address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Listen port"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="Collector: tailer or proxy"),
    database: Optional[Path] = DatabaseOption,
):
    """Run the meter service (collector, aggregator and HTTP API)."""
    if mode is not None and mode not in ("tailer", "proxy"):
        console.print(f"[red]Unknown collector mode:[/] {mode}")
        raise typer.Exit(code=EXIT_CODE_FAIL)

    from codex_meter.main import run

    run(_settings(database, listen_host=host, listen_port=port, collector_mode=mode))


@app.command()
def summary(database: Optional[Path] = DatabaseOption):
    """Show token and cost totals for the standard periods."""
    settings = _settings(database)

    async def action(runtime: MeterRuntime) -> list[PeriodTotals]:
        return await runtime.store.summary()

    periods = _run_with_runtime(settings, action)

    table = Table(title="Usage Summary")
    table.add_column("Period", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Prompt", justify="right")
    table.add_column("Cached", justify="right")
    table.add_column("Completion", justify="right")
    table.add_column("Cost", justify="right", style="green")
    for period in periods:
        cost = _money(period.cost)
        if period.unpriced_models:
            cost += " [yellow](partial)[/]"
        table.add_row(
            period.label.replace("_", " "),
            f"{period.request_count:,}",
            f"{period.prompt_tokens:,}",
            f"{period.cached_prompt_tokens:,}",
            f"{period.completion_tokens:,}",
            cost,
        )
    console.print(table)

    unpriced = sorted({model for period in periods for model in period.unpriced_models})
    if unpriced:
        console.print(f"[yellow]No price for:[/] {', '.join(unpriced)}")


@app.command()
def prices(database: Optional[Path] = DatabaseOption):
    """List price rules, oldest first within each prefix."""
    settings = _settings(database)

    async def action(runtime: MeterRuntime):
        return await runtime.store.list_price_rules()

    rules = _run_with_runtime(settings, action)

    table = Table(title="Price Rules (USD per 1M tokens)")
    table.add_column("Prefix", style="cyan")
    table.add_column("Effective From")
    table.add_column("Prompt", justify="right")
    table.add_column("Cached", justify="right")
    table.add_column("Completion", justify="right")
    table.add_column("ID", style="dim")
    for rule in rules:
        table.add_row(
            rule.model_prefix,
            str(rule.effective_from),
            f"{rule.prompt_per_million}",
            "-" if rule.cached_prompt_per_million is None else f"{rule.cached_prompt_per_million}",
            f"{rule.completion_per_million}",
            str(rule.id),
        )
    console.print(table)


def _print_drift(drift: list[DriftRow]) -> None:
    table = Table(title="Aggregate Drift")
    table.add_column("Date")
    table.add_column("Model", style="cyan")
    table.add_column("Expected requests", justify="right")
    table.add_column("Stored requests", justify="right")
    for row in drift:
        table.add_row(
            str(row.date),
            row.model,
            str(row.expected.request_count),
            "-" if row.actual is None else str(row.actual.request_count),
        )
    console.print(table)


@app.command()
def verify(database: Optional[Path] = DatabaseOption):
    """Compare daily aggregates with the raw events."""
    settings = _settings(database)

    async def action(runtime: MeterRuntime) -> list[DriftRow]:
        return await runtime.controller.verify()

    drift = _run_with_runtime(settings, action)
    if not drift:
        console.print("[green]✓[/] Daily aggregates match raw events")
        raise typer.Exit(code=EXIT_CODE_OK)

    _print_drift(drift)
    console.print("[yellow]Run `codex-meter rebuild --yes` to recompute aggregates[/]")
    raise typer.Exit(code=EXIT_CODE_FAIL)


@app.command()
def rebuild(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    database: Optional[Path] = DatabaseOption,
):
    """
    Recompute daily aggregates from raw events and re-read the session logs.

    Raw events and price rules are kept. Stop a running service first, or use
    POST /_meter/rebuild against it instead.
    """
    if not yes:
        typer.confirm("Truncate and recompute daily aggregates?", abort=True)

    settings = _settings(database)

    async def action(runtime: MeterRuntime):
        return await runtime.controller.rebuild(confirm=True)

    report = _run_with_runtime(settings, action)
    console.print(
        f"[green]✓[/] Rebuild complete: {report.events_replayed:,} events replayed, "
        f"{report.records_rescanned:,} new records read, {report.daily_rows:,} daily rows"
    )
    if report.drift:
        _print_drift(report.drift)
        raise typer.Exit(code=EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
