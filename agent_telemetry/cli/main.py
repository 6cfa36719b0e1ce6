"""
CLI interface for Agent Telemetry.

Runs the receiver and renders usage reports from the telemetry store.
"""

import sqlite3
import sys
import time
from dataclasses import replace
from datetime import datetime
from functools import partial
from typing import List, Optional

import typer
import yaml
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from agent_telemetry.cli.formatting import (
    format_cost,
    format_duration,
    format_timestamp,
    format_tokens,
    tool_label,
)
from agent_telemetry.config.loader import StorageConfig, TelemetryConfig, load_config
from agent_telemetry.core.aggregation import AggregationEngine, DailySummary, ToolUsage
from agent_telemetry.core.windows import month_window, today_window, week_window
from agent_telemetry.storage.repository import get_repository, initialize_schema

app = typer.Typer()
report_app = typer.Typer(help="Show usage reports from stored telemetry.")
app.add_typer(report_app, name="report")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

TOP_TOOLS_TODAY = 8
RECENT_SESSIONS = 10

SETUP_HINT = [
    "export CLAUDE_CODE_ENABLE_TELEMETRY=1",
    "export OTEL_METRICS_EXPORTER=otlp",
    "export OTEL_LOGS_EXPORTER=otlp",
    "export OTEL_EXPORTER_OTLP_PROTOCOL=http/json",
    "export OTEL_EXPORTER_OTLP_ENDPOINT=http://localhost:{port}",
]


def _settings(ctx: typer.Context) -> TelemetryConfig:
    return ctx.find_root().obj


def _engine(ctx: typer.Context) -> AggregationEngine:
    return AggregationEngine(get_repository(_settings(ctx).storage.db_path))


def _print_setup_hint(port: int) -> None:
    console.print("\n  Make sure the receiver is running and the agent is configured:\n")
    for line in SETUP_HINT:
        console.print(f"    {line.format(port=port)}")
    console.print()


def _run_report(ctx: typer.Context, render) -> None:
    """Run a report renderer, turning a missing schema into a hint."""
    try:
        render(_engine(ctx))
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No telemetry data found[/]")
            console.print("\nRun `agent-telemetry init` or start the receiver with `agent-telemetry serve`.")
            _print_setup_hint(_settings(ctx).server.port)
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config file"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to telemetry database"),
):
    """Agent Telemetry CLI."""
    try:
        settings = load_config(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        settings = replace(settings, storage=StorageConfig(db_path=db))
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        console.print("Agent Telemetry - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the telemetry database."""
    try:
        initialize_schema(_settings(ctx).storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
):
    """Run the OTLP/HTTP JSON receiver."""
    import uvicorn

    from agent_telemetry.server.app import create_app
    from agent_telemetry.server.logging_config import configure_logging

    settings = _settings(ctx)
    host = host or settings.server.host
    port = port or settings.server.port
    configure_logging(settings.logging.level)

    console.print("[bold]Agent Telemetry Receiver[/bold]")
    console.print(f"Listening on: http://{host}:{port}")
    console.print(f"Database:     {settings.storage.db_path}")
    _print_setup_hint(port)

    uvicorn.run(create_app(settings.storage.db_path), host=host, port=port, log_config=None)


def _today_panel(day: DailySummary) -> Table:
    table = Table(title="Today", show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Input tokens", format_tokens(day.input_tokens))
    table.add_row("Output tokens", format_tokens(day.output_tokens))
    table.add_row("Cache read", format_tokens(day.cache_read_tokens))
    table.add_row("Total tokens", format_tokens(day.total_tokens))
    table.add_row("Cost", format_cost(day.total_cost))
    table.add_row("Sessions", str(day.sessions))
    table.add_row("Tool calls", str(day.tool_calls))
    table.add_row("Lines +/-", f"+{int(day.lines_added)} / -{int(day.lines_removed)}")
    return table


def _tools_table(tools: List[ToolUsage], title: str, detailed: bool = False) -> Table:
    table = Table(title=title)
    table.add_column("Tool")
    table.add_column("Calls", justify="right")
    if detailed:
        table.add_column("OK", justify="right")
        table.add_column("Fail", justify="right")
    table.add_column("Avg", justify="right")
    for tool in tools:
        row = [tool_label(tool.tool_name), str(tool.total_calls)]
        if detailed:
            row += [str(tool.successful), str(tool.failed)]
        row.append(format_duration(tool.avg_duration_ms))
        table.add_row(*row)
    return table


@report_app.callback(invoke_without_command=True)
def report(ctx: typer.Context):
    """Show today's usage summary when no report is named."""
    if ctx.invoked_subcommand is None:
        _run_report(ctx, partial(_render_today, port=_settings(ctx).server.port))


def _render_today(engine: AggregationEngine, port: int = 4318) -> None:
    start, end = today_window()
    daily = engine.get_daily_summary(start, end)
    tools = engine.get_tool_usage(start, end)

    if not daily:
        console.print("\n  No telemetry data for today.")
        _print_setup_hint(port)
        return

    console.print(_today_panel(daily[0]))
    if tools:
        console.print(_tools_table(tools[:TOP_TOOLS_TODAY], "Top tools"))


@report_app.command("today")
def report_today(ctx: typer.Context):
    """Show today's usage summary."""
    _run_report(ctx, partial(_render_today, port=_settings(ctx).server.port))


def _render_week(engine: AggregationEngine) -> None:
    daily = engine.get_daily_summary(*week_window())
    if not daily:
        console.print("\n  No telemetry data for this week.\n")
        return

    table = Table(title="This week's usage", show_footer=True)
    table.add_column("Date", footer="TOTAL")
    table.add_column("Cost", justify="right", footer=format_cost(sum(d.total_cost for d in daily)))
    table.add_column("Tokens", justify="right", footer=format_tokens(sum(d.total_tokens for d in daily)))
    table.add_column("Tools", justify="right", footer=str(sum(d.tool_calls for d in daily)))
    for d in daily:
        table.add_row(d.date, format_cost(d.total_cost), format_tokens(d.total_tokens), str(d.tool_calls))
    console.print(table)


@report_app.command("week")
def report_week(ctx: typer.Context):
    """Show this week's daily breakdown."""
    _run_report(ctx, _render_week)


def _render_sessions(engine: AggregationEngine) -> None:
    sessions = engine.get_session_summaries(*week_window())
    if not sessions:
        console.print("\n  No sessions found this week.\n")
        return

    table = Table(title="Recent sessions")
    table.add_column("Session", no_wrap=True)
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Tools", justify="right")
    for s in sessions[:RECENT_SESSIONS]:
        minutes = round(s.duration_ms / 1000 / 60)
        tokens = s.total_input_tokens + s.total_output_tokens
        table.add_row(
            f"{s.session_id[:8]}...",
            format_timestamp(s.start_time),
            f"~{minutes} min",
            format_cost(s.total_cost),
            f"{format_tokens(tokens)} ({format_tokens(s.total_input_tokens)}/{format_tokens(s.total_output_tokens)})",
            str(s.tool_calls),
        )
    console.print(table)


@report_app.command("sessions")
def report_sessions(ctx: typer.Context):
    """List recent sessions with details."""
    _run_report(ctx, _render_sessions)


def _render_tools(engine: AggregationEngine) -> None:
    tools = engine.get_tool_usage(*month_window())
    if not tools:
        console.print("\n  No tool usage data found.\n")
        return
    console.print(_tools_table(tools, "Tool usage (this month)", detailed=True))


@report_app.command("tools")
def report_tools(ctx: typer.Context):
    """Show tool usage statistics for this month."""
    _run_report(ctx, _render_tools)


def _render_total(engine: AggregationEngine) -> None:
    stats = engine.get_total_stats()
    table = Table(title="All-time totals", show_header=False)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total cost", format_cost(stats.total_cost))
    table.add_row("Total tokens", format_tokens(stats.total_tokens))
    table.add_row("Total sessions", str(stats.total_sessions))
    console.print(table)


@report_app.command("total")
def report_total(ctx: typer.Context):
    """Show all-time totals."""
    _run_report(ctx, _render_total)


def _dashboard_view(engine: AggregationEngine) -> Panel:
    now = datetime.now()
    start, end = today_window(now)
    daily = engine.get_daily_summary(start, end)
    tools = engine.get_tool_usage(start, end)
    totals = engine.get_total_stats()
    day = daily[0] if daily else DailySummary(
        date=now.date().isoformat(), sessions=0, total_cost=0.0, total_tokens=0.0,
        input_tokens=0.0, output_tokens=0.0, cache_read_tokens=0.0, tool_calls=0,
        lines_added=0.0, lines_removed=0.0,
    )
    all_time = Table(title="All time", show_header=False, box=None, padding=(0, 2))
    all_time.add_column("Metric")
    all_time.add_column("Value", justify="right")
    all_time.add_row("Cost", format_cost(totals.total_cost))
    all_time.add_row("Tokens", format_tokens(totals.total_tokens))
    all_time.add_row("Sessions", str(totals.total_sessions))

    parts = [_today_panel(day), all_time]
    if tools:
        parts.append(_tools_table(tools[:TOP_TOOLS_TODAY], "Top tools today"))
    return Panel(
        Group(*parts),
        title="Agent Telemetry - Live Dashboard",
        subtitle=f"Last updated: {now.strftime('%H:%M:%S')}",
    )


@app.command()
def dashboard(
    ctx: typer.Context,
    interval: float = typer.Option(5.0, "--interval", "-i", help="Refresh interval in seconds"),
    once: bool = typer.Option(False, "--once", help="Render a single frame and exit"),
):
    """Show a live-refreshing view of today's usage."""
    db_path = _settings(ctx).storage.db_path
    initialize_schema(db_path)
    engine = AggregationEngine(get_repository(db_path))

    if once:
        console.print(_dashboard_view(engine))
        return

    try:
        with Live(_dashboard_view(engine), console=console, screen=True) as live:
            while True:
                time.sleep(interval)
                live.update(_dashboard_view(engine))
    except KeyboardInterrupt:
        console.print("Dashboard stopped.")


if __name__ == "__main__":
    app()
