"""
CLI interface for llm-usage-metrics.

Provides daily, weekly and monthly token usage and cost reports.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from llm_usage_metrics.config.loader import load_default_report_config
from llm_usage_metrics.config.logger import setup_logging, stderr_console
from llm_usage_metrics.core.aggregation import RowType, UsageReportRow, UsageTotals
from llm_usage_metrics.core.time_buckets import ReportGranularity
from llm_usage_metrics.core.usage_data import ReportOptions, build_usage_data, emit_diagnostics

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """LLM usage metrics CLI."""
    if ctx.invoked_subcommand is None:
        console.print("llm-usage - Use --help to see available commands")


def _make_report_command(granularity: ReportGranularity):
    def report(
        config: Optional[Path] = typer.Option(
            None,
            "--config",
            "-c",
            help="Path to a YAML report config (defaults to the per-user config)"
        ),
        source: Optional[List[str]] = typer.Option(
            None,
            "--source",
            "-s",
            help="Only read these source ids (repeatable or comma separated)"
        ),
        source_dir: Optional[List[str]] = typer.Option(
            None,
            "--source-dir",
            help="Override a source directory as <source-id>=<path> (repeatable)"
        ),
        since: Optional[str] = typer.Option(
            None,
            "--since",
            help="Include events on or after this local date (YYYY-MM-DD)"
        ),
        until: Optional[str] = typer.Option(
            None,
            "--until",
            help="Include events on or before this local date (YYYY-MM-DD)"
        ),
        timezone: Optional[str] = typer.Option(
            None,
            "--timezone",
            "-z",
            help="IANA timezone used for period boundaries"
        ),
        provider: Optional[str] = typer.Option(
            None,
            "--provider",
            "-p",
            help="Filter events by provider substring"
        ),
        model: Optional[List[str]] = typer.Option(
            None,
            "--model",
            "-m",
            help="Filter events by model (exact when a model matches, else substring)"
        ),
        pricing_url: Optional[str] = typer.Option(
            None,
            "--pricing-url",
            help="Fetch the rate table from this http(s) URL"
        ),
        pricing_offline: bool = typer.Option(
            False,
            "--pricing-offline",
            help="Only use cached pricing, never the network"
        ),
        ignore_pricing_failures: bool = typer.Option(
            False,
            "--ignore-pricing-failures",
            help="Continue without estimated costs if pricing cannot be loaded"
        ),
        as_json: bool = typer.Option(
            False,
            "--json",
            help="Print report rows as JSON"
        ),
        verbose: bool = typer.Option(
            False,
            "--verbose",
            "-v",
            help="Show debug logging"
        ),
    ):
        setup_logging(verbose=verbose)

        try:
            options = ReportOptions(
                since=since,
                until=until,
                timezone=timezone,
                provider=provider,
                source=source or None,
                model=model or None,
                source_dirs=source_dir or None,
                pricing_url=pricing_url,
                pricing_offline=pricing_offline,
                ignore_pricing_failures=ignore_pricing_failures,
                config=load_default_report_config(config),
            )
            result = asyncio.run(build_usage_data(granularity, options))
        except Exception as e:
            stderr_console.print(f"[red]Error:[/] {escape(str(e))}")
            sys.exit(EXIT_CODE_FAIL)

        emit_diagnostics(result.diagnostics)

        if as_json:
            typer.echo(json.dumps([row.to_dict() for row in result.rows], indent=2))
        else:
            _display_report(result.rows, granularity, result.diagnostics.timezone)

        sys.exit(EXIT_CODE_PASS)

    report.__doc__ = f"Show {granularity.value} token usage and cost."
    return report


for _granularity in ReportGranularity:
    app.command(_granularity.value)(_make_report_command(_granularity))


def _format_tokens(count: int) -> str:
    return f"{count:,}"


def _format_cost(totals: UsageTotals) -> str:
    """Format cost; a trailing ``*`` marks a partial sum."""
    if totals.cost_usd is None:
        return "-"
    marker = "*" if totals.cost_incomplete else ""
    return f"${totals.cost_usd:,.4f}{marker}"


def _display_report(rows: List[UsageReportRow], granularity: ReportGranularity, timezone: str):
    """Display report rows in a table."""
    table = Table(title=f"{granularity.value.capitalize()} usage ({timezone})")
    table.add_column("Period")
    table.add_column("Source")
    table.add_column("Models")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Reasoning", justify="right")
    table.add_column("Cache Read", justify="right")
    table.add_column("Cache Write", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Cost", justify="right")

    for row in rows:
        totals = row.totals
        style = None
        if row.row_type == RowType.GRAND_TOTAL:
            style = "bold"
        elif row.row_type == RowType.PERIOD_COMBINED:
            style = "dim"

        table.add_row(
            row.period_key,
            row.source,
            ", ".join(row.models),
            _format_tokens(totals.input_tokens),
            _format_tokens(totals.output_tokens),
            _format_tokens(totals.reasoning_tokens),
            _format_tokens(totals.cache_read_tokens),
            _format_tokens(totals.cache_write_tokens),
            _format_tokens(totals.total_tokens),
            _format_cost(totals),
            style=style,
            end_section=row.row_type == RowType.PERIOD_COMBINED,
        )

    console.print(table)
    if any(row.totals.cost_incomplete for row in rows):
        console.print("[dim]* cost excludes events without known pricing[/]")


if __name__ == "__main__":
    app()
