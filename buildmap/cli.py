"""
Buildmap CLI.

Command-line interface for resolving building records into coordinates and
OpenStreetMap footprints.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .core.config import settings
from .core.pipeline import ResolutionPipeline, load_overrides, read_rows, records_from_rows
from .export.report import (
    ResolutionReportWriter,
    load_report,
    print_collisions,
    print_summary,
    summarize_report,
)
from .utils.logging_config import DEFAULT_LOG_LEVEL, setup_logging
from .utils.validation import InputContractError

app = typer.Typer(
    name="buildmap",
    help="Buildmap - resolve building records to coordinates and OSM footprints",
    add_completion=False,
)
console = Console()


def _fail(error: InputContractError) -> None:
    console.print(f"[red]Error:[/red] {error}")
    for suggestion in error.suggestions:
        console.print(f"  [dim]{suggestion}[/dim]")
    raise typer.Exit(code=1)


@app.command()
def resolve(
    input_file: Path = typer.Argument(..., help="Canonical buildings CSV"),
    overrides_file: Optional[Path] = typer.Option(
        None, "--overrides", help="Manual overrides CSV (building_id, osm_type, osm_id, note)"
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o", help="Output directory"
    ),
    cache_dir: Optional[Path] = typer.Option(
        None, "--cache-dir", help="Directory holding geocode.json and overpass.json"
    ),
    log_level: str = typer.Option(DEFAULT_LOG_LEVEL, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    log_to_file: bool = typer.Option(False, "--log-file/--no-log-file", help="Also log to logs/"),
):
    """
    Geocode every record and match it to a building footprint.

    Responses are cached, so rerunning over the same input makes no network
    requests.
    """
    setup_logging(level=log_level, log_to_file=log_to_file)

    console.print(Panel.fit(
        "[bold blue]Buildmap[/bold blue]\n"
        "Building Entity Resolution",
        border_style="blue"
    ))

    update = {}
    if output_dir is not None:
        update["output_dir"] = output_dir
    if cache_dir is not None:
        update["cache_dir"] = cache_dir
    run_settings = settings.model_copy(update=update)

    try:
        columns, rows = read_rows(input_file)
        records = records_from_rows(rows, columns)
        overrides = load_overrides(overrides_file)
    except InputContractError as e:
        _fail(e)

    console.print(f"\n[cyan]Loaded:[/cyan] {len(records)} records from {input_file}")
    if overrides:
        console.print(f"[cyan]Overrides:[/cyan] {len(overrides)}")
    console.print(f"[dim]Cache: {run_settings.cache_dir}[/dim]\n")

    pipeline = ResolutionPipeline.from_settings(run_settings, console=console)
    results = pipeline.run(records, overrides)

    writer = ResolutionReportWriter(run_settings.output_dir)
    report = writer.build(results)
    report_path = writer.write_report(report)
    csv_path = writer.write_geocoded_csv(columns, rows, results)

    console.print()
    print_summary(summarize_report(report), console)
    console.print(f"\n[green]Report:[/green] {report_path}")
    console.print(f"[green]Geocoded CSV:[/green] {csv_path}")


@app.command()
def collisions(
    report_file: Path = typer.Argument(..., help="resolution_report.json"),
):
    """List OSM objects shared by more than one record."""
    try:
        report = load_report(report_file)
    except InputContractError as e:
        _fail(e)

    print_collisions(report.get("collisions") or [], console)


@app.command()
def summary(
    report_file: Path = typer.Argument(..., help="resolution_report.json"),
):
    """Show totals per status and the footprint match rate."""
    try:
        report = load_report(report_file)
    except InputContractError as e:
        _fail(e)

    print_summary(summarize_report(report), console)


if __name__ == "__main__":
    app()
