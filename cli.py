#!/usr/bin/env python3
"""
Hemogen CLI

Command-line interface for generating synthetic hemograms and forwarding
them to the ingestion endpoint.
"""

import logging
import random
import sys
import time
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from hemogen import __version__
from hemogen.config import ConfigError, load_config
from hemogen.db import StorageError
from hemogen.delivery import DeliveryError
from hemogen.exporters import export_json
from hemogen.services import Services, set_services

console = Console()


def configure_logging(verbose: bool, log_file: Optional[str]) -> None:
    """INFO to stderr by default, DEBUG with --verbose, optionally tee'd to a file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def print_delivery(report) -> None:
    """Render a delivery report, if there is one."""
    if report is None:
        console.print("[dim]Delivery skipped[/dim]")
        return

    table = Table(title="Delivery")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Records", str(report.total))
    table.add_row("Succeeded", f"[green]{report.succeeded}[/green]")
    table.add_row("Failed", f"[red]{report.failed}[/red]" if report.failed else "0")
    table.add_row("Skipped", str(report.skipped))
    table.add_row("Batches", ", ".join(str(size) for size in report.batch_sizes) or "-")
    table.add_row("Duration", f"{report.duration_seconds:.2f}s")
    console.print(table)


def print_backfill(result) -> None:
    table = Table(title="Backfill")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Baseline records", str(result.baseline_records))
    table.add_row("Outbreak records", str(result.outbreak_records))
    table.add_row("Per location per day", str(result.per_location_daily))
    if result.days:
        table.add_row("Window", f"{result.days[0]} .. {result.days[-1]} ({len(result.days)} days)")
    console.print(table)
    print_delivery(result.delivery)


@click.group()
@click.version_option(version=__version__, prog_name="hemogen")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="YAML config file (defaults to $HEMOGEN_CONFIG, then built-ins)")
@click.option("--seed", type=int, help="Random seed for reproducible generation")
@click.option("--verbose", "-v", is_flag=True, help="Emit debug logs to stderr")
@click.option("--log-file", type=click.Path(dir_okay=False, writable=True),
              help="Append logs to this file")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], seed: Optional[int], verbose: bool, log_file: Optional[str]):
    """
    Hemogen - Synthetic Hemogram Generator

    Generate complete blood counts with controllable outbreak signals and
    deliver them as FHIR R4 bundles to an ingestion endpoint.
    """
    configure_logging(verbose, log_file)

    if ctx.obj is None:
        try:
            config = load_config(config_path)
        except ConfigError as e:
            raise click.ClickException(f"Invalid configuration: {e}")
        ctx.obj = Services(config, rng=random.Random(seed))

    ctx.call_on_close(ctx.obj.shutdown)


@cli.command()
@click.option("--count", "-n", type=click.IntRange(min=1), default=50, show_default=True, help="Nominal batch size")
@click.option("--no-deliver", is_flag=True, help="Store only; do not send to the sink")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Also write the records as JSON")
@click.pass_obj
def generate(services: Services, count: int, no_deliver: bool, output: Optional[str]):
    """
    Run one generation cycle (uniform or burst) and deliver it.
    """
    try:
        records, report = services.generate(count, deliver=not no_deliver)
    except (StorageError, DeliveryError) as e:
        raise click.ClickException(str(e))

    anomalies = sum(1 for r in records if r.category.is_anomalous)
    mode = services.composer.last_mode.value if services.composer.last_mode else "-"
    console.print(f"[green]✓ Generated {len(records)} records[/green] "
                  f"[dim](mode: {mode}, anomalies: {anomalies})[/dim]")

    if output:
        export_json(records, Path(output))
        console.print(f"[dim]Wrote {output}[/dim]")

    print_delivery(report)


@cli.command()
@click.option("--days", type=click.IntRange(min=1), help="Window length in days")
@click.option("--daily-count", type=click.IntRange(min=1), help="Records per day across all locations")
@click.option("--anomaly-rate", type=click.FloatRange(0.0, 1.0), help="Baseline anomaly rate")
@click.option("--no-deliver", is_flag=True, help="Store only; do not send to the sink")
@click.pass_obj
def backfill(services: Services, days: Optional[int], daily_count: Optional[int],
             anomaly_rate: Optional[float], no_deliver: bool):
    """
    Force a historical backfill (ignores the startup gate).
    """
    with console.status("Generating historical baseline..."):
        result = services.run_backfill(days, daily_count, anomaly_rate, deliver=not no_deliver)
    console.print(f"[green]✓ Backfilled {result.total} records[/green]")
    print_backfill(result)


@cli.command()
@click.argument("location")
@click.option("--count", "-n", type=click.IntRange(min=1), default=100, show_default=True, help="Records to inject")
@click.option("--rate", type=click.FloatRange(0.0, 1.0), help="Anomaly rate (defaults to the burst rate)")
@click.option("--date", "target_date", type=click.DateTime(formats=["%Y-%m-%d"]),
              help="Collection date (defaults to the detection lag)")
@click.option("--no-deliver", is_flag=True, help="Store only; do not send to the sink")
@click.pass_obj
def outbreak(services: Services, location: str, count: int, rate: Optional[float], target_date, no_deliver: bool):
    """
    Inject an outbreak at LOCATION ("city|region").
    """
    try:
        records, report = services.inject_outbreak(
            location, count, rate, target_date.date() if target_date else None, deliver=not no_deliver,
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="LOCATION")

    anomalies = sum(1 for r in records if r.category.is_anomalous)
    when = records[0].collected_at.date() if records else "-"
    console.print(f"[green]✓ Injected {len(records)} records at {location}[/green] "
                  f"[dim](anomalies: {anomalies}, collected: {when})[/dim]")
    print_delivery(report)


@cli.command(name="anomaly-scenario")
@click.argument("location")
@click.option("--days", type=click.IntRange(min=1), default=30, show_default=True)
@click.option("--daily-count", type=click.IntRange(min=1), default=20, show_default=True)
@click.option("--anomaly-rate", type=click.FloatRange(0.0, 1.0), default=0.05, show_default=True)
@click.option("--outbreak-count", type=click.IntRange(min=0), default=100, show_default=True)
@click.option("--outbreak-rate", type=click.FloatRange(0.0, 1.0), default=0.9, show_default=True)
@click.pass_obj
def anomaly_scenario(services: Services, location: str, days: int, daily_count: int,
                     anomaly_rate: float, outbreak_count: int, outbreak_rate: float):
    """
    Baseline for LOCATION, an outbreak at the detection lag, then delivery.
    """
    try:
        result = services.anomaly_scenario(location, days, daily_count, anomaly_rate, outbreak_count, outbreak_rate)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="LOCATION")
    print_backfill(result)


@cli.command()
@click.pass_obj
def deliver(services: Services):
    """
    Send every undelivered record now.
    """
    print_delivery(services.deliver_pending())


@cli.command()
@click.pass_obj
def stats(services: Services):
    """
    Show stored, sent and pending record counts.
    """
    counts = services.stats()
    table = Table(title="Records")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Total", str(counts["total"]))
    table.add_row("Sent", str(counts["sent"]))
    table.add_row("Pending", str(counts["pending"]))
    console.print(table)


@cli.command(name="debug-fhir")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the bundle to a file")
@click.pass_obj
def debug_fhir(services: Services, output: Optional[str]):
    """
    Print a sample FHIR bundle as it would be sent (not persisted).
    """
    bundle = services.debug_bundle()
    if output:
        Path(output).write_text(bundle)
        console.print(f"[green]✓ Wrote {output}[/green]")
    else:
        click.echo(bundle)


@cli.command()
@click.option("--no-backfill", is_flag=True, help="Skip the startup backfill gate")
@click.pass_obj
def run(services: Services, no_backfill: bool):
    """
    Run the generator in the foreground until interrupted.
    """
    if no_backfill:
        services.scheduler.start()
    else:
        services.startup()

    console.print(Panel(
        f"[bold]Sink:[/bold] {services.config.sink.url}\n"
        f"[bold]Cycle:[/bold] every {services.config.scheduler.min_interval_minutes}-"
        f"{services.config.scheduler.max_interval_minutes} min, "
        f"{services.config.scheduler.min_batch_size}-{services.config.scheduler.max_batch_size} records\n"
        f"[bold]Retry sweep:[/bold] every {services.config.scheduler.retry_sweep_minutes} min\n\n"
        "[dim]Press Ctrl+C to stop[/dim]",
        title="Hemogen running",
        border_style="green",
    ))

    try:
        while services.scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping...[/yellow]")
    finally:
        services.shutdown()


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_obj
def serve(services: Services, host: str, port: int):
    """
    Start the HTTP trigger API (with the scheduler in the background).
    """
    from server import run_server

    set_services(services)
    run_server(host=host, port=port)


@cli.command()
@click.pass_obj
def info(services: Services):
    """
    Show information about Hemogen and the active configuration.
    """
    anomaly = services.config.anomaly
    console.print(Panel(
        "[bold]Hemogen[/bold]\n\n"
        "A synthetic complete blood count generator for:\n"
        "• Exercising outbreak detection pipelines\n"
        "• Building statistical baselines per location\n"
        "• Load testing FHIR ingestion endpoints\n\n"
        "[dim]Records are delivered as FHIR R4 collection bundles.[/dim]",
        title="About",
        border_style="blue",
    ))

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Anomalies", "enabled" if anomaly.enabled else "disabled")
    table.add_row("Anomaly rate", f"{anomaly.probability:.0%}")
    table.add_row("Severe ratio", f"{anomaly.severe_ratio:.0%}")
    table.add_row("Burst", f"{anomaly.burst_probability:.0%} x{anomaly.burst_size_multiplier:g} "
                           f"at {anomaly.burst_anomaly_rate:.0%}")
    table.add_row("Outbreak locations", ", ".join(anomaly.outbreak_locations))
    table.add_row("Normal locations", ", ".join(anomaly.normal_locations))
    table.add_row("Sink", services.config.sink.url)
    table.add_row("Storage", services.config.storage.backend)
    console.print(table)

    console.print("\n[bold]Quick Start:[/bold]")
    console.print("  hemogen backfill --days 30")
    console.print("  hemogen outbreak 'Trindade|GO' -n 100")
    console.print("  hemogen run")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
