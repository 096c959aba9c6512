"""CLI entry-point for infra-inspector."""

from __future__ import annotations

import json
import logging
import sys
import threading
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from infra_inspector import __version__
from infra_inspector.config import (
    APPLICATION_KINDS,
    REPORT_FORMATS,
    Settings,
    load_config,
    load_metrics,
)
from infra_inspector.errors import InspectionError
from infra_inspector.inspector import build_inspector
from infra_inspector.models import InspectionReport
from infra_inspector.n9e import InventoryClient
from infra_inspector.prometheus import MetricsClient
from infra_inspector.renderer import summary_table, write_reports

console = Console()

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def _configure_logging(verbose: bool, level: str = "info", fmt: str = "console") -> None:
    log_level = logging.DEBUG if verbose else _LEVELS.get(level, logging.INFO)
    if fmt == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logging.basicConfig(level=log_level, handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
            datefmt="%H:%M:%S",
            force=True,
        )
    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load_settings(config_path: str) -> Settings:
    try:
        return load_config(config_path)
    except InspectionError as exc:
        console.print(f"[red bold]Error:[/red bold] {exc}", soft_wrap=True)
        sys.exit(1)


def _build_clients(settings: Settings) -> tuple[MetricsClient, InventoryClient]:
    ds = settings.datasources
    retry = settings.http.retry
    client = MetricsClient(
        ds.victoriametrics.endpoint,
        timeout=ds.victoriametrics.timeout,
        max_retries=retry.max_retries,
        base_delay=retry.base_delay,
    )
    inventory = InventoryClient(
        ds.n9e.endpoint,
        ds.n9e.token,
        ds.n9e.query,
        timeout=ds.n9e.timeout,
        max_retries=retry.max_retries,
        base_delay=retry.base_delay,
    )
    return client, inventory


@click.group()
@click.version_option(version=__version__, prog_name="infra-inspect")
def main() -> None:
    """Infrastructure inspection for hosts, MySQL, Redis, Nginx and Tomcat."""


@main.command()
@click.option(
    "--config", "-c", "config_path", required=True, type=click.Path(exists=True, dir_okay=False),
    help="Path to the YAML configuration file.",
)
@click.option("--output", "-o", "output_dir", default="", help="Report directory (overrides config).")
@click.option(
    "--format", "formats", multiple=True, type=click.Choice(REPORT_FORMATS),
    help="Report format; repeat for several (overrides config).",
)
@click.option(
    "--only", "only", multiple=True, type=click.Choice(APPLICATION_KINDS),
    help="Inspect only these types; repeat for several.",
)
@click.option("--concurrency", type=click.IntRange(1, 100), default=None, help="Parallel metric queries.")
@click.option("--timeout", type=float, default=None, help="Deadline in seconds per collection phase.")
@click.option("--fail-on-critical", is_flag=True, help="Exit with status 2 when any critical alert exists.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def run(
    config_path: str,
    output_dir: str,
    formats: tuple[str, ...],
    only: tuple[str, ...],
    concurrency: int | None,
    timeout: float | None,
    fail_on_critical: bool,
    verbose: bool,
) -> None:
    """Run every enabled inspection and write the reports.

    Host inspection always runs; application inspections run when enabled
    in the configuration.

    Examples:

      infra-inspect run -c config.yaml

      infra-inspect run -c config.yaml --only nginx --format html -o /tmp/reports
    """
    settings = _load_settings(config_path)
    _configure_logging(verbose, settings.logging.level, settings.logging.format)

    kinds = settings.enabled_kinds()
    if only:
        kinds = [k for k in kinds if k in only]
    if not kinds:
        console.print("[yellow]Nothing to inspect: none of the selected types is enabled.[/yellow]")
        sys.exit(0)

    cancel = threading.Event()
    reports: list[InspectionReport] = []
    client, inventory = _build_clients(settings)
    with client, inventory:
        for step, kind in enumerate(kinds, 1):
            console.print(Panel(f"Step {step} / {len(kinds)}  ·  Inspecting {kind}", style="bold cyan"))
            try:
                inspector = build_inspector(kind, settings, client, inventory, concurrency=concurrency)
                report = inspector.run(cancel=cancel, timeout=timeout)
            except KeyboardInterrupt:
                cancel.set()
                console.print("[red bold]Interrupted.[/red bold]")
                sys.exit(130)
            except InspectionError as exc:
                console.print(f"[red bold]Error:[/red bold] {kind}: {exc}", soft_wrap=True)
                sys.exit(1)
            reports.append(report)
            if report.results:
                console.print(summary_table(report))
            else:
                console.print(f"  [yellow]No {kind} instances found.[/yellow]")

    out_dir = Path(output_dir).resolve() if output_dir else settings.resolved_output_dir
    written = write_reports(
        reports,
        out_dir,
        list(formats) or settings.report.formats,
        settings.report.filename_template,
        settings.tzinfo,
    )

    console.print()
    total = sum(r.summary.total for r in reports)
    critical = [res for r in reports for res in r.critical_results()]
    warning = [res for r in reports for res in r.warning_results()]
    failed = [res for r in reports for res in r.failed_results()]
    console.print(
        f"  Instances: [bold]{total}[/bold]  "
        f"Critical: [red]{len(critical)}[/red]  "
        f"Warning: [yellow]{len(warning)}[/yellow]  "
        f"Failed: [magenta]{len(failed)}[/magenta]"
    )
    for res in failed:
        console.print(f"  [magenta]✗[/magenta] {res.identifier}: {escape(res.error)}", soft_wrap=True)
    console.print("[green bold]Done![/green bold] Files written:")
    for f in written:
        console.print(f"  • {f}")

    if fail_on_critical and any(r.has_critical for r in reports):
        sys.exit(2)


@main.command()
@click.option(
    "--config", "-c", "config_path", required=True, type=click.Path(exists=True, dir_okay=False),
    help="Path to the YAML configuration file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option(
    "--check-backends", is_flag=True, help="Also check that the metrics backend answers queries."
)
def validate(config_path: str, verbose: bool, check_backends: bool) -> None:
    """Validate the configuration and every metric definition file."""
    _configure_logging(verbose)
    settings = _load_settings(config_path)

    table = Table(title="Metric definitions")
    table.add_column("Type", style="bold")
    table.add_column("Enabled")
    table.add_column("Source")
    table.add_column("Active", justify="right")
    table.add_column("Pending", justify="right")

    enabled = set(settings.enabled_kinds())
    failed = False
    for kind in APPLICATION_KINDS:
        source = settings.metrics_file(kind) or f"built-in metrics/{kind}.yaml"
        try:
            metrics = load_metrics(kind, settings.metrics_file(kind) or None)
        except InspectionError as exc:
            console.print(f"[red bold]Error:[/red bold] {exc}", soft_wrap=True)
            failed = True
            continue
        pending = sum(1 for m in metrics if m.is_pending)
        table.add_row(
            kind,
            "[green]yes[/green]" if kind in enabled else "[dim]no[/dim]",
            source,
            str(len(metrics) - pending),
            str(pending),
        )

    console.print(table)
    if check_backends:
        endpoint = settings.datasources.victoriametrics.endpoint
        client, inventory = _build_clients(settings)
        with client, inventory:
            reachable = client.is_reachable()
        if reachable:
            console.print(f"Metrics backend {endpoint}: [green]reachable[/green]")
        else:
            console.print(f"Metrics backend {endpoint}: [red]unreachable[/red]")
            failed = True
    if failed:
        sys.exit(1)
    console.print("[green bold]Configuration is valid.[/green bold]")


if __name__ == "__main__":
    main()
