"""Render inspection reports as JSON / HTML files and rich console tables."""

from __future__ import annotations

import json
import logging
from datetime import datetime, tzinfo
from importlib.resources import files as importlib_files
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape
from rich.table import Table

from infra_inspector import __version__
from infra_inspector.models import InspectionReport, InstanceStatus

logger = logging.getLogger(__name__)

# Resolve the templates directory via importlib.resources so it works in
# both editable installs and built wheels.
_TEMPLATES_REF = importlib_files("infra_inspector") / "templates"

_STATUS_STYLE = {
    InstanceStatus.NORMAL: "[green]NORMAL[/green]",
    InstanceStatus.WARNING: "[yellow]WARNING[/yellow]",
    InstanceStatus.CRITICAL: "[red]CRITICAL[/red]",
    InstanceStatus.FAILED: "[magenta]FAILED[/magenta]",
}


def _get_jinja_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATES_REF)),
        autoescape=select_autoescape(default=True),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def report_basename(template: str, start: datetime) -> str:
    """Expand ``{date}`` in *template* to ``YYYYMMDD_HHMMSS``."""
    return template.replace("{date}", start.strftime("%Y%m%d_%H%M%S"))


def _start_time(reports: list[InspectionReport], tz: tzinfo | None) -> datetime:
    if not reports:
        return datetime.now(tz)
    start = min(r.inspection_time for r in reports)
    return start.astimezone(tz) if tz is not None else start


def render_json(reports: list[InspectionReport], generated_at: datetime) -> str:
    doc: dict[str, Any] = {
        "version": __version__,
        "generated_at": generated_at.isoformat(),
        "reports": [r.to_dict() for r in reports],
    }
    return json.dumps(doc, indent=2, ensure_ascii=False)


def render_html(reports: list[InspectionReport], generated_at: datetime, tz: tzinfo | None) -> str:
    env = _get_jinja_env()
    template = env.get_template("report.html.j2")
    return template.render(
        reports=reports,
        generated_at=generated_at.strftime("%Y-%m-%d %H:%M:%S %Z"),
        version=__version__,
        tz=tz,
    )


def write_reports(
    reports: list[InspectionReport],
    output_dir: Path,
    formats: list[str],
    filename_template: str,
    tz: tzinfo | None = None,
) -> list[str]:
    """Write one file per format to *output_dir* and return the written paths."""
    output_dir.mkdir(parents=True, exist_ok=True)
    start = _start_time(reports, tz)
    base = report_basename(filename_template, start)
    written: list[str] = []

    for fmt in formats:
        if fmt == "json":
            content = render_json(reports, start)
        elif fmt == "html":
            content = render_html(reports, start, tz)
        else:
            raise ValueError(f"unsupported report format: {fmt}")
        path = output_dir / f"{base}.{fmt}"
        path.write_text(content, encoding="utf-8")
        written.append(str(path))
        logger.info("Wrote %s", path)

    return written


def summary_table(report: InspectionReport) -> Table:
    """Per-instance status table for console output."""
    s = report.summary
    table = Table(
        title=f"{report.kind}: {s.total} instances, {report.alert_summary.total} alerts",
        show_lines=False,
    )
    table.add_column("Instance", style="bold")
    table.add_column("Address")
    table.add_column("Status")
    table.add_column("Alerts", justify="right")
    table.add_column("Details")

    for result in report.results:
        inst = result.instance
        address = f"{inst.ip}:{inst.port}" if inst.port else inst.ip
        if result.error:
            details = result.error
        else:
            details = "; ".join(a.message for a in result.alerts[:2])
            if len(result.alerts) > 2:
                details += f" (+{len(result.alerts) - 2} more)"
        table.add_row(
            result.identifier,
            address or "-",
            _STATUS_STYLE.get(result.status, result.status.value),
            str(len(result.alerts)),
            details[:120],
        )
    return table
