"""Application configuration, validation and metric-definition loading."""

from __future__ import annotations

import os
from importlib.resources import files as importlib_files
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError

from infra_inspector.errors import ConfigError
from infra_inspector.matching import InstanceFilter
from infra_inspector.models import MetricDefinition
from infra_inspector.prometheus import HostFilter


DEFAULT_CONCURRENCY = 20
DEFAULT_TIMEZONE = "Asia/Shanghai"
DEFAULT_OUTPUT_DIR = "reports"
DEFAULT_FILENAME_TEMPLATE = "inspection_report_{date}"

APPLICATION_KINDS = ("host", "mysql", "redis", "nginx", "tomcat")
MYSQL_CLUSTER_MODES = ("mgr", "dual-master", "master-slave")
REDIS_CLUSTER_MODES = ("3m3s", "3m6s")
REPORT_FORMATS = ("json", "html")
LOG_LEVELS = ("debug", "info", "warn", "error")
LOG_FORMATS = ("console", "json")

# Instance filter pattern fields each application matches discovered series on.
FILTER_PATTERN_FIELDS = {
    "mysql": ("address_patterns",),
    "redis": ("address_patterns",),
    "nginx": ("hostname_patterns", "container_patterns"),
    "tomcat": ("hostname_patterns", "container_patterns"),
}

_METRICS_REF = importlib_files("infra_inspector") / "metrics"


# ── Datasources ──────────────────────────────────────────────────────────────


class N9EConfig(BaseModel):
    endpoint: str = ""
    token: str = Field(default_factory=lambda: os.environ.get("N9E_TOKEN", ""))
    timeout: float = 30.0
    query: str = Field(default="", description="Inventory filter expression, e.g. 'items=shop'.")


class VictoriaMetricsConfig(BaseModel):
    endpoint: str = ""
    timeout: float = 30.0


class DatasourcesConfig(BaseModel):
    n9e: N9EConfig = Field(default_factory=N9EConfig)
    victoriametrics: VictoriaMetricsConfig = Field(default_factory=VictoriaMetricsConfig)


# ── Host inspection ──────────────────────────────────────────────────────────


class ThresholdPair(BaseModel):
    warning: float
    critical: float


class HostThresholds(BaseModel):
    cpu_usage: ThresholdPair = Field(default_factory=lambda: ThresholdPair(warning=70, critical=90))
    memory_usage: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(warning=70, critical=90)
    )
    disk_usage: ThresholdPair = Field(default_factory=lambda: ThresholdPair(warning=70, critical=90))
    zombie_processes: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(warning=1, critical=10)
    )
    load_per_core: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(warning=0.7, critical=1.0)
    )


class InspectionConfig(BaseModel):
    concurrency: int = DEFAULT_CONCURRENCY
    host_timeout: float = Field(
        default=10.0,
        description="Per-wave budget in seconds, never shorter than one query with its retries.",
    )
    host_filter: HostFilter = Field(default_factory=HostFilter)


# ── Applications ─────────────────────────────────────────────────────────────


class MySQLThresholds(BaseModel):
    connection_usage_warning: float = 70
    connection_usage_critical: float = 90
    mgr_member_count_expected: int = 3
    mgr_member_warning_drop: int = Field(default=1, description="Members missing for a warning.")
    mgr_member_critical_drop: int = Field(default=2, description="Members missing for a critical.")


class MySQLConfig(BaseModel):
    enabled: bool = False
    cluster_mode: str = ""
    instance_filter: InstanceFilter = Field(default_factory=InstanceFilter)
    thresholds: MySQLThresholds = Field(default_factory=MySQLThresholds)
    metrics_file: str = ""


class RedisThresholds(BaseModel):
    connection_usage_warning: float = 70
    connection_usage_critical: float = 90
    replication_lag_warning: int = 1024 * 1024
    replication_lag_critical: int = 10 * 1024 * 1024


class RedisConfig(BaseModel):
    enabled: bool = False
    cluster_mode: str = ""
    instance_filter: InstanceFilter = Field(default_factory=InstanceFilter)
    thresholds: RedisThresholds = Field(default_factory=RedisThresholds)
    metrics_file: str = ""


class NginxThresholds(BaseModel):
    connection_usage_warning: float = 70
    connection_usage_critical: float = 90
    last_error_warning_minutes: int = 60
    last_error_critical_minutes: int = 10


class NginxConfig(BaseModel):
    enabled: bool = False
    instance_filter: InstanceFilter = Field(default_factory=InstanceFilter)
    thresholds: NginxThresholds = Field(default_factory=NginxThresholds)
    metrics_file: str = ""


class TomcatThresholds(BaseModel):
    last_error_warning_minutes: int = 60
    last_error_critical_minutes: int = 10


class TomcatConfig(BaseModel):
    enabled: bool = False
    instance_filter: InstanceFilter = Field(default_factory=InstanceFilter)
    thresholds: TomcatThresholds = Field(default_factory=TomcatThresholds)
    metrics_file: str = ""


# ── Ambient ──────────────────────────────────────────────────────────────────


class ReportConfig(BaseModel):
    output_dir: str = DEFAULT_OUTPUT_DIR
    formats: list[str] = Field(default_factory=lambda: list(REPORT_FORMATS))
    filename_template: str = DEFAULT_FILENAME_TEMPLATE
    timezone: str = DEFAULT_TIMEZONE


class LoggingConfig(BaseModel):
    level: str = "info"
    format: str = "console"


class RetryConfig(BaseModel):
    max_retries: int = 3
    base_delay: float = 1.0


class HTTPConfig(BaseModel):
    retry: RetryConfig = Field(default_factory=RetryConfig)


class Settings(BaseModel):
    """Runtime settings resolved from the YAML config file and CLI flags."""

    datasources: DatasourcesConfig = Field(default_factory=DatasourcesConfig)
    inspection: InspectionConfig = Field(default_factory=InspectionConfig)
    thresholds: HostThresholds = Field(default_factory=HostThresholds)
    report: ReportConfig = Field(default_factory=ReportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    http: HTTPConfig = Field(default_factory=HTTPConfig)
    mysql: MySQLConfig = Field(default_factory=MySQLConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    nginx: NginxConfig = Field(default_factory=NginxConfig)
    tomcat: TomcatConfig = Field(default_factory=TomcatConfig)
    host_metrics_file: str = ""

    @property
    def tzinfo(self) -> ZoneInfo:
        return load_timezone(self.report.timezone)

    @property
    def resolved_output_dir(self) -> Path:
        return Path(self.report.output_dir).resolve()

    def enabled_kinds(self) -> list[str]:
        """Host inspection always runs; applications only when enabled."""
        return ["host"] + [k for k in APPLICATION_KINDS[1:] if getattr(self, k).enabled]

    def metrics_file(self, kind: str) -> str:
        if kind not in APPLICATION_KINDS:
            raise ConfigError(f"unknown inspection kind {kind!r}")
        if kind == "host":
            return self.host_metrics_file
        return getattr(self, kind).metrics_file

    def check(self) -> None:
        """Check cross-field rules, raising one ``ConfigError`` listing every problem."""
        errors = _collect_errors(self)
        if errors:
            raise ConfigError("invalid configuration:\n  " + "\n  ".join(errors))


def load_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"unknown timezone {name!r}") from exc


def _check_pair(errors: list[str], path: str, warning: float, critical: float) -> None:
    if warning >= critical:
        errors.append(f"{path}: warning ({warning:g}) must be less than critical ({critical:g})")


def _check_recency(errors: list[str], path: str, warning: int, critical: int) -> None:
    if critical <= 0 or warning <= 0:
        errors.append(f"{path}: minutes must be positive")
    elif critical >= warning:
        errors.append(
            f"{path}: critical minutes ({critical}) must be less than warning minutes ({warning})"
        )


def _collect_errors(s: Settings) -> list[str]:
    errors: list[str] = []

    if not s.datasources.victoriametrics.endpoint:
        errors.append("datasources.victoriametrics.endpoint: required")
    if not s.datasources.n9e.endpoint:
        errors.append("datasources.n9e.endpoint: required")
    if not 1 <= s.inspection.concurrency <= 100:
        errors.append("inspection.concurrency: must be between 1 and 100")
    if s.inspection.host_timeout <= 0:
        errors.append("inspection.host_timeout: must be positive")

    for name in HostThresholds.model_fields:
        pair: ThresholdPair = getattr(s.thresholds, name)
        _check_pair(errors, f"thresholds.{name}", pair.warning, pair.critical)

    if not s.report.formats:
        errors.append("report.formats: at least one format is required")
    for fmt in s.report.formats:
        if fmt not in REPORT_FORMATS:
            errors.append(f"report.formats: unsupported format {fmt!r}")
    try:
        load_timezone(s.report.timezone)
    except ConfigError as exc:
        errors.append(f"report.timezone: {exc}")

    if s.logging.level not in LOG_LEVELS:
        errors.append(f"logging.level: must be one of {', '.join(LOG_LEVELS)}")
    if s.logging.format not in LOG_FORMATS:
        errors.append(f"logging.format: must be one of {', '.join(LOG_FORMATS)}")
    if not 0 <= s.http.retry.max_retries <= 10:
        errors.append("http.retry.max_retries: must be between 0 and 10")
    if s.http.retry.base_delay < 0:
        errors.append("http.retry.base_delay: must not be negative")

    if s.mysql.enabled:
        if s.mysql.cluster_mode not in MYSQL_CLUSTER_MODES:
            errors.append(
                f"mysql.cluster_mode: must be one of {', '.join(MYSQL_CLUSTER_MODES)}"
            )
        t = s.mysql.thresholds
        _check_pair(
            errors,
            "mysql.thresholds.connection_usage",
            t.connection_usage_warning,
            t.connection_usage_critical,
        )
        if t.mgr_member_count_expected < 1:
            errors.append("mysql.thresholds.mgr_member_count_expected: must be at least 1")
        if not 0 < t.mgr_member_warning_drop < t.mgr_member_critical_drop:
            errors.append(
                "mysql.thresholds.mgr_member_drop: warning drop must be positive "
                "and less than critical drop"
            )

    if s.redis.enabled:
        if s.redis.cluster_mode not in REDIS_CLUSTER_MODES:
            errors.append(
                f"redis.cluster_mode: must be one of {', '.join(REDIS_CLUSTER_MODES)}"
            )
        t = s.redis.thresholds
        _check_pair(
            errors,
            "redis.thresholds.connection_usage",
            t.connection_usage_warning,
            t.connection_usage_critical,
        )
        _check_pair(
            errors,
            "redis.thresholds.replication_lag",
            t.replication_lag_warning,
            t.replication_lag_critical,
        )

    if s.nginx.enabled:
        t = s.nginx.thresholds
        _check_pair(
            errors,
            "nginx.thresholds.connection_usage",
            t.connection_usage_warning,
            t.connection_usage_critical,
        )
        _check_recency(
            errors,
            "nginx.thresholds.last_error",
            t.last_error_warning_minutes,
            t.last_error_critical_minutes,
        )

    if s.tomcat.enabled:
        t = s.tomcat.thresholds
        _check_recency(
            errors,
            "tomcat.thresholds.last_error",
            t.last_error_warning_minutes,
            t.last_error_critical_minutes,
        )

    for kind, supported in FILTER_PATTERN_FIELDS.items():
        app = getattr(s, kind)
        if not app.enabled:
            continue
        for field in ("address_patterns", "hostname_patterns", "container_patterns"):
            if field not in supported and getattr(app.instance_filter, field):
                errors.append(
                    f"{kind}.instance_filter.{field}: not supported for {kind}, "
                    f"use {' or '.join(supported)}"
                )

    return errors


def _read_yaml(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc


def load_config(path: str | Path) -> Settings:
    """Load and validate the YAML configuration at *path*."""
    raw = _read_yaml(Path(path)) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    try:
        settings = Settings(**raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration in {path}:\n{exc}") from exc
    settings.check()
    return settings


def load_metrics(kind: str, path: str | Path | None = None) -> list[MetricDefinition]:
    """Load the metric definitions for *kind*.

    Reads *path* when given, otherwise the packaged ``metrics/<kind>.yaml``.
    """
    if path:
        source = str(path)
        raw = _read_yaml(Path(path))
    else:
        source = f"metrics/{kind}.yaml"
        try:
            raw = yaml.safe_load((_METRICS_REF / f"{kind}.yaml").read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"no packaged metric definitions for {kind!r}") from exc

    entries = (raw or {}).get("metrics") if isinstance(raw, dict) else None
    if not entries:
        raise ConfigError(f"{source}: no metrics defined")

    definitions: list[MetricDefinition] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ConfigError(f"{source}: metrics[{idx}] is missing 'name'")
        if not entry.get("display_name"):
            raise ConfigError(f"{source}: metric {entry['name']!r} is missing 'display_name'")
        try:
            definitions.append(MetricDefinition(**entry))
        except ValidationError as exc:
            raise ConfigError(f"{source}: metric {entry['name']!r} is invalid: {exc}") from exc
    return definitions
