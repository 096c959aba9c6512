"""Pydantic models for monitored instances, metric values, alerts and reports."""

from __future__ import annotations

import time
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SerializeAsAny


NA = "N/A"


# ──────────────────────────── Levels and statuses ─────────────────────────────


class AlertLevel(str, Enum):
    """Severity of a single alert, ordered ``normal < warning < critical``."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {AlertLevel.NORMAL: 0, AlertLevel.WARNING: 1, AlertLevel.CRITICAL: 2}


class InstanceStatus(str, Enum):
    """Aggregate status of one inspected instance."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    FAILED = "failed"

    @classmethod
    def from_alerts(cls, alerts: list[Alert]) -> InstanceStatus:
        """Highest severity among *alerts*; critical always wins."""
        worst = max((a.level.severity for a in alerts), default=0)
        if worst >= AlertLevel.CRITICAL.severity:
            return cls.CRITICAL
        if worst >= AlertLevel.WARNING.severity:
            return cls.WARNING
        return cls.NORMAL


class MetricStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    PENDING = "pending"


class MetricFormat(str, Enum):
    PERCENT = "percent"
    SIZE = "size"
    DURATION = "duration"
    NUMBER = "number"


# ──────────────────────────── Metric definitions ──────────────────────────────


class MetricValue(BaseModel):
    """The collected value of one metric for one instance."""

    name: str
    raw_value: float = 0.0
    formatted_value: str = ""
    string_value: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    is_na: bool = False
    status: MetricStatus = MetricStatus.NORMAL
    timestamp: int = 0

    @classmethod
    def na(cls, name: str) -> MetricValue:
        """Placeholder for a pending metric."""
        return cls(name=name, formatted_value=NA, is_na=True, status=MetricStatus.PENDING)

    @classmethod
    def numeric(cls, name: str, value: float, labels: dict[str, str] | None = None) -> MetricValue:
        return cls(name=name, raw_value=value, labels=dict(labels or {}), timestamp=int(time.time()))

    @classmethod
    def extracted(
        cls, name: str, text: str, value: float = 0.0, labels: dict[str, str] | None = None
    ) -> MetricValue:
        return cls(
            name=name,
            raw_value=value,
            string_value=text,
            formatted_value=text,
            labels=dict(labels or {}),
            timestamp=int(time.time()),
        )


class NumericReading(BaseModel):
    """Read the sample's numeric value."""

    def read(self, name: str, labels: dict[str, str], value: float) -> MetricValue | None:
        return MetricValue.numeric(name, value, labels)


class LabelReading(BaseModel):
    """Read the string value of one or more labels, joined with ``", "``.

    Yields nothing for a sample that carries none of the labels.
    """

    keys: list[str]

    def read(self, name: str, labels: dict[str, str], value: float) -> MetricValue | None:
        parts = [labels[k] for k in self.keys if labels.get(k)]
        if not parts:
            return None
        return MetricValue.extracted(name, ", ".join(parts), value, labels)


class MetricDefinition(BaseModel):
    """Static description of one backend query."""

    name: str
    display_name: str = ""
    query: str = ""
    unit: str = ""
    category: str = ""
    format: MetricFormat | None = None
    aggregate: str = Field(default="", description="Only 'max' is supported, with expand_by_label.")
    expand_by_label: str = Field(default="", description="Write one value per distinct label value.")
    cluster_mode: str = Field(default="", description="Empty = applies to every topology.")
    label_extract: list[str] = Field(default_factory=list)
    status: str = ""
    note: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == "pending" or not self.query

    @property
    def label(self) -> str:
        return self.display_name or self.name

    @property
    def extraction(self) -> NumericReading | LabelReading:
        if self.label_extract:
            return LabelReading(keys=self.label_extract)
        return NumericReading()

    def applies_to(self, mode: str) -> bool:
        return not self.cluster_mode or self.cluster_mode == mode


# ──────────────────────────── Identity helpers ────────────────────────────────


def parse_address(address: str) -> tuple[str, int]:
    """Split ``ip:port`` into its parts.

    Raises ``ValueError`` unless there is exactly one host part and one port
    part, the host is non-empty and the port is an integer in 1..65535.
    """
    parts = address.split(":")
    if len(parts) != 2:
        raise ValueError(f"invalid address format: {address!r} (expected ip:port)")
    host, port_text = parts
    if not host:
        raise ValueError(f"empty host in address {address!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in address {address!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range in address {address!r}")
    return host, port


def make_identifier(hostname: str, port: int = 0, container: str = "") -> str:
    """``host:container`` when a container is known, else ``host:port``."""
    if container:
        return f"{hostname}:{container}"
    return f"{hostname}:{port}"


def clean_ident(ident: str) -> str:
    """Strip an ``@ip`` suffix from an inventory ident."""
    return ident.split("@", 1)[0]


# ──────────────────────────── Instances ───────────────────────────────────────


class DiskMount(BaseModel):
    path: str
    total: int = 0


class HostMeta(BaseModel):
    """Host metadata as reported by the inventory."""

    ident: str = ""
    hostname: str
    ip: str = ""
    os: str = ""
    os_version: str = ""
    kernel_version: str = ""
    cpu_cores: int = 0
    cpu_model: str = ""
    memory_total: int = 0
    disk_mounts: list[DiskMount] = Field(default_factory=list)


class Instance(BaseModel):
    """One monitored process, keyed by a unique identifier."""

    identifier: str
    ip: str = ""
    port: int = 0


class HostInstance(Instance):
    meta: HostMeta

    @classmethod
    def from_meta(cls, meta: HostMeta) -> HostInstance:
        return cls(identifier=meta.hostname, ip=meta.ip, meta=meta)


class MySQLInstance(Instance):
    cluster_mode: str = ""
    version: str = ""

    @property
    def address(self) -> str:
        return self.identifier

    @classmethod
    def from_address(cls, address: str, cluster_mode: str = "") -> MySQLInstance:
        ip, port = parse_address(address)
        return cls(identifier=address, ip=ip, port=port, cluster_mode=cluster_mode)


class RedisRole(str, Enum):
    MASTER = "master"
    SLAVE = "slave"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> RedisRole:
        try:
            return cls(value.lower())
        except ValueError:
            return cls.UNKNOWN


class RedisInstance(Instance):
    role: RedisRole = RedisRole.UNKNOWN
    cluster_enabled: bool = False
    version: str = ""

    @property
    def address(self) -> str:
        return self.identifier

    @classmethod
    def from_address(cls, address: str, role: RedisRole = RedisRole.UNKNOWN) -> RedisInstance:
        ip, port = parse_address(address)
        return cls(identifier=address, ip=ip, port=port, role=role)


class NginxInstance(Instance):
    hostname: str
    container: str = ""
    app_type: str = ""
    version: str = ""
    install_path: str = ""
    error_log_path: str = ""


class TomcatInstance(Instance):
    hostname: str
    container: str = ""
    app_type: str = ""
    version: str = ""
    install_path: str = ""
    log_path: str = ""
    jvm_config: str = ""


# ──────────────────────────── Alerts ──────────────────────────────────────────


class Alert(BaseModel):
    """One threshold violation."""

    identifier: str
    metric_name: str
    metric_display_name: str = ""
    current_value: float = 0.0
    formatted_value: str = ""
    warning_threshold: float = 0.0
    critical_threshold: float = 0.0
    level: AlertLevel
    message: str = ""
    labels: dict[str, str] = Field(default_factory=dict)


class AlertSummary(BaseModel):
    total: int = 0
    warning: int = 0
    critical: int = 0

    @classmethod
    def from_alerts(cls, alerts: list[Alert]) -> AlertSummary:
        warning = sum(1 for a in alerts if a.level == AlertLevel.WARNING)
        critical = sum(1 for a in alerts if a.level == AlertLevel.CRITICAL)
        return cls(total=len(alerts), warning=warning, critical=critical)


# ──────────────────────────── Per-instance results ────────────────────────────


class InstanceResult(BaseModel):
    """Everything collected and evaluated for one instance."""

    instance: SerializeAsAny[Instance]
    metrics: dict[str, MetricValue] = Field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.NORMAL
    alerts: list[Alert] = Field(default_factory=list)
    collected_at: datetime | None = None
    error: str = ""

    @property
    def identifier(self) -> str:
        return self.instance.identifier

    def set_metric(self, value: MetricValue) -> None:
        self.metrics[value.name] = value

    def get_metric(self, name: str) -> MetricValue | None:
        return self.metrics.get(name)

    def value_of(self, name: str) -> float | None:
        """Numeric value of a collected metric, ``None`` when absent or N/A."""
        mv = self.metrics.get(name)
        if mv is None or mv.is_na:
            return None
        return mv.raw_value

    def has_value(self, name: str) -> bool:
        return self.value_of(name) is not None


class HostResult(InstanceResult):
    instance: HostInstance


class MySQLResult(InstanceResult):
    instance: MySQLInstance
    max_connections: int = 0
    current_connections: int = 0
    connection_usage: float = 0.0
    mgr_member_count: int = 0
    mgr_state_online: bool = False


class RedisResult(InstanceResult):
    instance: RedisInstance
    connection_status: bool = False
    cluster_enabled: bool = False
    master_link_status: bool = False
    max_clients: int = 0
    connected_clients: int = 0
    connected_slaves: int = 0
    master_port: int = 0
    uptime_seconds: int = 0
    master_repl_offset: int = 0
    slave_repl_offset: int = 0
    replication_lag: int = 0
    offsets_inconsistent: bool = False
    connection_usage: float = 0.0


class UpstreamStatus(BaseModel):
    """Health of one backend inside an Nginx upstream group."""

    upstream_name: str
    backend_address: str
    healthy: bool
    rise_count: int = 0
    fall_count: int = 0


class NginxResult(InstanceResult):
    instance: NginxInstance
    up: bool = False
    active_connections: int = 0
    worker_processes: int = 0
    worker_connections: int = 0
    connection_usage_percent: float = -1.0
    error_page_4xx: bool = False
    error_page_5xx: bool = False
    non_root_user: bool = False
    last_error_timestamp: int = 0
    last_error_time_formatted: str = ""
    upstreams: list[UpstreamStatus] = Field(default_factory=list)


class TomcatResult(InstanceResult):
    instance: TomcatInstance
    up: bool = False
    connections: int = 0
    uptime_seconds: int = 0
    uptime_formatted: str = ""
    last_error_timestamp: int = 0
    last_error_time_formatted: str = ""
    non_root_user: bool = False


# ──────────────────────────── Report container ────────────────────────────────


class InspectionSummary(BaseModel):
    total: int = 0
    normal: int = 0
    warning: int = 0
    critical: int = 0
    failed: int = 0

    @classmethod
    def from_results(cls, results: list[InstanceResult]) -> InspectionSummary:
        summary = cls(total=len(results))
        for r in results:
            setattr(summary, r.status.value, getattr(summary, r.status.value) + 1)
        return summary


class InspectionReport(BaseModel):
    """Finalized output of one inspection run for one application type."""

    kind: str
    inspection_time: datetime
    duration_seconds: float = 0.0
    summary: InspectionSummary = Field(default_factory=InspectionSummary)
    results: list[SerializeAsAny[InstanceResult]] = Field(default_factory=list)
    alerts: list[Alert] = Field(default_factory=list)
    alert_summary: AlertSummary = Field(default_factory=AlertSummary)
    version: str = "dev"

    def add_result(self, result: InstanceResult) -> None:
        self.results.append(result)
        self.alerts.extend(result.alerts)
        self.summary = InspectionSummary.from_results(self.results)
        self.alert_summary = AlertSummary.from_alerts(self.alerts)

    def finalize(self, end_time: datetime) -> None:
        self.duration_seconds = max((end_time - self.inspection_time).total_seconds(), 0.0)
        self.summary = InspectionSummary.from_results(self.results)
        self.alert_summary = AlertSummary.from_alerts(self.alerts)

    def get_result(self, identifier: str) -> InstanceResult | None:
        for r in self.results:
            if r.identifier == identifier:
                return r
        return None

    def critical_results(self) -> list[InstanceResult]:
        return [r for r in self.results if r.status == InstanceStatus.CRITICAL]

    def warning_results(self) -> list[InstanceResult]:
        return [r for r in self.results if r.status == InstanceStatus.WARNING]

    def failed_results(self) -> list[InstanceResult]:
        return [r for r in self.results if r.status == InstanceStatus.FAILED]

    @property
    def has_critical(self) -> bool:
        return self.alert_summary.critical > 0

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
