"""Host evaluator: system resource thresholds and value formatting."""

from __future__ import annotations

from infra_inspector.config import HostThresholds, ThresholdPair
from infra_inspector.evaluators.base import (
    BaseEvaluator,
    ascending_level,
    format_bytes,
    format_duration,
    format_number,
    format_percent,
    level_word,
)
from infra_inspector.models import (
    NA,
    Alert,
    AlertLevel,
    HostResult,
    MetricDefinition,
    MetricFormat,
    MetricStatus,
    MetricValue,
)

# Metric name -> HostThresholds field.
THRESHOLD_FIELDS = {
    "cpu_usage": "cpu_usage",
    "memory_usage": "memory_usage",
    "disk_usage_max": "disk_usage",
    "processes_zombies": "zombie_processes",
    "load_per_core": "load_per_core",
}

_METRIC_STATUS = {
    AlertLevel.NORMAL: MetricStatus.NORMAL,
    AlertLevel.WARNING: MetricStatus.WARNING,
    AlertLevel.CRITICAL: MetricStatus.CRITICAL,
}


def base_name(name: str) -> str:
    """``disk_usage:/data`` and ``disk_usage_max`` both map to ``disk_usage``."""
    name = name.split(":", 1)[0]
    if name.endswith("_max"):
        return name[: -len("_max")]
    return name


class HostEvaluator(BaseEvaluator[HostResult]):
    display_names = {
        "cpu_usage": "CPU usage",
        "memory_usage": "Memory usage",
        "disk_usage_max": "Disk usage (max)",
        "processes_zombies": "Zombie processes",
        "load_per_core": "Load per core",
    }

    def __init__(
        self, thresholds: HostThresholds, metrics: list[MetricDefinition] | None = None, **kwargs
    ) -> None:
        super().__init__(metrics, **kwargs)
        self.thresholds = thresholds

    def thresholds_for(self, name: str) -> ThresholdPair | None:
        field = THRESHOLD_FIELDS.get(name)
        if field is None and ":" in name:
            # Expanded values are graded against their aggregate's thresholds.
            field = THRESHOLD_FIELDS.get(base_name(name) + "_max")
        if field is None:
            return None
        return getattr(self.thresholds, field)

    def display_name(self, name: str) -> str:
        if name in self._defs or name in self.display_names:
            return super().display_name(name)
        label = super().display_name(base_name(name))
        if ":" in name:
            return f"{label} ({name.split(':', 1)[1]})"
        return label

    def format_value(self, mv: MetricValue) -> str:
        if mv.is_na:
            return NA
        if mv.string_value:
            return mv.string_value
        definition = self._defs.get(mv.name) or self._defs.get(base_name(mv.name))
        fmt = definition.format if definition is not None else None
        if fmt == MetricFormat.PERCENT:
            return format_percent(mv.raw_value)
        if fmt == MetricFormat.SIZE:
            return format_bytes(mv.raw_value)
        if fmt == MetricFormat.DURATION:
            return format_duration(mv.raw_value)
        return format_number(mv.raw_value)

    def check(self, result: HostResult) -> list[Alert]:
        alerts: list[Alert] = []
        for name in sorted(result.metrics):
            mv = result.metrics[name]
            mv.formatted_value = self.format_value(mv)
            if mv.is_na:
                mv.status = MetricStatus.PENDING
                continue
            pair = self.thresholds_for(name)
            if pair is None:
                mv.status = MetricStatus.NORMAL
                continue
            level = ascending_level(mv.raw_value, pair.warning, pair.critical)
            mv.status = _METRIC_STATUS[level]
            if level == AlertLevel.NORMAL or name not in THRESHOLD_FIELDS:
                continue
            limit = pair.critical if level == AlertLevel.CRITICAL else pair.warning
            definition = self._defs.get(name) or self._defs.get(base_name(name))
            unit = definition.unit if definition is not None else ""
            alerts.append(
                self.alert(
                    result,
                    name,
                    level,
                    f"{self.display_name(name)} is {mv.formatted_value}, at or above the "
                    f"{level_word(level)} threshold of {limit:g}{unit}",
                    value=mv.raw_value,
                    formatted=mv.formatted_value,
                    warning=pair.warning,
                    critical=pair.critical,
                    labels=mv.labels,
                )
            )
        return alerts
