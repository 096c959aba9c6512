"""Shared threshold evaluation, status aggregation and value formatting."""

from __future__ import annotations

import logging
import time
from datetime import datetime, tzinfo
from typing import Callable, Generic, TypeVar

from pydantic import BaseModel, Field

from infra_inspector.models import (
    Alert,
    AlertLevel,
    InstanceResult,
    InstanceStatus,
    MetricDefinition,
)

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=InstanceResult)

NO_ERRORS = "no errors"


# ── Formatting ───────────────────────────────────────────────────────────────


def format_percent(value: float) -> str:
    return f"{value:.1f}%"


def format_bytes(size: float) -> str:
    size = int(size)
    for unit, factor in (("TB", 1 << 40), ("GB", 1 << 30), ("MB", 1 << 20), ("KB", 1 << 10)):
        if abs(size) >= factor:
            return f"{size / factor:.2f} {unit}"
    return f"{size} B"


def format_duration(seconds: float) -> str:
    """Coarse human duration such as ``3d 2h 5m``."""
    total = max(int(seconds), 0)
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_uptime(seconds: float) -> str:
    """Clock-style uptime such as ``3d 02:03:04``."""
    total = max(int(seconds), 0)
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    clock = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{days}d {clock}" if days else clock


def format_timestamp(ts: float, tz: tzinfo | None) -> str:
    if ts <= 0:
        return NO_ERRORS
    return datetime.fromtimestamp(ts, tz).strftime("%Y-%m-%d %H:%M:%S")


def format_number(value: float) -> str:
    if value == int(value):
        return f"{value:.0f}"
    return f"{value:.2f}"


# ── Levels ───────────────────────────────────────────────────────────────────


def ascending_level(value: float, warning: float, critical: float) -> AlertLevel:
    """Higher is worse; boundaries belong to the tier they reach."""
    if value >= critical:
        return AlertLevel.CRITICAL
    if value >= warning:
        return AlertLevel.WARNING
    return AlertLevel.NORMAL


def recency_level(
    timestamp: float, now: float, warning_minutes: int, critical_minutes: int
) -> tuple[AlertLevel, int]:
    """Level for the time since the last error; more recent is worse.

    Returns the level and the elapsed whole minutes.  A zero timestamp means
    no error was ever recorded.
    """
    if timestamp <= 0:
        return AlertLevel.NORMAL, 0
    minutes = int((now - timestamp) // 60)
    if minutes <= critical_minutes:
        return AlertLevel.CRITICAL, minutes
    if minutes <= warning_minutes:
        return AlertLevel.WARNING, minutes
    return AlertLevel.NORMAL, minutes


def level_word(level: AlertLevel) -> str:
    return "critical" if level == AlertLevel.CRITICAL else "warning"


# ── Evaluator ────────────────────────────────────────────────────────────────


class EvaluationResult(BaseModel):
    identifier: str
    status: InstanceStatus
    alerts: list[Alert] = Field(default_factory=list)


class BaseEvaluator(Generic[ResultT]):
    """Turns one instance result into leveled alerts and a status.

    Subclasses implement :meth:`check`, returning alerts in a fixed rule
    order.  :meth:`evaluate` writes the status and alerts back onto the
    result, so evaluating the same result twice yields the same outcome.
    """

    # Fallback display names for rule keys without a metric definition.
    display_names: dict[str, str] = {}

    def __init__(
        self,
        metrics: list[MetricDefinition] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._defs = {m.name: m for m in metrics or []}
        self._clock = clock

    def display_name(self, name: str) -> str:
        definition = self._defs.get(name)
        if definition is not None and definition.display_name:
            return definition.display_name
        return self.display_names.get(name, name)

    def check(self, result: ResultT) -> list[Alert]:
        raise NotImplementedError

    def evaluate(self, result: ResultT) -> EvaluationResult:
        if result.error:
            logger.debug("Skipping evaluation of failed instance %s: %s", result.identifier, result.error)
            alerts: list[Alert] = []
            status = InstanceStatus.FAILED
        else:
            alerts = self.check(result)
            status = InstanceStatus.from_alerts(alerts)
        result.status = status
        result.alerts = alerts
        return EvaluationResult(identifier=result.identifier, status=status, alerts=list(alerts))

    def evaluate_all(self, results: dict[str, ResultT]) -> list[EvaluationResult]:
        return [self.evaluate(r) for r in results.values()]

    def alert(
        self,
        result: ResultT,
        metric_name: str,
        level: AlertLevel,
        message: str,
        *,
        value: float = 0.0,
        formatted: str = "",
        warning: float = 0.0,
        critical: float = 0.0,
        labels: dict[str, str] | None = None,
    ) -> Alert:
        return Alert(
            identifier=result.identifier,
            metric_name=metric_name,
            metric_display_name=self.display_name(metric_name),
            current_value=value,
            formatted_value=formatted,
            warning_threshold=warning,
            critical_threshold=critical,
            level=level,
            message=message,
            labels=dict(labels or {}),
        )

    def utilization_alert(
        self,
        result: ResultT,
        metric_name: str,
        usage: float,
        warning: float,
        critical: float,
    ) -> Alert | None:
        level = ascending_level(usage, warning, critical)
        if level == AlertLevel.NORMAL:
            return None
        limit = critical if level == AlertLevel.CRITICAL else warning
        return self.alert(
            result,
            metric_name,
            level,
            f"{self.display_name(metric_name)} is {usage:.1f}%, "
            f"at or above the {level_word(level)} threshold of {limit:g}%",
            value=usage,
            formatted=format_percent(usage),
            warning=warning,
            critical=critical,
        )

    def recency_alert(
        self,
        result: ResultT,
        metric_name: str,
        timestamp: float,
        warning_minutes: int,
        critical_minutes: int,
        tz: tzinfo | None,
    ) -> Alert | None:
        level, minutes = recency_level(timestamp, self._clock(), warning_minutes, critical_minutes)
        if level == AlertLevel.NORMAL:
            return None
        limit = critical_minutes if level == AlertLevel.CRITICAL else warning_minutes
        return self.alert(
            result,
            metric_name,
            level,
            f"last error logged {minutes} minutes ago "
            f"({format_timestamp(timestamp, tz)}), within the {level_word(level)} "
            f"window of {limit} minutes",
            value=timestamp,
            formatted=f"{minutes} minutes ago",
            warning=warning_minutes,
            critical=critical_minutes,
        )

    def flag_alert(
        self, result: ResultT, metric_name: str, ok: bool, message: str, *, bad: str
    ) -> Alert | None:
        """Single-tier critical check for a boolean that must be true."""
        if ok:
            return None
        return self.alert(
            result,
            metric_name,
            AlertLevel.CRITICAL,
            message,
            value=0,
            formatted=bad,
            warning=1,
            critical=1,
        )
