"""Tomcat evaluator."""

from __future__ import annotations

from datetime import tzinfo

from infra_inspector.config import TomcatThresholds
from infra_inspector.evaluators.base import BaseEvaluator, format_timestamp, format_uptime
from infra_inspector.models import Alert, MetricDefinition, TomcatResult


class TomcatEvaluator(BaseEvaluator[TomcatResult]):
    display_names = {
        "tomcat_up": "Tomcat up",
        "tomcat_non_root_user": "Non-root user",
        "tomcat_last_error_timestamp": "Last error",
    }

    def __init__(
        self,
        thresholds: TomcatThresholds,
        metrics: list[MetricDefinition] | None = None,
        tz: tzinfo | None = None,
        **kwargs,
    ) -> None:
        super().__init__(metrics, **kwargs)
        self.thresholds = thresholds
        self.tz = tz

    def check(self, result: TomcatResult) -> list[Alert]:
        t = self.thresholds
        result.uptime_formatted = format_uptime(result.uptime_seconds) if result.uptime_seconds else ""
        result.last_error_time_formatted = format_timestamp(result.last_error_timestamp, self.tz)

        rules: list[Alert | None] = []
        if result.has_value("tomcat_up"):
            rules.append(self.flag_alert(
                result, "tomcat_up", result.up, "Tomcat is not running", bad="down"
            ))
        if result.has_value("tomcat_non_root_user"):
            rules.append(self.flag_alert(
                result,
                "tomcat_non_root_user",
                result.non_root_user,
                "Tomcat runs as root",
                bad="root",
            ))
        rules.append(self.recency_alert(
            result,
            "tomcat_last_error_timestamp",
            result.last_error_timestamp,
            t.last_error_warning_minutes,
            t.last_error_critical_minutes,
            self.tz,
        ))
        return [a for a in rules if a is not None]
