"""Nginx evaluator."""

from __future__ import annotations

from datetime import tzinfo

from infra_inspector.config import NginxThresholds
from infra_inspector.evaluators.base import BaseEvaluator, format_timestamp
from infra_inspector.models import Alert, AlertLevel, MetricDefinition, NginxResult


class NginxEvaluator(BaseEvaluator[NginxResult]):
    """Liveness, worker utilization, error recency, configuration hygiene and
    upstream backend health for Nginx instances.

    Parameters
    ----------
    thresholds : NginxThresholds
        Utilization percentages and error-recency windows.
    metrics : list[MetricDefinition] | None
        Used to resolve display names.
    tz : tzinfo | None
        Timezone for the formatted last-error time.
    """

    display_names = {
        "nginx_up": "Nginx up",
        "connection_usage": "Connection usage",
        "nginx_last_error_timestamp": "Last error",
        "nginx_error_page_4xx": "4xx error page",
        "nginx_error_page_5xx": "5xx error page",
        "nginx_non_root_user": "Non-root user",
        "upstream_status": "Upstream backend",
    }

    def __init__(
        self,
        thresholds: NginxThresholds,
        metrics: list[MetricDefinition] | None = None,
        tz: tzinfo | None = None,
        **kwargs,
    ) -> None:
        super().__init__(metrics, **kwargs)
        self.thresholds = thresholds
        self.tz = tz

    def check(self, result: NginxResult) -> list[Alert]:
        t = self.thresholds
        result.last_error_time_formatted = format_timestamp(result.last_error_timestamp, self.tz)

        rules: list[Alert | None] = []
        if result.has_value("nginx_up"):
            rules.append(self.flag_alert(
                result, "nginx_up", result.up, "Nginx is not running", bad="down"
            ))
        if result.connection_usage_percent >= 0:
            rules.append(self.utilization_alert(
                result,
                "connection_usage",
                result.connection_usage_percent,
                t.connection_usage_warning,
                t.connection_usage_critical,
            ))
        rules.append(self.recency_alert(
            result,
            "nginx_last_error_timestamp",
            result.last_error_timestamp,
            t.last_error_warning_minutes,
            t.last_error_critical_minutes,
            self.tz,
        ))
        if result.has_value("nginx_error_page_4xx"):
            rules.append(self.flag_alert(
                result,
                "nginx_error_page_4xx",
                result.error_page_4xx,
                "no custom error page configured for 4xx responses",
                bad="not configured",
            ))
        if result.has_value("nginx_error_page_5xx"):
            rules.append(self.flag_alert(
                result,
                "nginx_error_page_5xx",
                result.error_page_5xx,
                "no custom error page configured for 5xx responses",
                bad="not configured",
            ))
        if result.has_value("nginx_non_root_user"):
            rules.append(self.flag_alert(
                result,
                "nginx_non_root_user",
                result.non_root_user,
                "Nginx worker processes run as root",
                bad="root",
            ))
        alerts = [a for a in rules if a is not None]
        alerts.extend(self.check_upstreams(result))
        return alerts

    def check_upstreams(self, result: NginxResult) -> list[Alert]:
        """One critical alert per unhealthy backend."""
        alerts: list[Alert] = []
        for up in result.upstreams:
            if up.healthy:
                continue
            alerts.append(self.alert(
                result,
                "upstream_status",
                AlertLevel.CRITICAL,
                f"backend {up.backend_address} in upstream {up.upstream_name} is down "
                f"(failed checks: {up.fall_count})",
                value=0,
                formatted="down",
                warning=1,
                critical=1,
                labels={"upstream": up.upstream_name, "backend": up.backend_address},
            ))
        return alerts
