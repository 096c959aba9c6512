"""MySQL evaluator: connection usage and MGR topology checks."""

from __future__ import annotations

from infra_inspector.config import MySQLThresholds
from infra_inspector.evaluators.base import BaseEvaluator
from infra_inspector.models import Alert, AlertLevel, MetricDefinition, MySQLResult


class MySQLEvaluator(BaseEvaluator[MySQLResult]):
    display_names = {
        "connection_usage": "Connection usage",
        "mgr_member_count": "MGR member count",
        "mgr_state_online": "MGR member state",
    }

    def __init__(
        self, thresholds: MySQLThresholds, metrics: list[MetricDefinition] | None = None, **kwargs
    ) -> None:
        super().__init__(metrics, **kwargs)
        self.thresholds = thresholds

    def check(self, result: MySQLResult) -> list[Alert]:
        rules = [self.check_connection_usage(result)]
        if result.instance.cluster_mode == "mgr":
            rules.append(self.check_mgr_members(result))
            rules.append(self.check_mgr_online(result))
        return [a for a in rules if a is not None]

    def check_connection_usage(self, result: MySQLResult) -> Alert | None:
        if result.max_connections <= 0:
            result.connection_usage = 0.0
            return None
        usage = result.current_connections * 100 / result.max_connections
        result.connection_usage = usage
        return self.utilization_alert(
            result,
            "connection_usage",
            usage,
            self.thresholds.connection_usage_warning,
            self.thresholds.connection_usage_critical,
        )

    def check_mgr_members(self, result: MySQLResult) -> Alert | None:
        if not result.has_value("mgr_member_count"):
            return None
        t = self.thresholds
        expected = t.mgr_member_count_expected
        warning_at = expected - t.mgr_member_warning_drop
        critical_at = expected - t.mgr_member_critical_drop
        count = result.mgr_member_count
        if count <= critical_at:
            level = AlertLevel.CRITICAL
        elif count <= warning_at:
            level = AlertLevel.WARNING
        else:
            return None
        return self.alert(
            result,
            "mgr_member_count",
            level,
            f"MGR group has {count} online members, expected {expected}",
            value=count,
            formatted=str(count),
            warning=warning_at,
            critical=critical_at,
        )

    def check_mgr_online(self, result: MySQLResult) -> Alert | None:
        if not result.has_value("mgr_state_online"):
            return None
        return self.flag_alert(
            result,
            "mgr_state_online",
            result.mgr_state_online,
            "MGR member is not ONLINE",
            bad="offline",
        )
