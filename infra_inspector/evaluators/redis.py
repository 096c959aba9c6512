"""Redis evaluator: connection usage, replication link, lag and replica count."""

from __future__ import annotations

from infra_inspector.config import RedisThresholds
from infra_inspector.evaluators.base import BaseEvaluator, ascending_level, format_bytes, level_word
from infra_inspector.models import (
    Alert,
    AlertLevel,
    MetricDefinition,
    RedisResult,
    RedisRole,
)

# Replicas each master should have in a given topology.
EXPECTED_SLAVES = {"3m3s": 1, "3m6s": 2}


class RedisEvaluator(BaseEvaluator[RedisResult]):
    """Evaluates Redis nodes.

    Connection usage applies to every node; the replication link and lag
    apply to slaves; the replica count applies to masters when the cluster
    mode is known.
    """

    display_names = {
        "connection_usage": "Connection usage",
        "redis_master_link_status": "Master link status",
        "replication_lag": "Replication lag",
        "redis_connected_slaves": "Connected slaves",
    }

    def __init__(
        self,
        thresholds: RedisThresholds,
        metrics: list[MetricDefinition] | None = None,
        *,
        cluster_mode: str = "",
        **kwargs,
    ) -> None:
        super().__init__(metrics, **kwargs)
        self.thresholds = thresholds
        self.cluster_mode = cluster_mode

    def check(self, result: RedisResult) -> list[Alert]:
        rules = [self.check_connection_usage(result)]
        role = result.instance.role
        if role == RedisRole.SLAVE:
            rules.append(self.check_master_link(result))
            rules.append(self.check_replication_lag(result))
        elif role == RedisRole.MASTER:
            rules.append(self.check_replica_count(result))
        return [a for a in rules if a is not None]

    def check_connection_usage(self, result: RedisResult) -> Alert | None:
        if result.max_clients <= 0 or not result.has_value("redis_connected_clients"):
            result.connection_usage = 0.0
            return None
        usage = result.connected_clients * 100 / result.max_clients
        result.connection_usage = usage
        return self.utilization_alert(
            result,
            "connection_usage",
            usage,
            self.thresholds.connection_usage_warning,
            self.thresholds.connection_usage_critical,
        )

    def check_master_link(self, result: RedisResult) -> Alert | None:
        if not result.has_value("redis_master_link_status"):
            return None
        return self.flag_alert(
            result,
            "redis_master_link_status",
            result.master_link_status,
            "replication link to the master is down",
            bad="down",
        )

    def check_replication_lag(self, result: RedisResult) -> Alert | None:
        t = self.thresholds
        lag = result.replication_lag
        level = ascending_level(lag, t.replication_lag_warning, t.replication_lag_critical)
        if level == AlertLevel.NORMAL:
            return None
        limit = t.replication_lag_critical if level == AlertLevel.CRITICAL else t.replication_lag_warning
        return self.alert(
            result,
            "replication_lag",
            level,
            f"replication lag is {format_bytes(lag)}, at or above the "
            f"{level_word(level)} threshold of {format_bytes(limit)}",
            value=lag,
            formatted=format_bytes(lag),
            warning=t.replication_lag_warning,
            critical=t.replication_lag_critical,
        )

    def check_replica_count(self, result: RedisResult) -> Alert | None:
        expected = EXPECTED_SLAVES.get(self.cluster_mode)
        if expected is None or not result.has_value("redis_connected_slaves"):
            return None
        if result.connected_slaves >= expected:
            return None
        return self.alert(
            result,
            "redis_connected_slaves",
            AlertLevel.WARNING,
            f"master has {result.connected_slaves} connected slaves, "
            f"expected {expected} in {self.cluster_mode} mode",
            value=result.connected_slaves,
            formatted=str(result.connected_slaves),
            warning=expected,
            critical=0,
        )
