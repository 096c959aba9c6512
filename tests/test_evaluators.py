"""Tests for infra_inspector.evaluators package."""

from __future__ import annotations

from datetime import timezone

import pytest

from fakes import metric
from infra_inspector.config import (
    HostThresholds,
    MySQLThresholds,
    NginxThresholds,
    RedisThresholds,
    TomcatThresholds,
)
from infra_inspector.evaluators import (
    HostEvaluator,
    MySQLEvaluator,
    NginxEvaluator,
    RedisEvaluator,
    TomcatEvaluator,
)
from infra_inspector.evaluators.base import (
    ascending_level,
    format_bytes,
    format_duration,
    format_timestamp,
    format_uptime,
    recency_level,
)
from infra_inspector.models import (
    AlertLevel,
    HostInstance,
    HostMeta,
    HostResult,
    InstanceStatus,
    MetricFormat,
    MetricStatus,
    MetricValue,
    MySQLInstance,
    MySQLResult,
    NginxInstance,
    NginxResult,
    RedisInstance,
    RedisResult,
    RedisRole,
    TomcatInstance,
    TomcatResult,
    UpstreamStatus,
)

NOW = 1_800_000_000.0


def _clock() -> float:
    return NOW


def _nginx(active: int = 0, wp: int = 4, wc: int = 1000, **fields) -> NginxResult:
    result = NginxResult(
        instance=NginxInstance(identifier="web-01:80", hostname="web-01", port=80),
        active_connections=active,
        worker_processes=wp,
        worker_connections=wc,
        connection_usage_percent=active * 100 / (wp * wc) if wp * wc else -1,
        **fields,
    )
    result.set_metric(MetricValue.numeric("nginx_up", 1))
    result.up = True
    return result


def _nginx_evaluator() -> NginxEvaluator:
    return NginxEvaluator(NginxThresholds(), [], timezone.utc, clock=_clock)


class TestFormatting:
    def test_bytes(self):
        assert format_bytes(512) == "512 B"
        assert format_bytes(1536) == "1.50 KB"
        assert format_bytes(10 * 1024 * 1024) == "10.00 MB"
        assert format_bytes(3 * 1024 ** 4) == "3.00 TB"

    def test_duration(self):
        assert format_duration(3 * 86400 + 2 * 3600 + 5 * 60 + 9) == "3d 2h 5m"
        assert format_duration(3660) == "1h 1m"
        assert format_duration(59) == "0m"

    def test_uptime(self):
        assert format_uptime(90061) == "1d 01:01:01"
        assert format_uptime(61) == "00:01:01"

    def test_timestamp(self):
        assert format_timestamp(0, timezone.utc) == "no errors"
        assert format_timestamp(1_700_000_000, timezone.utc) == "2023-11-14 22:13:20"


class TestLevels:
    @pytest.mark.parametrize(
        "value, expected",
        [(69.9, AlertLevel.NORMAL), (70, AlertLevel.WARNING), (89.9, AlertLevel.WARNING), (90, AlertLevel.CRITICAL)],
    )
    def test_ascending_boundaries(self, value, expected):
        assert ascending_level(value, 70, 90) == expected

    @pytest.mark.parametrize(
        "ago, expected",
        [(5 * 60, AlertLevel.CRITICAL), (10 * 60, AlertLevel.CRITICAL), (30 * 60, AlertLevel.WARNING),
         (60 * 60, AlertLevel.WARNING), (120 * 60, AlertLevel.NORMAL)],
    )
    def test_recency_inverted(self, ago, expected):
        level, _ = recency_level(NOW - ago, NOW, 60, 10)
        assert level == expected

    def test_recency_zero_timestamp(self):
        assert recency_level(0, NOW, 60, 10) == (AlertLevel.NORMAL, 0)


class TestNginxEvaluator:
    @pytest.mark.parametrize(
        "active, level",
        [(2800, AlertLevel.WARNING), (3600, AlertLevel.CRITICAL), (2000, None)],
    )
    def test_utilization_boundaries(self, active, level):
        result = _nginx(active)
        ev = _nginx_evaluator().evaluate(result)
        levels = [a.level for a in ev.alerts if a.metric_name == "connection_usage"]
        assert levels == ([level] if level else [])

    def test_unknown_capacity_skipped(self):
        result = _nginx(active=500, wp=0)
        assert result.connection_usage_percent == -1
        assert _nginx_evaluator().evaluate(result).status == InstanceStatus.NORMAL

    @pytest.mark.parametrize(
        "ago, level",
        [(5, AlertLevel.CRITICAL), (30, AlertLevel.WARNING), (120, None)],
    )
    def test_last_error_recency(self, ago, level):
        result = _nginx(last_error_timestamp=int(NOW - ago * 60))
        ev = _nginx_evaluator().evaluate(result)
        levels = [a.level for a in ev.alerts if a.metric_name == "nginx_last_error_timestamp"]
        assert levels == ([level] if level else [])

    def test_no_error_recorded(self):
        result = _nginx(last_error_timestamp=0)
        ev = _nginx_evaluator().evaluate(result)
        assert ev.alerts == []
        assert result.last_error_time_formatted == "no errors"

    def test_last_error_time_formatted(self):
        result = _nginx(last_error_timestamp=1_700_000_000)
        _nginx_evaluator().evaluate(result)
        assert result.last_error_time_formatted == "2023-11-14 22:13:20"

    def test_down_is_critical(self):
        result = _nginx()
        result.up = False
        ev = _nginx_evaluator().evaluate(result)
        assert [(a.metric_name, a.level) for a in ev.alerts] == [("nginx_up", AlertLevel.CRITICAL)]

    def test_config_checks_only_when_collected(self):
        result = _nginx()
        assert _nginx_evaluator().evaluate(result).alerts == []

        result.set_metric(MetricValue.numeric("nginx_error_page_4xx", 0))
        result.set_metric(MetricValue.numeric("nginx_non_root_user", 0))
        names = [a.metric_name for a in _nginx_evaluator().evaluate(result).alerts]
        assert names == ["nginx_error_page_4xx", "nginx_non_root_user"]

    def test_one_alert_per_unhealthy_backend(self):
        result = _nginx(upstreams=[
            UpstreamStatus(upstream_name="api", backend_address="10.1.0.1:8080", healthy=True),
            UpstreamStatus(upstream_name="api", backend_address="10.1.0.2:8080", healthy=False, fall_count=3),
            UpstreamStatus(upstream_name="api", backend_address="10.1.0.3:8080", healthy=False, fall_count=7),
            UpstreamStatus(upstream_name="static", backend_address="10.1.0.9:80", healthy=False),
        ])
        ev = _nginx_evaluator().evaluate(result)
        upstream = [a for a in ev.alerts if a.metric_name == "upstream_status"]
        assert len(upstream) == 3
        assert all(a.level == AlertLevel.CRITICAL for a in upstream)
        assert {a.labels["backend"] for a in upstream} == {"10.1.0.2:8080", "10.1.0.3:8080", "10.1.0.9:80"}
        assert "10.1.0.3:8080" in upstream[1].message
        assert "api" in upstream[1].message
        assert "7" in upstream[1].message

    def test_critical_dominates_warning(self):
        result = _nginx(2800, last_error_timestamp=int(NOW - 5 * 60))
        ev = _nginx_evaluator().evaluate(result)
        assert {a.level for a in ev.alerts} == {AlertLevel.WARNING, AlertLevel.CRITICAL}
        assert ev.status == InstanceStatus.CRITICAL
        assert result.status == InstanceStatus.CRITICAL
        assert result.alerts == ev.alerts

    def test_failed_short_circuits(self):
        result = _nginx(3900, last_error_timestamp=int(NOW - 60))
        result.error = "instance unreachable"
        ev = _nginx_evaluator().evaluate(result)
        assert ev.status == InstanceStatus.FAILED
        assert ev.alerts == []
        assert result.status == InstanceStatus.FAILED

    def test_idempotent(self):
        result = _nginx(3600, last_error_timestamp=int(NOW - 30 * 60), upstreams=[
            UpstreamStatus(upstream_name="api", backend_address="10.1.0.2:8080", healthy=False),
        ])
        evaluator = _nginx_evaluator()
        first = evaluator.evaluate(result)
        second = evaluator.evaluate(result)
        assert first.status == second.status
        assert first.alerts == second.alerts
        assert result.alerts == second.alerts

    def test_evaluate_all(self):
        results = {"a": _nginx(100), "b": _nginx(3700)}
        evs = _nginx_evaluator().evaluate_all(results)
        assert [e.status for e in evs] == [InstanceStatus.NORMAL, InstanceStatus.CRITICAL]


class TestMySQLEvaluator:
    def _result(self, mode: str = "mgr", **fields) -> MySQLResult:
        return MySQLResult(instance=MySQLInstance.from_address("10.0.1.1:3306", mode), **fields)

    def test_connection_usage(self):
        result = self._result("master-slave", max_connections=1000, current_connections=750)
        ev = MySQLEvaluator(MySQLThresholds()).evaluate(result)
        assert result.connection_usage == 75
        assert [a.level for a in ev.alerts] == [AlertLevel.WARNING]
        assert ev.alerts[0].formatted_value == "75.0%"

    def test_zero_max_connections(self):
        result = self._result(max_connections=0, current_connections=10)
        assert MySQLEvaluator(MySQLThresholds()).evaluate(result).alerts == []

    @pytest.mark.parametrize(
        "count, level",
        [(3, None), (4, None), (2, AlertLevel.WARNING), (1, AlertLevel.CRITICAL), (0, AlertLevel.CRITICAL)],
    )
    def test_mgr_member_count(self, count, level):
        result = self._result(mgr_member_count=count)
        result.set_metric(MetricValue.numeric("mgr_member_count", count))
        ev = MySQLEvaluator(MySQLThresholds()).evaluate(result)
        levels = [a.level for a in ev.alerts if a.metric_name == "mgr_member_count"]
        assert levels == ([level] if level else [])

    def test_mgr_drops_configurable(self):
        thresholds = MySQLThresholds(mgr_member_count_expected=5, mgr_member_warning_drop=2, mgr_member_critical_drop=3)
        result = self._result(mgr_member_count=4)
        result.set_metric(MetricValue.numeric("mgr_member_count", 4))
        assert MySQLEvaluator(thresholds).evaluate(result).alerts == []
        result.mgr_member_count = 3
        assert MySQLEvaluator(thresholds).evaluate(result).status == InstanceStatus.WARNING
        result.mgr_member_count = 2
        assert MySQLEvaluator(thresholds).evaluate(result).status == InstanceStatus.CRITICAL

    def test_mgr_checks_skipped_when_not_collected(self):
        result = self._result(mgr_member_count=0, mgr_state_online=False)
        assert MySQLEvaluator(MySQLThresholds()).evaluate(result).alerts == []

    def test_mgr_offline(self):
        result = self._result(mgr_state_online=False)
        result.set_metric(MetricValue.numeric("mgr_state_online", 0))
        ev = MySQLEvaluator(MySQLThresholds(), [metric("mgr_state_online", display_name="MGR state")]).evaluate(result)
        assert [(a.metric_display_name, a.level) for a in ev.alerts] == [("MGR state", AlertLevel.CRITICAL)]

    def test_mgr_rules_ignored_for_other_modes(self):
        result = self._result("dual-master", mgr_member_count=1)
        result.set_metric(MetricValue.numeric("mgr_member_count", 1))
        assert MySQLEvaluator(MySQLThresholds()).evaluate(result).alerts == []


class TestRedisEvaluator:
    def _result(self, role: RedisRole, **fields) -> RedisResult:
        return RedisResult(instance=RedisInstance.from_address("10.0.0.1:6379", role), **fields)

    def test_connection_usage(self):
        result = self._result(RedisRole.MASTER, max_clients=1000, connected_clients=950)
        result.set_metric(MetricValue.numeric("redis_connected_clients", 950))
        ev = RedisEvaluator(RedisThresholds()).evaluate(result)
        assert [a.level for a in ev.alerts] == [AlertLevel.CRITICAL]

    def test_slave_link_down_and_lag(self):
        result = self._result(RedisRole.SLAVE, master_link_status=False, replication_lag=2 * 1024 * 1024)
        result.set_metric(MetricValue.numeric("redis_master_link_status", 0))
        ev = RedisEvaluator(RedisThresholds()).evaluate(result)
        assert [(a.metric_name, a.level) for a in ev.alerts] == [
            ("redis_master_link_status", AlertLevel.CRITICAL),
            ("replication_lag", AlertLevel.WARNING),
        ]
        assert ev.alerts[1].formatted_value == "2.00 MB"

    def test_lag_ignored_for_master(self):
        result = self._result(RedisRole.MASTER, replication_lag=100 * 1024 * 1024)
        assert RedisEvaluator(RedisThresholds()).evaluate(result).alerts == []

    def test_missing_replicas(self):
        result = self._result(RedisRole.MASTER, connected_slaves=1)
        result.set_metric(MetricValue.numeric("redis_connected_slaves", 1))
        assert RedisEvaluator(RedisThresholds(), cluster_mode="3m3s").evaluate(result).alerts == []
        ev = RedisEvaluator(RedisThresholds(), cluster_mode="3m6s").evaluate(result)
        assert [a.level for a in ev.alerts] == [AlertLevel.WARNING]
        assert "expected 2" in ev.alerts[0].message


class TestHostEvaluator:
    def _result(self) -> HostResult:
        result = HostResult(instance=HostInstance.from_meta(HostMeta(hostname="web-01", ip="10.0.0.1")))
        result.set_metric(MetricValue.numeric("cpu_usage", 95.5))
        result.set_metric(MetricValue.numeric("memory_usage", 40))
        result.set_metric(MetricValue.numeric("disk_usage:/", 40, {"path": "/"}))
        result.set_metric(MetricValue.numeric("disk_usage:/data", 75, {"path": "/data"}))
        result.set_metric(MetricValue.numeric("disk_usage_max", 75, {"path": "/data"}))
        result.set_metric(MetricValue.numeric("uptime", 3 * 86400 + 7200))
        result.set_metric(MetricValue.na("ntp_offset"))
        return result

    def _metrics(self):
        return [
            metric("cpu_usage", display_name="CPU usage", unit="%", format=MetricFormat.PERCENT),
            metric("memory_usage", unit="%", format=MetricFormat.PERCENT),
            metric("disk_usage", display_name="Disk usage", unit="%", format=MetricFormat.PERCENT),
            metric("uptime", format=MetricFormat.DURATION),
        ]

    def test_alerts_and_statuses(self):
        result = self._result()
        ev = HostEvaluator(HostThresholds(), self._metrics()).evaluate(result)
        assert [(a.metric_name, a.level) for a in ev.alerts] == [
            ("cpu_usage", AlertLevel.CRITICAL),
            ("disk_usage_max", AlertLevel.WARNING),
        ]
        assert ev.status == InstanceStatus.CRITICAL
        assert ev.alerts[0].formatted_value == "95.5%"
        assert "CPU usage" in ev.alerts[0].message

        assert result.metrics["disk_usage:/data"].status == MetricStatus.WARNING
        assert result.metrics["disk_usage:/"].status == MetricStatus.NORMAL
        assert result.metrics["ntp_offset"].status == MetricStatus.PENDING
        assert result.metrics["uptime"].formatted_value == "3d 2h 0m"

    def test_display_names(self):
        evaluator = HostEvaluator(HostThresholds(), self._metrics())
        assert evaluator.display_name("disk_usage:/data") == "Disk usage (/data)"
        assert evaluator.display_name("disk_usage_max") == "Disk usage (max)"
        assert evaluator.display_name("mystery") == "mystery"

    def test_load_per_core(self):
        result = HostResult(instance=HostInstance.from_meta(HostMeta(hostname="web-01")))
        result.set_metric(MetricValue.numeric("load_per_core", 0.7))
        ev = HostEvaluator(HostThresholds()).evaluate(result)
        assert [a.level for a in ev.alerts] == [AlertLevel.WARNING]


class TestTomcatEvaluator:
    def _result(self, **fields) -> TomcatResult:
        return TomcatResult(
            instance=TomcatInstance(identifier="web-01:8080", hostname="web-01", port=8080), **fields
        )

    def test_formats_and_recency(self):
        result = self._result(uptime_seconds=90061, last_error_timestamp=int(NOW - 20 * 60))
        ev = TomcatEvaluator(TomcatThresholds(), [], timezone.utc, clock=_clock).evaluate(result)
        assert result.uptime_formatted == "1d 01:01:01"
        assert result.last_error_time_formatted != "no errors"
        assert [a.level for a in ev.alerts] == [AlertLevel.WARNING]

    def test_flags_only_when_collected(self):
        result = self._result(up=False, non_root_user=False)
        evaluator = TomcatEvaluator(TomcatThresholds(), [], timezone.utc, clock=_clock)
        assert evaluator.evaluate(result).alerts == []

        result.set_metric(MetricValue.numeric("tomcat_up", 0))
        result.set_metric(MetricValue.numeric("tomcat_non_root_user", 0))
        ev = evaluator.evaluate(result)
        assert [a.metric_name for a in ev.alerts] == ["tomcat_up", "tomcat_non_root_user"]
        assert ev.status == InstanceStatus.CRITICAL
