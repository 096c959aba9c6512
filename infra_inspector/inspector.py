"""Inspection runs: discover, collect, evaluate and aggregate one application type.

Each ``run`` is independent.  A fatal error in any phase aborts the run and
no partial report is returned; degraded conditions only show up as N/A
metrics or missing fields in an otherwise complete report.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, tzinfo

from infra_inspector import __version__
from infra_inspector.collectors import (
    BaseCollector,
    HostCollector,
    MySQLCollector,
    NginxCollector,
    RedisCollector,
    TomcatCollector,
)
from infra_inspector.config import (
    APPLICATION_KINDS,
    DEFAULT_TIMEZONE,
    Settings,
    load_metrics,
    load_timezone,
)
from infra_inspector.errors import BackendError, CollectionError, ConfigError
from infra_inspector.evaluators import (
    BaseEvaluator,
    HostEvaluator,
    MySQLEvaluator,
    NginxEvaluator,
    RedisEvaluator,
    TomcatEvaluator,
)
from infra_inspector.matching import InstanceFilter
from infra_inspector.models import InspectionReport, InstanceResult
from infra_inspector.n9e import InventoryClient
from infra_inspector.prometheus import MetricsClient

logger = logging.getLogger(__name__)


class Inspector:
    """Runs one application type through discover → collect → evaluate.

    Parameters
    ----------
    collector : BaseCollector
        Discovers instances and collects their metrics.
    evaluator : BaseEvaluator
        Grades the collected results.
    timezone : str | tzinfo
        Timezone of the report's start time.
    version : str
        Version string stamped on every report.
    wave_budget : float
        Seconds allowed per wave of concurrent metric queries.  When no
        explicit timeout is passed to :meth:`run`, the collection deadline is
        this budget times the number of waves.  ``0`` disables the deadline.
        :func:`build_inspector` never sets it below :func:`query_budget`.
    """

    kind = ""

    def __init__(
        self,
        collector: BaseCollector,
        evaluator: BaseEvaluator,
        *,
        timezone: str | tzinfo = DEFAULT_TIMEZONE,
        version: str = "dev",
        wave_budget: float = 0.0,
    ) -> None:
        if collector is None:
            raise ValueError(f"{self.kind} inspector requires a collector")
        if evaluator is None:
            raise ValueError(f"{self.kind} inspector requires an evaluator")
        self.collector = collector
        self.evaluator = evaluator
        self.tz = load_timezone(timezone) if isinstance(timezone, str) else timezone
        self.version = version
        self.wave_budget = wave_budget

    def default_timeout(self) -> float | None:
        if self.wave_budget <= 0:
            return None
        waves = math.ceil(len(self.collector.metrics) / self.collector.concurrency)
        return self.wave_budget * max(waves, 1)

    def run(
        self, cancel: threading.Event | None = None, timeout: float | None = None
    ) -> InspectionReport:
        """Inspect every instance and return the finalized report."""
        start = datetime.now(self.tz)
        report = InspectionReport(kind=self.kind, inspection_time=start, version=self.version)
        logger.info("Starting %s inspection", self.kind)

        if not self.collector.metrics:
            raise ConfigError(f"no {self.kind} metric definitions configured")

        instances = self.collector.discover_instances()
        if not instances:
            logger.warning("No %s instances discovered", self.kind)
            report.finalize(datetime.now(self.tz))
            return report

        if timeout is None:
            timeout = self.default_timeout()
        try:
            results = self.collector.collect_metrics(instances, cancel=cancel, timeout=timeout)
        except CollectionError as exc:
            raise type(exc)(f"data collection failed: {exc}") from exc

        self.collect_secondary(results)
        self.evaluator.evaluate_all(results)
        for result in results.values():
            report.add_result(result)
        report.finalize(datetime.now(self.tz))

        s = report.summary
        logger.info(
            "%s inspection finished in %.1fs: %d instances "
            "(normal=%d warning=%d critical=%d failed=%d), %d alerts",
            self.kind, report.duration_seconds, s.total,
            s.normal, s.warning, s.critical, s.failed, report.alert_summary.total,
        )
        return report

    def collect_secondary(self, results: dict[str, InstanceResult]) -> None:
        """Optional extra collection phase; failures must not abort the run."""


class HostInspector(Inspector):
    kind = "host"


class MySQLInspector(Inspector):
    kind = "mysql"


class RedisInspector(Inspector):
    kind = "redis"


class NginxInspector(Inspector):
    kind = "nginx"

    def collect_secondary(self, results: dict[str, InstanceResult]) -> None:
        try:
            count = self.collector.collect_upstream_status(results)
        except BackendError as exc:
            logger.warning("Upstream status collection failed, continuing without it: %s", exc)
            return
        logger.debug("Collected status of %d upstream backends", count)


class TomcatInspector(Inspector):
    kind = "tomcat"


# ── Factory ──────────────────────────────────────────────────────────────────


def query_budget(settings: Settings) -> float:
    """Worst-case seconds for one metric query, every retry and backoff included."""
    retry = settings.http.retry
    backoff = sum(
        min(retry.base_delay * 2**n, retry.base_delay * 8) for n in range(retry.max_retries)
    )
    return settings.datasources.victoriametrics.timeout * (retry.max_retries + 1) + backoff


def build_inspector(
    kind: str,
    settings: Settings,
    client: MetricsClient,
    inventory: InventoryClient | None,
    *,
    concurrency: int | None = None,
) -> Inspector:
    """Wire the collector, evaluator and inspector for *kind* from *settings*."""
    if kind not in APPLICATION_KINDS:
        raise ConfigError(f"unknown inspection kind {kind!r}")
    metrics = load_metrics(kind, settings.metrics_file(kind) or None)
    concurrency = concurrency or settings.inspection.concurrency
    tz = settings.tzinfo
    common = {"inventory": inventory, "concurrency": concurrency}

    if kind == "host":
        hf = settings.inspection.host_filter
        flt = InstanceFilter(business_groups=hf.business_groups, tags=hf.tags)
        collector = HostCollector(client, metrics, flt, **common)
        evaluator = HostEvaluator(settings.thresholds, metrics)
        cls = HostInspector
    elif kind == "mysql":
        cfg = settings.mysql
        collector = MySQLCollector(
            client, metrics, cfg.instance_filter, cluster_mode=cfg.cluster_mode, **common
        )
        evaluator = MySQLEvaluator(cfg.thresholds, metrics)
        cls = MySQLInspector
    elif kind == "redis":
        cfg = settings.redis
        collector = RedisCollector(client, metrics, cfg.instance_filter, **common)
        evaluator = RedisEvaluator(cfg.thresholds, metrics, cluster_mode=cfg.cluster_mode)
        cls = RedisInspector
    elif kind == "nginx":
        cfg = settings.nginx
        collector = NginxCollector(client, metrics, cfg.instance_filter, **common)
        evaluator = NginxEvaluator(cfg.thresholds, metrics, tz)
        cls = NginxInspector
    else:
        cfg = settings.tomcat
        collector = TomcatCollector(client, metrics, cfg.instance_filter, **common)
        evaluator = TomcatEvaluator(cfg.thresholds, metrics, tz)
        cls = TomcatInspector

    return cls(
        collector,
        evaluator,
        timezone=tz,
        version=__version__,
        wave_budget=max(settings.inspection.host_timeout, query_budget(settings)),
    )
