"""Host collector: inventory-driven discovery and per-host system metrics."""

from __future__ import annotations

import logging
from collections import defaultdict

from infra_inspector.collectors.base import BaseCollector
from infra_inspector.errors import BackendError, DiscoveryError
from infra_inspector.models import (
    HostInstance,
    HostResult,
    InstanceStatus,
    MetricDefinition,
    MetricValue,
    clean_ident,
)
from infra_inspector.prometheus import QueryResult

logger = logging.getLogger(__name__)


class HostCollector(BaseCollector[HostInstance, HostResult]):
    """Collects system metrics for every host listed in the inventory.

    Metrics with ``expand_by_label`` (e.g. disk usage per mount point) are
    stored once per label value as ``<name>:<value>``; with ``aggregate: max``
    the largest value is also stored as ``<name>_max``.
    """

    kind = "host"
    result_type = HostResult

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        if self.inventory is None:
            raise ValueError("host collector requires an inventory client")

    def discover_instances(self) -> list[HostInstance]:
        try:
            metas = self.inventory.get_host_metas()
        except (BackendError, ValueError) as exc:
            logger.error("Inventory listing failed: %s", exc)
            raise DiscoveryError(f"failed to collect host metas: {exc}") from exc

        seen: set[str] = set()
        hosts: list[HostInstance] = []
        for meta in metas:
            if not meta.hostname or meta.hostname in seen:
                continue
            seen.add(meta.hostname)
            if not self.instance_filter.matches_hostname(meta.hostname):
                continue
            hosts.append(HostInstance.from_meta(meta))
        logger.info("Discovered %d hosts", len(hosts))
        return hosts

    def match_sample(self, sample: QueryResult, results: dict[str, HostResult]) -> str | None:
        hostname = clean_ident(sample.ident)
        if hostname and hostname in results:
            return hostname
        return None

    def record(
        self, metric: MetricDefinition, samples: list[QueryResult], results: dict[str, HostResult]
    ) -> int:
        if not metric.expand_by_label:
            return super().record(metric, samples, results)

        expanded: dict[str, list[MetricValue]] = defaultdict(list)
        for sample in samples:
            hostname = self.match_sample(sample, results)
            if hostname is None:
                continue
            label_value = sample.labels.get(metric.expand_by_label) or "unknown"
            mv = MetricValue.numeric(
                f"{metric.name}:{label_value}",
                sample.value,
                {metric.expand_by_label: label_value},
            )
            expanded[hostname].append(mv)

        for hostname, values in expanded.items():
            result = results[hostname]
            for mv in values:
                result.set_metric(mv)
            if metric.aggregate == "max":
                peak = max(values, key=lambda v: v.raw_value)
                result.set_metric(
                    MetricValue.numeric(f"{metric.name}_max", peak.raw_value, peak.labels)
                )
        return sum(len(v) for v in expanded.values())

    def post_process(self, results: dict[str, HostResult]) -> None:
        for result in results.values():
            if not any(not mv.is_na for mv in result.metrics.values()):
                result.status = InstanceStatus.FAILED
                result.error = "no metrics collected"
