"""MySQL collector: address-keyed instances with topology-specific metrics."""

from __future__ import annotations

import logging

from infra_inspector.collectors.base import BaseCollector, first_label
from infra_inspector.models import MetricDefinition, MySQLInstance, MySQLResult
from infra_inspector.prometheus import QueryResult

logger = logging.getLogger(__name__)

DISCOVERY_QUERY = "mysql_up == 1"
ADDRESS_LABELS = ("address", "instance", "server")


class MySQLCollector(BaseCollector[MySQLInstance, MySQLResult]):
    """Discovers MySQL servers from ``mysql_up`` and collects their metrics.

    Metrics restricted to a cluster mode are only collected when it matches
    the configured *cluster_mode*.
    """

    kind = "mysql"
    result_type = MySQLResult

    def __init__(self, *args, cluster_mode: str = "", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.cluster_mode = cluster_mode

    def discover_instances(self) -> list[MySQLInstance]:
        seen: set[str] = set()
        instances: list[MySQLInstance] = []
        for r in self._query_or_fail(DISCOVERY_QUERY, "mysql_up"):
            address = first_label(r.labels, ADDRESS_LABELS)
            if not address:
                logger.debug("Skipping mysql_up series without an address label: %s", r.labels)
                continue
            if address in seen:
                continue
            seen.add(address)
            if not self.instance_filter.matches_address(address):
                continue
            try:
                instances.append(MySQLInstance.from_address(address, self.cluster_mode))
            except ValueError as exc:
                logger.warning("Skipping MySQL instance %s: %s", address, exc)
        logger.info("Discovered %d MySQL instances", len(instances))
        return instances

    def applicable_metrics(self, metrics: list[MetricDefinition]) -> list[MetricDefinition]:
        return [m for m in metrics if m.applies_to(self.cluster_mode)]

    def match_sample(self, sample: QueryResult, results: dict[str, MySQLResult]) -> str | None:
        address = first_label(sample.labels, ADDRESS_LABELS)
        if not address or not self.instance_filter.matches_address(address):
            return None
        return address if address in results else None

    def post_process(self, results: dict[str, MySQLResult]) -> None:
        for result in results.values():
            max_conn = result.value_of("max_connections")
            if max_conn is not None:
                result.max_connections = int(max_conn)
            current = result.value_of("current_connections")
            if current is not None:
                result.current_connections = int(current)
            members = result.value_of("mgr_member_count")
            if members is not None:
                result.mgr_member_count = int(members)
            online = result.value_of("mgr_state_online")
            if online is not None:
                result.mgr_state_online = online > 0
            version = result.get_metric("version")
            if version is not None and version.string_value:
                result.instance.version = version.string_value
