"""Redis collector: address-keyed instances with two-phase role detection."""

from __future__ import annotations

import logging

from infra_inspector.collectors.base import BaseCollector, first_label
from infra_inspector.models import RedisInstance, RedisResult, RedisRole
from infra_inspector.prometheus import QueryResult

logger = logging.getLogger(__name__)

DISCOVERY_QUERY = "redis_up"
ADDRESS_LABELS = ("address", "instance", "server")
ROLE_LABEL = "replica_role"

# Metrics copied verbatim into integer result fields.
_INT_FIELDS = (
    ("redis_maxclients", "max_clients"),
    ("redis_connected_clients", "connected_clients"),
    ("redis_connected_slaves", "connected_slaves"),
    ("redis_master_port", "master_port"),
    ("redis_uptime_in_seconds", "uptime_seconds"),
)


class RedisCollector(BaseCollector[RedisInstance, RedisResult]):
    """Discovers Redis nodes from ``redis_up`` and collects their metrics.

    The role read from the ``replica_role`` label at discovery is a first
    guess; after collection it is re-checked against replication metrics and
    the replication lag of every slave is derived from its offsets.
    """

    kind = "redis"
    result_type = RedisResult

    def discover_instances(self) -> list[RedisInstance]:
        seen: set[str] = set()
        instances: list[RedisInstance] = []
        for r in self._query_or_fail(DISCOVERY_QUERY, "redis_up"):
            address = first_label(r.labels, ADDRESS_LABELS)
            if not address:
                logger.debug("Skipping redis_up series without an address label: %s", r.labels)
                continue
            if address in seen:
                continue
            seen.add(address)
            if not self.instance_filter.matches_address(address):
                continue
            role = RedisRole.parse(r.labels.get(ROLE_LABEL, ""))
            try:
                instances.append(RedisInstance.from_address(address, role))
            except ValueError as exc:
                logger.warning("Skipping Redis instance %s: %s", address, exc)
        logger.info("Discovered %d Redis instances", len(instances))
        return instances

    def match_sample(self, sample: QueryResult, results: dict[str, RedisResult]) -> str | None:
        address = first_label(sample.labels, ADDRESS_LABELS)
        if not address or not self.instance_filter.matches_address(address):
            return None
        return address if address in results else None

    def post_process(self, results: dict[str, RedisResult]) -> None:
        for result in results.values():
            self.verify_role(result)
            self.calculate_replication_lag(result)
            self.populate_fields(result)

    @staticmethod
    def verify_role(result: RedisResult) -> None:
        """Resolve an unknown role from replication metrics."""
        inst = result.instance
        if inst.role != RedisRole.UNKNOWN:
            return
        slaves = result.value_of("redis_connected_slaves")
        if slaves is not None and slaves > 0:
            inst.role = RedisRole.MASTER
        elif result.has_value("redis_master_link_status"):
            inst.role = RedisRole.SLAVE
        if inst.role != RedisRole.UNKNOWN:
            logger.debug("Resolved role of %s to %s", inst.identifier, inst.role.value)

    @staticmethod
    def calculate_replication_lag(result: RedisResult) -> None:
        """``master_offset - slave_offset`` for slaves, never negative."""
        if result.instance.role != RedisRole.SLAVE:
            return
        master = result.value_of("redis_master_repl_offset")
        slave = result.value_of("redis_slave_repl_offset")
        if master is None or slave is None:
            return
        result.master_repl_offset = int(master)
        result.slave_repl_offset = int(slave)
        lag = result.master_repl_offset - result.slave_repl_offset
        if lag < 0:
            logger.debug(
                "Slave %s reports offset %d ahead of master offset %d; lag clamped to 0",
                result.identifier, result.slave_repl_offset, result.master_repl_offset,
            )
            result.offsets_inconsistent = True
            lag = 0
        result.replication_lag = lag

    @staticmethod
    def populate_fields(result: RedisResult) -> None:
        v = result.value_of
        if v("redis_up") is not None:
            result.connection_status = v("redis_up") == 1
        if v("redis_cluster_enabled") is not None:
            result.cluster_enabled = v("redis_cluster_enabled") == 1
            result.instance.cluster_enabled = result.cluster_enabled
        if v("redis_master_link_status") is not None:
            result.master_link_status = v("redis_master_link_status") == 1
        for metric, field in _INT_FIELDS:
            value = v(metric)
            if value is not None:
                setattr(result, field, int(value))
        version = result.get_metric("redis_version")
        if version is not None and version.string_value:
            result.instance.version = version.string_value
