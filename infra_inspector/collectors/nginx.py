"""Nginx collector: hostname-scoped instances plus upstream backend health."""

from __future__ import annotations

import logging

from infra_inspector.collectors.base import HostScopedCollector, parse_port
from infra_inspector.models import NginxInstance, NginxResult, UpstreamStatus, make_identifier
from infra_inspector.prometheus import QueryResult

logger = logging.getLogger(__name__)

DISCOVERY_QUERY = "nginx_info"
CONTAINER_QUERY = "nginx_up"
UPSTREAM_STATUS_QUERY = "nginx_upstream_check_status_code"
UPSTREAM_RISE_QUERY = "nginx_upstream_check_rise"
UPSTREAM_FALL_QUERY = "nginx_upstream_check_fall"

# Metrics copied into integer result fields.
_INT_FIELDS = (
    ("nginx_active", "active_connections"),
    ("nginx_worker_processes", "worker_processes"),
    ("nginx_worker_connections", "worker_connections"),
    ("nginx_last_error_timestamp", "last_error_timestamp"),
)

# Metrics copied into boolean result fields (1 = true).
_BOOL_FIELDS = (
    ("nginx_up", "up"),
    ("nginx_error_page_4xx", "error_page_4xx"),
    ("nginx_error_page_5xx", "error_page_5xx"),
    ("nginx_non_root_user", "non_root_user"),
)


class NginxCollector(HostScopedCollector[NginxInstance, NginxResult]):
    """Discovers Nginx processes from ``nginx_info``.

    Container deployments are recognised from the ``container`` label of
    ``nginx_up``; instance IPs come from the inventory.
    """

    kind = "nginx"
    result_type = NginxResult

    def discover_instances(self) -> list[NginxInstance]:
        results = self._query_or_fail(DISCOVERY_QUERY, "nginx_info")
        containers = self.container_map(CONTAINER_QUERY, "nginx_up")

        seen: set[str] = set()
        ips: dict[str, str] = {}
        instances: list[NginxInstance] = []
        for r in results:
            hostname = self.hostname_of(r.labels)
            if not hostname:
                continue
            if not self.instance_filter.matches_hostname(hostname):
                continue
            port = parse_port(r.labels.get("port"))
            container = containers.get(hostname, "")
            if not self.instance_filter.matches_container(container):
                continue
            if not container and not port:
                logger.warning("Skipping Nginx on %s: neither port nor container known", hostname)
                continue
            identifier = make_identifier(hostname, port, container)
            if identifier in seen:
                continue
            seen.add(identifier)

            if hostname not in ips:
                ips[hostname] = self._lookup_ip(hostname)
            instances.append(NginxInstance(
                identifier=identifier,
                hostname=hostname,
                ip=ips[hostname],
                port=port,
                container=container,
                app_type=r.labels.get("app_type", ""),
                version=r.labels.get("version", ""),
                install_path=r.labels.get("install_path", ""),
            ))
        logger.info("Discovered %d Nginx instances", len(instances))
        return instances

    def post_process(self, results: dict[str, NginxResult]) -> None:
        for result in results.values():
            for metric, field in _INT_FIELDS:
                value = result.value_of(metric)
                if value is not None:
                    setattr(result, field, int(value))
            for metric, field in _BOOL_FIELDS:
                value = result.value_of(metric)
                if value is not None:
                    setattr(result, field, value == 1)

            last_error = result.get_metric("nginx_last_error_timestamp")
            if last_error is not None and last_error.labels.get("error_log_path"):
                result.instance.error_log_path = last_error.labels["error_log_path"]

            capacity = result.worker_processes * result.worker_connections
            if capacity > 0:
                result.connection_usage_percent = result.active_connections * 100 / capacity
            else:
                result.connection_usage_percent = -1.0

    # ── Upstream health ───────────────────────────────────────────────────

    def _upstream_key(self, sample: QueryResult) -> tuple[str, str, str] | None:
        hostname = self.hostname_of(sample.labels)
        upstream = sample.labels.get("upstream", "")
        backend = sample.labels.get("name", "")
        if not hostname or not upstream or not backend:
            return None
        return hostname, upstream, backend

    def _upstream_values(self, query: str) -> dict[tuple[str, str, str], float]:
        values: dict[tuple[str, str, str], float] = {}
        for sample in self._query_or_empty(query, query):
            key = self._upstream_key(sample)
            if key is not None:
                values[key] = sample.value
        return values

    def collect_upstream_status(self, results: dict[str, NginxResult]) -> int:
        """Attach upstream backend health to *results*; returns the backend count.

        Raises ``BackendError`` when the status query fails; the rise and
        fall counters are optional.
        """
        statuses = self.client.query_results(UPSTREAM_STATUS_QUERY, self.backend_filter)
        if not statuses:
            return 0
        rises = self._upstream_values(UPSTREAM_RISE_QUERY)
        falls = self._upstream_values(UPSTREAM_FALL_QUERY)

        attached = 0
        for sample in statuses:
            key = self._upstream_key(sample)
            if key is None:
                continue
            identifier = self.match_sample(sample, results)
            if identifier is None:
                continue
            results[identifier].upstreams.append(UpstreamStatus(
                upstream_name=key[1],
                backend_address=key[2],
                healthy=int(sample.value) == 1,
                rise_count=int(rises.get(key, 0)),
                fall_count=int(falls.get(key, 0)),
            ))
            attached += 1
        logger.debug("Attached %d upstream backends", attached)
        return attached
