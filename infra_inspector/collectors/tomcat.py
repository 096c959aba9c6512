"""Tomcat collector: hostname-scoped instances enriched from ``tomcat_info``."""

from __future__ import annotations

import logging

from infra_inspector.collectors.base import HostScopedCollector, parse_port
from infra_inspector.models import TomcatInstance, TomcatResult, make_identifier

logger = logging.getLogger(__name__)

DISCOVERY_QUERY = "tomcat_up == 1"
INFO_QUERY = "tomcat_info"

_INT_FIELDS = (
    ("tomcat_connections", "connections"),
    ("tomcat_uptime_seconds", "uptime_seconds"),
    ("tomcat_last_error_timestamp", "last_error_timestamp"),
)
_BOOL_FIELDS = (
    ("tomcat_up", "up"),
    ("tomcat_non_root_user", "non_root_user"),
)


class TomcatCollector(HostScopedCollector[TomcatInstance, TomcatResult]):
    """Discovers running Tomcat processes from ``tomcat_up``.

    ``tomcat_info`` supplies port, version and paths; when it is unavailable
    only container deployments can still be identified.
    """

    kind = "tomcat"
    result_type = TomcatResult
    hostname_labels = ("agent_hostname", "ident", "host")

    def discover_instances(self) -> list[TomcatInstance]:
        results = self._query_or_fail(DISCOVERY_QUERY, "tomcat_up")
        info_map: dict[str, dict[str, str]] = {}
        for r in self._query_or_empty(INFO_QUERY, "tomcat_info"):
            hostname = self.hostname_of(r.labels)
            if hostname:
                info_map[hostname] = r.labels

        seen: set[str] = set()
        ips: dict[str, str] = {}
        instances: list[TomcatInstance] = []
        for r in results:
            hostname = self.hostname_of(r.labels)
            if not hostname:
                continue
            container = r.labels.get("container", "")
            if not self.instance_filter.matches_hostname(hostname):
                continue
            if not self.instance_filter.matches_container(container):
                continue
            info = info_map.get(hostname, {})
            port = parse_port(info.get("port")) or parse_port(r.labels.get("port"))
            if not container and not port:
                logger.warning("Skipping Tomcat on %s: neither port nor container known", hostname)
                continue
            identifier = make_identifier(hostname, port, container)
            if identifier in seen:
                continue
            seen.add(identifier)

            if hostname not in ips:
                ips[hostname] = self._lookup_ip(hostname)
            instances.append(TomcatInstance(
                identifier=identifier,
                hostname=hostname,
                ip=ips[hostname],
                port=port,
                container=container,
                app_type=info.get("app_type", ""),
                version=info.get("version", ""),
                install_path=info.get("install_path", ""),
                log_path=info.get("log_path", ""),
                jvm_config=info.get("jvm_config", ""),
            ))
        logger.info("Discovered %d Tomcat instances", len(instances))
        return instances

    def post_process(self, results: dict[str, TomcatResult]) -> None:
        for result in results.values():
            for metric, field in _INT_FIELDS:
                value = result.value_of(metric)
                if value is not None:
                    setattr(result, field, int(value))
            for metric, field in _BOOL_FIELDS:
                value = result.value_of(metric)
                if value is not None:
                    setattr(result, field, value == 1)
