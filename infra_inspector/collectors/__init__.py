"""Per-application instance discovery and metric collection."""

from infra_inspector.collectors.base import DEFAULT_CONCURRENCY, BaseCollector
from infra_inspector.collectors.host import HostCollector
from infra_inspector.collectors.mysql import MySQLCollector
from infra_inspector.collectors.nginx import NginxCollector
from infra_inspector.collectors.redis import RedisCollector
from infra_inspector.collectors.tomcat import TomcatCollector

__all__ = [
    "DEFAULT_CONCURRENCY",
    "BaseCollector",
    "HostCollector",
    "MySQLCollector",
    "NginxCollector",
    "RedisCollector",
    "TomcatCollector",
]
