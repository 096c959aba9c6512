"""Shared discovery and concurrent metric collection.

Every application collector follows the same shape: discover instances from a
liveness-style query, then fan out one task per metric definition on a thread
pool.  Per-metric failures are logged and skipped; only the task group as a
whole (cancellation, deadline, unexpected bug) aborts a collection.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Generic, TypeVar

from infra_inspector.errors import (
    BackendError,
    CollectionCancelled,
    CollectionError,
    DiscoveryError,
)
from infra_inspector.matching import InstanceFilter
from infra_inspector.models import (
    Instance,
    InstanceResult,
    MetricDefinition,
    MetricValue,
    make_identifier,
)
from infra_inspector.n9e import InventoryClient, resolve_ip
from infra_inspector.prometheus import HostFilter, MetricsClient, QueryResult

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 20

# How often the coordinator wakes up to check for cancellation.
_POLL_INTERVAL = 0.2

InstanceT = TypeVar("InstanceT", bound=Instance)
ResultT = TypeVar("ResultT", bound=InstanceResult)


def first_label(labels: dict[str, str], keys: tuple[str, ...]) -> str:
    """Value of the first non-empty label among *keys*."""
    for key in keys:
        value = labels.get(key, "")
        if value:
            return value
    return ""


class BaseCollector(Generic[InstanceT, ResultT]):
    """Discovery plus bounded concurrent collection for one application type.

    Parameters
    ----------
    client : MetricsClient
        Metrics backend used for every query.
    metrics : list[MetricDefinition]
        Metric definitions collected for each instance.
    instance_filter : InstanceFilter | None
        Which instances to inspect.  ``None`` inspects everything.
    inventory : InventoryClient | None
        Host inventory, used where an instance IP must be looked up.
    concurrency : int
        Maximum number of metric queries in flight.
    """

    kind = ""
    result_type: type[InstanceResult] = InstanceResult

    def __init__(
        self,
        client: MetricsClient,
        metrics: list[MetricDefinition],
        instance_filter: InstanceFilter | None = None,
        *,
        inventory: InventoryClient | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.client = client
        self.metrics = list(metrics)
        self.instance_filter = instance_filter or InstanceFilter()
        self.inventory = inventory
        self.concurrency = concurrency
        self.backend_filter: HostFilter | None = self.instance_filter.to_backend_filter()

    # ── Discovery ─────────────────────────────────────────────────────────

    def discover_instances(self) -> list[InstanceT]:
        raise NotImplementedError

    def _query_or_fail(self, query: str, name: str) -> list[QueryResult]:
        try:
            return self.client.query_results(query, self.backend_filter)
        except BackendError as exc:
            logger.error("Discovery query %s failed: %s", name, exc)
            raise DiscoveryError(f"failed to query {name}: {exc}") from exc

    def _query_or_empty(self, query: str, name: str) -> list[QueryResult]:
        try:
            return self.client.query_results(query, self.backend_filter)
        except BackendError as exc:
            logger.warning("Secondary query %s failed, continuing without it: %s", name, exc)
            return []

    def _lookup_ip(self, hostname: str) -> str:
        return resolve_ip(self.inventory, hostname)

    # ── Collection ────────────────────────────────────────────────────────

    def new_result(self, instance: InstanceT) -> ResultT:
        return self.result_type(instance=instance)  # type: ignore[return-value]

    def applicable_metrics(self, metrics: list[MetricDefinition]) -> list[MetricDefinition]:
        """Active metrics that apply to this collector's topology."""
        return metrics

    def collect_metrics(
        self,
        instances: list[InstanceT],
        metrics: list[MetricDefinition] | None = None,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> dict[str, ResultT]:
        """Collect every metric for *instances*, keyed by instance identifier.

        Pending metrics are recorded as N/A for every instance.  A failing
        query leaves only its own metric unset.  Raises ``CollectionCancelled``
        when *cancel* is set or *timeout* seconds elapse before all metric
        tasks finish.
        """
        metrics = self.metrics if metrics is None else metrics
        collected_at = datetime.now(timezone.utc)
        results: dict[str, ResultT] = {}
        for inst in instances:
            result = self.new_result(inst)
            result.collected_at = collected_at
            results[inst.identifier] = result

        pending = [m for m in metrics if m.is_pending]
        active = [m for m in metrics if not m.is_pending]
        for metric in pending:
            for result in results.values():
                result.set_metric(MetricValue.na(metric.name))

        active = self.applicable_metrics(active)
        if not active:
            logger.warning("No active %s metrics to collect", self.kind)
            return results

        logger.debug(
            "Collecting %d %s metrics for %d instances (concurrency=%d)",
            len(active), self.kind, len(results), self.concurrency,
        )
        self._fan_out(active, results, cancel or threading.Event(), timeout)
        self.post_process(results)
        return results

    def _fan_out(
        self,
        active: list[MetricDefinition],
        results: dict[str, ResultT],
        cancel: threading.Event,
        timeout: float | None,
    ) -> None:
        lock = threading.Lock()
        expired = threading.Event()
        deadline = time.monotonic() + timeout if timeout else None
        executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=f"collect-{self.kind}"
        )
        futures: list[Future[None]] = [
            executor.submit(self._collect_one, metric, results, lock, cancel, expired)
            for metric in active
        ]
        try:
            not_done = set(futures)
            while not_done:
                if cancel.is_set():
                    raise CollectionCancelled(f"{self.kind} collection cancelled")
                tick = _POLL_INTERVAL
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        expired.set()
                        raise CollectionCancelled(
                            f"{self.kind} collection exceeded deadline of {timeout:g}s"
                        )
                    tick = min(tick, remaining)
                _, not_done = wait(not_done, timeout=tick, return_when=FIRST_COMPLETED)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if cancel.is_set():
            raise CollectionCancelled(f"{self.kind} collection cancelled")
        for future in futures:
            exc = future.exception()
            if exc is not None:
                raise CollectionError(f"{self.kind} metric task failed: {exc}") from exc

    def _collect_one(
        self,
        metric: MetricDefinition,
        results: dict[str, ResultT],
        lock: threading.Lock,
        cancel: threading.Event,
        expired: threading.Event,
    ) -> None:
        if cancel.is_set() or expired.is_set():
            return
        try:
            samples = self.client.query_results(metric.query, self.backend_filter)
        except BackendError as exc:
            logger.warning("Query for %s metric %s failed: %s", self.kind, metric.name, exc)
            return
        if cancel.is_set() or expired.is_set():
            return
        with lock:
            matched = self.record(metric, samples, results)
        logger.debug("Metric %s matched %d of %d series", metric.name, matched, len(samples))

    def record(
        self, metric: MetricDefinition, samples: list[QueryResult], results: dict[str, ResultT]
    ) -> int:
        """Write *samples* into *results*; caller holds the results lock."""
        reading = metric.extraction
        matched = 0
        for sample in samples:
            key = self.match_sample(sample, results)
            if key is None:
                continue
            value = reading.read(metric.name, sample.labels, sample.value)
            if value is None:
                continue
            results[key].set_metric(value)
            matched += 1
        return matched

    def match_sample(self, sample: QueryResult, results: dict[str, ResultT]) -> str | None:
        """Identifier of the collected instance *sample* belongs to, if any."""
        raise NotImplementedError

    def post_process(self, results: dict[str, ResultT]) -> None:
        """Derive denormalized fields once all metric tasks have finished."""


def parse_port(value: str | None) -> int:
    try:
        port = int(value or 0)
    except ValueError:
        return 0
    return port if 0 < port <= 65535 else 0


class HostScopedCollector(BaseCollector[InstanceT, ResultT]):
    """Collector for processes identified by hostname plus container or port.

    A series is attributed to an instance by its container identifier first,
    then by its port identifier, and finally to the only instance running on
    its host.
    """

    hostname_labels: tuple[str, ...] = ("agent_hostname", "ident")

    def hostname_of(self, labels: dict[str, str]) -> str:
        return first_label(labels, self.hostname_labels)

    def container_map(self, query: str, name: str) -> dict[str, str]:
        """Map hostname to container name from a secondary query."""
        out: dict[str, str] = {}
        for r in self._query_or_empty(query, name):
            hostname = self.hostname_of(r.labels)
            container = r.labels.get("container", "")
            if hostname and container:
                out[hostname] = container
        return out

    def match_sample(self, sample: QueryResult, results: dict[str, ResultT]) -> str | None:
        hostname = self.hostname_of(sample.labels)
        if not hostname or not self.instance_filter.matches_hostname(hostname):
            return None
        container = sample.labels.get("container", "")
        if container:
            key = make_identifier(hostname, container=container)
            if key in results:
                return key
        port = parse_port(sample.labels.get("port"))
        if port:
            key = make_identifier(hostname, port)
            if key in results:
                return key
        on_host = [k for k, r in results.items() if getattr(r.instance, "hostname", "") == hostname]
        if len(on_host) == 1:
            return on_host[0]
        if on_host:
            logger.debug("Ambiguous series for %s matches %d instances", hostname, len(on_host))
        return None
