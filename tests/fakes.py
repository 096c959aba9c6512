"""In-memory stand-ins for the metrics backend and the host inventory."""

from __future__ import annotations

import threading
import time

from infra_inspector.errors import BackendError
from infra_inspector.models import HostMeta, MetricDefinition
from infra_inspector.prometheus import HostFilter, QueryResult


def sample(value: float = 1.0, **labels: str) -> QueryResult:
    return QueryResult(labels=labels, value=value)


class FakeMetricsClient:
    """Stands in for ``MetricsClient``: canned series per query string.

    A query mapped to an exception raises it; unknown queries return no
    series.  Every call is recorded with the filter it was made with.
    """

    def __init__(
        self,
        responses: dict[str, list[QueryResult] | Exception] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.responses = dict(responses or {})
        self.delay = delay
        self.calls: list[tuple[str, HostFilter | None]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def query_results(self, promql: str, host_filter: HostFilter | None = None) -> list[QueryResult]:
        with self._lock:
            self.calls.append((promql, host_filter))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            response = self.responses.get(promql, [])
            if isinstance(response, Exception):
                raise response
            return list(response)
        finally:
            with self._lock:
                self.in_flight -= 1

    @property
    def queries(self) -> list[str]:
        return [q for q, _ in self.calls]


class FakeInventory:
    """Stands in for ``InventoryClient``."""

    def __init__(self, metas: list[HostMeta] | None = None, *, error: Exception | None = None) -> None:
        self.metas = list(metas or [])
        self.error = error
        self.lookups: list[str] = []

    def get_host_metas(self) -> list[HostMeta]:
        if self.error is not None:
            raise self.error
        return list(self.metas)

    def get_host_meta(self, ident: str) -> HostMeta:
        self.lookups.append(ident)
        for meta in self.metas:
            if meta.hostname == ident or meta.ident == ident:
                return meta
        raise BackendError(f"inventory error: target {ident} not found")


def metric(name: str, query: str | None = None, **kwargs) -> MetricDefinition:
    return MetricDefinition(
        name=name,
        display_name=kwargs.pop("display_name", name.replace("_", " ").capitalize()),
        query=name if query is None else query,
        **kwargs,
    )


