"""Prometheus / VictoriaMetrics HTTP API client for instant queries.

Every collector talks to the metrics backend through this client.  Queries can
be narrowed server-side by business group and host tags, which are injected as
label matchers into each metric selector of the PromQL expression.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any

import httpx
from pydantic import BaseModel, Field
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from infra_inspector.errors import BackendError

logger = logging.getLogger(__name__)

# Timeout for metrics backend API calls.
_TIMEOUT = httpx.Timeout(30.0, connect=5.0)

# Label holding the business group of a host in the backend.
BUSINESS_GROUP_LABEL = "busigroup"

# Labels that identify the host a sample belongs to, in priority order.
IDENT_LABELS = ("ident", "host", "instance")


class HostFilter(BaseModel):
    """Server-side filter: any of *business_groups*, all of *tags*."""

    business_groups: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.business_groups and not self.tags

    def matchers(self) -> list[str]:
        out: list[str] = []
        if self.business_groups:
            groups = "|".join(re.escape(g) for g in self.business_groups)
            out.append(f'{BUSINESS_GROUP_LABEL}=~"{_escape_label_value(groups)}"')
        for key in sorted(self.tags):
            out.append(f'{key}="{_escape_label_value(self.tags[key])}"')
        return out


class QueryResult(BaseModel):
    """One series of an instant-vector result."""

    labels: dict[str, str] = Field(default_factory=dict)
    value: float = 0.0
    timestamp: float = 0.0

    @property
    def ident(self) -> str:
        for key in IDENT_LABELS:
            if self.labels.get(key):
                return self.labels[key]
        return ""


class RetryableBackendError(BackendError):
    """Transport failures and 5xx responses."""


# ── Label matcher injection ──────────────────────────────────────────────────

_KEYWORDS = frozenset({
    "and", "or", "unless", "by", "without", "on", "ignoring",
    "group_left", "group_right", "bool", "offset", "atan2",
    # Aggregation operators may be followed by a grouping clause instead of "(".
    "sum", "min", "max", "avg", "count", "group", "stddev", "stdvar",
    "topk", "bottomk", "quantile", "count_values",
})
_GROUPING = frozenset({"by", "without", "on", "ignoring", "group_left", "group_right"})
_IDENT_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _skip_string(expr: str, i: int) -> int:
    quote = expr[i]
    i += 1
    while i < len(expr) and expr[i] != quote:
        if expr[i] == "\\":
            i += 1
        i += 1
    return i + 1


def _skip_group(expr: str, i: int, open_ch: str, close_ch: str) -> int:
    """Return the index just past the bracket group starting at *i*."""
    depth = 0
    while i < len(expr):
        ch = expr[i]
        if ch in "\"'`":
            i = _skip_string(expr, i)
            continue
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return i


def _next_non_space(expr: str, i: int) -> int:
    while i < len(expr) and expr[i].isspace():
        i += 1
    return i


def inject_label_matchers(promql: str, host_filter: HostFilter | None) -> str:
    """Add the filter's label matchers to every metric selector in *promql*.

    Function names, keywords, grouping label lists, range durations and string
    literals are left untouched.  An empty filter returns *promql* unchanged.
    """
    if host_filter is None or host_filter.is_empty():
        return promql
    matchers = ", ".join(host_filter.matchers())

    out: list[str] = []
    i = 0
    n = len(promql)
    while i < n:
        ch = promql[i]
        if ch in "\"'`":
            end = _skip_string(promql, i)
            out.append(promql[i:end])
            i = end
            continue
        if ch == "[":
            end = _skip_group(promql, i, "[", "]")
            out.append(promql[i:end])
            i = end
            continue
        if ch == "{":
            # Bare selector such as {__name__="x"}.
            end = _skip_group(promql, i, "{", "}")
            out.append(_merge_braces(promql[i:end], matchers))
            i = end
            continue
        prev = promql[i - 1] if i else ""
        m = _IDENT_RE.match(promql, i)
        if m is None or prev.isdigit() or prev == ".":
            out.append(ch)
            i += 1
            continue

        word = m.group(0)
        j = _next_non_space(promql, m.end())
        nxt = promql[j] if j < n else ""
        if word.lower() in _GROUPING and nxt == "(":
            end = _skip_group(promql, j, "(", ")")
            out.append(promql[i:end])
            i = end
            continue
        if word.lower() in _KEYWORDS or nxt == "(" or word.lower() in {"inf", "nan"}:
            out.append(word)
            i = m.end()
            continue
        if nxt == "{":
            end = _skip_group(promql, j, "{", "}")
            out.append(word + _merge_braces(promql[j:end], matchers))
            i = end
            continue
        out.append(f"{word}{{{matchers}}}")
        i = m.end()
    return "".join(out)


def _merge_braces(braces: str, matchers: str) -> str:
    inner = braces[1:-1].strip()
    if not inner:
        return f"{{{matchers}}}"
    return f"{{{inner}, {matchers}}}"


# ── Client ───────────────────────────────────────────────────────────────────


class MetricsClient:
    """Instant-query client for the Prometheus HTTP API v1.

    Parameters
    ----------
    base_url : str
        Base URL of the backend (e.g. ``http://victoriametrics:8428``).
    timeout : float
        Per-request timeout in seconds.
    max_retries : int
        Extra attempts for connection errors, timeouts and 5xx responses.
    base_delay : float
        First backoff delay in seconds; doubles on each retry.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        ca_cert: str = "",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        verify: bool | str = ca_cert if ca_cert else True
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=_TIMEOUT.connect) if timeout else _TIMEOUT,
            verify=verify,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "MetricsClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ── Raw helpers ───────────────────────────────────────────────────────

    def _get_once(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        try:
            resp = self._client.get(path, params=params)
        except httpx.TransportError as exc:
            raise RetryableBackendError(f"metrics backend request failed: {exc}") from exc
        if resp.status_code >= 500:
            raise RetryableBackendError(
                f"metrics backend returned status {resp.status_code}: {resp.text[:200]}"
            )
        if resp.status_code != 200:
            raise BackendError(
                f"metrics backend returned status {resp.status_code}: {resp.text[:200]}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError(f"metrics backend returned invalid JSON: {exc}") from exc

    def _get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        """Execute a GET request, retrying transient failures.

        Returns the parsed JSON response body.
        Raises ``BackendError`` once retries are exhausted.
        """
        retrying = Retrying(
            retry=retry_if_exception_type(RetryableBackendError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.base_delay, min=self.base_delay, max=self.base_delay * 8
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.debug(
                        "Retrying %s (attempt %d)", path, attempt.retry_state.attempt_number
                    )
                return self._get_once(path, params)
        raise BackendError(f"no attempt made for {path}")  # pragma: no cover

    # ── Instant query ─────────────────────────────────────────────────────

    def query(self, promql: str) -> list[QueryResult]:
        """Execute an instant query and return the result vector.

        Samples whose value is NaN, infinite or unparsable are dropped.
        """
        body = self._get("/api/v1/query", params={"query": promql})
        if body.get("status") != "success":
            raise BackendError(
                f"metrics backend error [{body.get('errorType', 'unknown')}]: "
                f"{body.get('error', 'no error message')}"
            )
        data = body.get("data", {})
        result_type = data.get("resultType", "")
        if result_type != "vector":
            raise BackendError(f"unexpected result type {result_type!r} (expected vector)")

        results: list[QueryResult] = []
        for series in data.get("result", []):
            sample = series.get("value") or []
            if len(sample) != 2:
                continue
            try:
                value = float(sample[1])
            except (TypeError, ValueError):
                logger.debug("Skipping unparsable sample %r for %s", sample[1], promql)
                continue
            if math.isnan(value) or math.isinf(value):
                continue
            results.append(QueryResult(
                labels=series.get("metric", {}),
                value=value,
                timestamp=float(sample[0] or 0),
            ))
        return results

    def query_results(
        self, promql: str, host_filter: HostFilter | None = None
    ) -> list[QueryResult]:
        """Execute *promql* narrowed by *host_filter*."""
        return self.query(inject_label_matchers(promql, host_filter))

    def is_reachable(self) -> bool:
        """Check if the backend answers a trivial query."""
        try:
            self.query("vector(1)")
            return True
        except BackendError:
            return False
