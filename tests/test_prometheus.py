"""Tests for infra_inspector.prometheus module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from infra_inspector.errors import BackendError
from infra_inspector.prometheus import HostFilter, MetricsClient, inject_label_matchers


@pytest.fixture()
def mock_client():
    """Create a MetricsClient with a mocked httpx.Client and no backoff."""
    with patch.object(httpx, "Client") as mock_cls:
        mock_http = MagicMock()
        mock_cls.return_value = mock_http
        client = MetricsClient("http://vm:8428", max_retries=2, base_delay=0)
        client._client = mock_http
        yield client, mock_http


def _response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = str(body)
    resp.json.return_value = body
    return resp


def _vector(*series: tuple[dict, str]) -> dict:
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [{"metric": labels, "value": [1704067200, value]} for labels, value in series],
        },
    }


class TestMetricsClientInit:
    def test_base_url_trailing_slash_stripped(self):
        with patch.object(httpx, "Client"):
            c = MetricsClient("http://vm:8428/")
        assert c.base_url == "http://vm:8428"


class TestQuery:
    def test_returns_samples(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.return_value = _response(_vector(({"ident": "web-01"}, "12.5")))

        results = client.query("cpu_usage_active")
        assert len(results) == 1
        assert results[0].labels == {"ident": "web-01"}
        assert results[0].value == 12.5
        assert results[0].ident == "web-01"
        mock_http.get.assert_called_once_with("/api/v1/query", params={"query": "cpu_usage_active"})

    def test_drops_nan_inf_and_garbage(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.return_value = _response(_vector(
            ({"ident": "a"}, "NaN"),
            ({"ident": "b"}, "+Inf"),
            ({"ident": "c"}, "oops"),
            ({"ident": "d"}, "3"),
        ))
        assert [r.ident for r in client.query("x")] == ["d"]

    def test_api_error(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.return_value = _response(
            {"status": "error", "errorType": "bad_data", "error": "parse error"}
        )
        with pytest.raises(BackendError, match=r"\[bad_data\]: parse error"):
            client.query("x{")

    def test_non_vector_rejected(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.return_value = _response(
            {"status": "success", "data": {"resultType": "matrix", "result": []}}
        )
        with pytest.raises(BackendError, match="matrix"):
            client.query("x[5m]")

    def test_client_error_not_retried(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.return_value = _response({}, status=400)
        with pytest.raises(BackendError, match="400"):
            client.query("x")
        assert mock_http.get.call_count == 1

    def test_server_error_retried_then_succeeds(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.side_effect = [
            _response({}, status=503),
            httpx.ConnectError("refused"),
            _response(_vector(({"ident": "a"}, "1"))),
        ]
        assert len(client.query("up")) == 1
        assert mock_http.get.call_count == 3

    def test_retries_exhausted(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.side_effect = httpx.ConnectError("refused")
        with pytest.raises(BackendError, match="request failed"):
            client.query("up")
        assert mock_http.get.call_count == 3

    def test_query_results_applies_filter(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.return_value = _response(_vector())
        client.query_results("mysql_up", HostFilter(business_groups=["shop"]))
        mock_http.get.assert_called_once_with(
            "/api/v1/query", params={"query": 'mysql_up{busigroup=~"shop"}'}
        )

    def test_is_reachable(self, mock_client):
        client, mock_http = mock_client
        mock_http.get.return_value = _response(_vector(({}, "1")))
        assert client.is_reachable()
        mock_http.get.return_value = _response({}, status=401)
        assert not client.is_reachable()


class TestInjectLabelMatchers:
    groups = HostFilter(business_groups=["shop", "pay"])

    def test_no_filter_is_identity(self):
        assert inject_label_matchers("up", None) == "up"
        assert inject_label_matchers("up", HostFilter()) == "up"

    def test_bare_metric(self):
        assert inject_label_matchers("up", self.groups) == 'up{busigroup=~"shop|pay"}'

    def test_merges_existing_selector(self):
        got = inject_label_matchers('cpu_usage_active{cpu="cpu-total"}', self.groups)
        assert got == 'cpu_usage_active{cpu="cpu-total", busigroup=~"shop|pay"}'

    def test_binary_expression(self):
        got = inject_label_matchers("system_load1 / system_n_cpus", HostFilter(tags={"env": "prod"}))
        assert got == 'system_load1{env="prod"} / system_n_cpus{env="prod"}'

    def test_functions_ranges_and_grouping_untouched(self):
        got = inject_label_matchers(
            "sum by (instance) (rate(http_requests_total[5m])) > 1e3",
            HostFilter(tags={"env": "prod"}),
        )
        assert got == 'sum by (instance) (rate(http_requests_total{env="prod"}[5m])) > 1e3'

    def test_comparison_and_number(self):
        got = inject_label_matchers("100 - mem_available_percent", HostFilter(tags={"env": "prod"}))
        assert got == '100 - mem_available_percent{env="prod"}'

    def test_string_literals_untouched(self):
        got = inject_label_matchers('label_replace(up, "dst", "$1", "src", "(.*)")', self.groups)
        assert got == 'label_replace(up{busigroup=~"shop|pay"}, "dst", "$1", "src", "(.*)")'

    def test_tags_sorted_and_escaped(self):
        hf = HostFilter(tags={"zone": 'a"b', "env": "prod"})
        assert inject_label_matchers("up", hf) == 'up{env="prod", zone="a\\"b"}'
