"""Shared test fixtures."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from fakes import FakeInventory, FakeMetricsClient
from infra_inspector.models import HostMeta


@pytest.fixture()
def fake_client() -> FakeMetricsClient:
    return FakeMetricsClient()


@pytest.fixture()
def inventory() -> FakeInventory:
    return FakeInventory([
        HostMeta(ident="web-01@10.0.0.1", hostname="web-01", ip="10.0.0.1", cpu_cores=4),
        HostMeta(ident="web-02@10.0.0.2", hostname="web-02", ip="10.0.0.2", cpu_cores=8),
    ])


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    """A minimal valid configuration with MySQL, Redis and Nginx enabled."""
    path = tmp_path / "config.yaml"
    path.write_text(
        textwrap.dedent("""\
        datasources:
          n9e:
            endpoint: http://n9e:17000
            token: secret
          victoriametrics:
            endpoint: http://vm:8428
        inspection:
          concurrency: 10
        report:
          output_dir: ./out
          timezone: UTC
        mysql:
          enabled: true
          cluster_mode: mgr
          instance_filter:
            address_patterns: ["10.0.1.*"]
        redis:
          enabled: true
          cluster_mode: 3m3s
        nginx:
          enabled: true
          thresholds:
            connection_usage_warning: 60
            connection_usage_critical: 80
        tomcat:
          enabled: false
        """),
        encoding="utf-8",
    )
    return path
