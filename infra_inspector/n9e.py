"""Nightingale (N9E) HTTP API client for host inventory lookups.

Used to:
  • List every monitored host for the host inspection
  • Resolve the IP address of a hostname for application instances
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from infra_inspector.errors import BackendError
from infra_inspector.models import NA, DiskMount, HostMeta, clean_ident

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(30.0, connect=5.0)

# Large enough to fetch the whole inventory in one page.
_PAGE_LIMIT = "10000"

_VIRTUAL_FS_NAMES = frozenset({"tmpfs", "overlay", "shm", "devtmpfs"})
_VIRTUAL_MOUNTS = frozenset({"/dev", "/dev/shm", "/run", "/sys", "/proc"})
_CONTAINER_MOUNT_PREFIXES = ("/run/containerd/", "/var/lib/kubelet/pods/")


class _RetryableInventoryError(BackendError):
    pass


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _is_physical_disk(fs: dict[str, Any]) -> bool:
    name = fs.get("name", "")
    mount = fs.get("mounted_on", "")
    if name in _VIRTUAL_FS_NAMES or mount in _VIRTUAL_MOUNTS:
        return False
    return not any(p in mount for p in _CONTAINER_MOUNT_PREFIXES)


class Target(BaseModel):
    """One host record as returned by ``/api/n9e/targets``."""

    id: int = 0
    ident: str
    note: str = ""
    tags: list[str] | None = None
    host_ip: str = ""
    os: str = ""
    cpu_num: int = 0
    arch: str = ""
    remote_addr: str = ""
    group_ids: list[int] | None = None
    extend_info: str = ""

    def extended(self) -> dict[str, Any]:
        """Decode ``extend_info``; an unparsable blob yields ``{}``."""
        if not self.extend_info:
            return {}
        try:
            info = json.loads(self.extend_info)
        except json.JSONDecodeError:
            logger.debug("Ignoring unparsable extend_info for %s", self.ident)
            return {}
        return info if isinstance(info, dict) else {}

    def to_host_meta(self) -> HostMeta:
        info = self.extended()
        platform = info.get("platform") or {}
        cpu = info.get("cpu") or {}
        memory = info.get("memory") or {}
        network = info.get("network") or {}

        ip = self.host_ip or network.get("ipaddress", "") or self.remote_addr
        mounts = [
            DiskMount(path=fs.get("mounted_on", ""), total=_to_int(fs.get("kb_size")) * 1024)
            for fs in info.get("filesystem") or []
            if isinstance(fs, dict) and _is_physical_disk(fs)
        ]
        return HostMeta(
            ident=self.ident,
            hostname=platform.get("hostname") or clean_ident(self.ident),
            ip=ip,
            os=self.os or platform.get("os", ""),
            os_version=platform.get("kernel_name", ""),
            kernel_version=platform.get("kernel_release", ""),
            cpu_cores=self.cpu_num or _to_int(cpu.get("cpu_cores")),
            cpu_model=cpu.get("model_name", ""),
            memory_total=_to_int(memory.get("total")),
            disk_mounts=mounts,
        )


class InventoryClient:
    """Lightweight N9E HTTP API client.

    Parameters
    ----------
    base_url : str
        Base URL of the N9E web API (e.g. ``http://n9e:17000``).
    token : str
        User token sent as ``X-User-Token``.
    query : str
        Optional inventory filter expression passed to the target listing.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        query: str = "",
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.query = query
        self.max_retries = max_retries
        self.base_delay = base_delay
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if token:
            headers["X-User-Token"] = token
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=_TIMEOUT.connect) if timeout else _TIMEOUT,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "InventoryClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ── Raw helpers ───────────────────────────────────────────────────────

    def _get_once(self, path: str, params: dict[str, str] | None) -> dict[str, Any]:
        try:
            resp = self._client.get(path, params=params)
        except httpx.TransportError as exc:
            raise _RetryableInventoryError(f"inventory request failed: {exc}") from exc
        if resp.status_code >= 500:
            raise _RetryableInventoryError(
                f"inventory returned status {resp.status_code}: {resp.text[:200]}"
            )
        if resp.status_code != 200:
            raise BackendError(f"inventory returned status {resp.status_code}: {resp.text[:200]}")
        body = resp.json()
        if body.get("err"):
            raise BackendError(f"inventory error: {body['err']}")
        return body.get("dat") or {}

    def _get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        retrying = Retrying(
            retry=retry_if_exception_type(_RetryableInventoryError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.base_delay, min=self.base_delay, max=self.base_delay * 8
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._get_once(path, params)
        raise BackendError(f"no attempt made for {path}")  # pragma: no cover

    # ── Targets ───────────────────────────────────────────────────────────

    def get_targets(self) -> list[Target]:
        """List every host in the inventory, narrowed by the configured query."""
        params = {"limit": _PAGE_LIMIT, "p": "1"}
        if self.query:
            params["query"] = self.query
        data = self._get("/api/n9e/targets", params=params)
        return [Target(**t) for t in data.get("list") or []]

    def get_target(self, ident: str) -> Target:
        return Target(**self._get(f"/api/n9e/target/{ident}"))

    def get_host_metas(self) -> list[HostMeta]:
        return [t.to_host_meta() for t in self.get_targets()]

    def get_host_meta(self, ident: str) -> HostMeta:
        return self.get_target(ident).to_host_meta()


def resolve_ip(client: InventoryClient | None, hostname: str) -> str:
    """Return the inventory IP of *hostname*, or ``"N/A"`` when unknown."""
    if client is None or not hostname:
        return NA
    try:
        meta = client.get_host_meta(hostname)
    except (BackendError, ValueError) as exc:
        logger.debug("IP lookup for %s failed: %s", hostname, exc)
        return NA
    return meta.ip or NA
