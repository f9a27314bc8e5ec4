"""Async client for the Proxmox VE REST API."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from ..core.config import Settings
from ..core.errors import HypervisorError, ReachabilityTimeoutError, TaskTimeoutError
from ..core.models import HypervisorConfig, PowerState, VMRuntimeStatus

logger = logging.getLogger(__name__)

PRIMARY_DISK = "scsi0"
TCP_CONNECT_TIMEOUT_SECONDS = 5.0
TCP_RETRY_INTERVAL_SECONDS = 3.0

_DISK_SIZE_PATTERN = re.compile(r"(?:^|,)size=(\d+(?:\.\d+)?)([KMGT]?)", re.IGNORECASE)
_UNIT_TO_GB = {"": 1.0 / (1024 ** 3), "K": 1.0 / (1024 ** 2), "M": 1.0 / 1024, "G": 1.0, "T": 1024.0}


class HypervisorDriver(Protocol):
    """Operations the pipeline and teardown need from a hypervisor."""

    async def allocate_next_id(self) -> int: ...

    async def clone(
        self, node: str, template_id: int, new_id: int, name: str, storage: Optional[str] = None
    ) -> str: ...

    async def configure(
        self,
        node: str,
        vmid: int,
        cores: int,
        memory_mb: int,
        bridge: str,
        vlan: Optional[int] = None,
        ip_cidr: Optional[str] = None,
        gateway: Optional[str] = None,
        tags: Optional[str] = None,
    ) -> None: ...

    async def resize_primary_disk(self, node: str, vmid: int, size_gb: int) -> Optional[str]: ...

    async def get_primary_disk_size_gb(self, node: str, vmid: int) -> int: ...

    async def start(self, node: str, vmid: int) -> str: ...

    async def stop(self, node: str, vmid: int) -> str: ...

    async def delete(self, node: str, vmid: int) -> str: ...

    async def wait_for_task(self, node: str, task_ref: str, timeout: float) -> None: ...

    async def wait_for_tcp(self, host: str, port: int, timeout: float) -> None: ...

    async def get_runtime_status(self, node: str, vmid: int) -> VMRuntimeStatus: ...

    async def aclose(self) -> None: ...


HypervisorFactory = Callable[[HypervisorConfig], HypervisorDriver]


def parse_disk_size_gb(disk_config: str) -> int:
    """Return the size in whole GB from a drive string such as ``local-lvm:vm-1-disk-0,size=32G``."""
    match = _DISK_SIZE_PATTERN.search(disk_config or "")
    if not match:
        raise ValueError(f"no size in disk configuration {disk_config!r}")
    value, unit = match.groups()
    return int(float(value) * _UNIT_TO_GB[unit.upper()])


class ProxmoxClient:
    """Minimal Proxmox API client authenticated with an API token."""

    def __init__(
        self,
        api_url: str,
        token_id: str,
        token_secret: str,
        *,
        verify_tls: bool = True,
        timeout: float = 30.0,
        task_poll_interval: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        base_url = api_url.rstrip("/")
        if "://" not in base_url:
            base_url = f"https://{base_url}"
        self._client = httpx.AsyncClient(
            base_url=f"{base_url}/api2/json",
            headers={"Authorization": f"PVEAPIToken={token_id}={token_secret}"},
            verify=verify_tls,
            timeout=timeout,
            transport=transport,
        )
        self._task_poll_interval = task_poll_interval
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: HypervisorConfig, app_settings: Settings) -> "ProxmoxClient":
        return cls(
            config.api_url,
            config.api_token_id,
            config.api_token_secret,
            verify_tls=not app_settings.proxmox_insecure_tls,
            timeout=app_settings.proxmox_request_timeout_seconds,
            task_poll_interval=app_settings.task_poll_interval_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Issue a request and unwrap the ``data`` member of the response envelope."""
        try:
            response = await self._client.request(method, path, params=params, data=data)
        except httpx.RequestError as exc:
            raise HypervisorError(f"proxmox request {method} {path} failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.reason_phrase or response.text[:200]
            raise HypervisorError(
                f"proxmox api error: {response.status_code} {detail}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise HypervisorError(f"proxmox returned invalid JSON for {path}") from exc
        if not isinstance(body, dict):
            raise HypervisorError(f"proxmox returned an unexpected response body for {path}")
        return body.get("data")

    async def allocate_next_id(self) -> int:
        value = await self._request("GET", "/cluster/nextid")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise HypervisorError(f"proxmox returned invalid next id {value!r}") from exc

    async def clone(
        self, node: str, template_id: int, new_id: int, name: str, storage: Optional[str] = None
    ) -> str:
        # Storage is not forwarded: Proxmox rejects some target storages for
        # linked clones and defaults to the template's own storage.
        task = await self._request(
            "POST",
            f"/nodes/{node}/qemu/{template_id}/clone",
            data={"newid": new_id, "name": name},
        )
        return str(task or "")

    async def configure(
        self,
        node: str,
        vmid: int,
        cores: int,
        memory_mb: int,
        bridge: str,
        vlan: Optional[int] = None,
        ip_cidr: Optional[str] = None,
        gateway: Optional[str] = None,
        tags: Optional[str] = None,
    ) -> None:
        data: Dict[str, Any] = {}
        if cores > 0:
            data["cores"] = cores
        if memory_mb > 0:
            data["memory"] = memory_mb
        net = f"virtio,bridge={bridge}"
        if vlan is not None:
            net += f",tag={vlan}"
        data["net0"] = net
        if ip_cidr and gateway:
            data["ipconfig0"] = f"ip={ip_cidr},gw={gateway}"
        if tags:
            data["tags"] = tags
        await self._request("POST", f"/nodes/{node}/qemu/{vmid}/config", data=data)

    async def get_primary_disk_size_gb(self, node: str, vmid: int) -> int:
        config = await self._request("GET", f"/nodes/{node}/qemu/{vmid}/config") or {}
        disk = config.get(PRIMARY_DISK)
        if not disk:
            raise HypervisorError(f"VM {vmid} has no {PRIMARY_DISK} disk")
        try:
            return parse_disk_size_gb(str(disk))
        except ValueError as exc:
            raise HypervisorError(str(exc)) from exc

    async def resize_primary_disk(self, node: str, vmid: int, size_gb: int) -> Optional[str]:
        if size_gb <= 0:
            return None
        task = await self._request(
            "PUT",
            f"/nodes/{node}/qemu/{vmid}/resize",
            data={"disk": PRIMARY_DISK, "size": f"{size_gb}G"},
        )
        return str(task) if task else None

    async def start(self, node: str, vmid: int) -> str:
        return str(await self._request("POST", f"/nodes/{node}/qemu/{vmid}/status/start") or "")

    async def stop(self, node: str, vmid: int) -> str:
        return str(await self._request("POST", f"/nodes/{node}/qemu/{vmid}/status/stop") or "")

    async def delete(self, node: str, vmid: int) -> str:
        return str(await self._request("DELETE", f"/nodes/{node}/qemu/{vmid}") or "")

    async def get_runtime_status(self, node: str, vmid: int) -> VMRuntimeStatus:
        data = await self._request("GET", f"/nodes/{node}/qemu/{vmid}/status/current") or {}
        try:
            power_state = PowerState(str(data.get("status", "unknown")))
        except ValueError:
            power_state = PowerState.UNKNOWN
        return VMRuntimeStatus(
            cpu_fraction=float(data.get("cpu") or 0.0),
            mem_used=int(data.get("mem") or 0),
            mem_total=int(data.get("maxmem") or 0),
            disk_used=int(data.get("disk") or 0),
            disk_total=int(data.get("maxdisk") or 0),
            power_state=power_state,
        )

    async def wait_for_task(self, node: str, task_ref: str, timeout: float) -> None:
        """Poll a task until it stops; a non-OK exit status is a failure."""
        if not task_ref:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if loop.time() > deadline:
                raise TaskTimeoutError(task_ref, timeout)
            # The UPID goes into the path raw, colons included.
            task = await self._request("GET", f"/nodes/{node}/tasks/{task_ref}/status") or {}
            if task.get("status") == "stopped":
                exit_status = task.get("exitstatus")
                if exit_status == "OK":
                    return
                raise HypervisorError(f"proxmox task {task_ref} failed: {exit_status}")
            await self._sleep(self._task_poll_interval)

    async def wait_for_tcp(self, host: str, port: int, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if loop.time() > deadline:
                raise ReachabilityTimeoutError(
                    f"timeout waiting for {host}:{port} after {timeout:.0f}s"
                )
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, port), timeout=TCP_CONNECT_TIMEOUT_SECONDS
                )
            except (OSError, asyncio.TimeoutError) as exc:
                logger.debug("%s:%s not reachable yet: %s", host, port, exc)
            else:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError:
                    pass
                return
            await self._sleep(TCP_RETRY_INTERVAL_SECONDS)
