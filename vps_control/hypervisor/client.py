"""
Proxmox VE API Client
=====================

Thin async wrapper over the Proxmox VE REST API using httpx.

Every mutating call returns the UPID task handle the hypervisor hands back;
callers pass it to TaskPoller.wait_for_task(). There are no retries at this
layer: the job dispatcher owns retry policy.

API Docs: https://pve.proxmox.com/pve-docs/api-viewer/
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from ..config import ProxmoxConfig
from ..errors import HypervisorError, ValidationError
from ..models import InstanceKind

logger = logging.getLogger(__name__)


def _require_node(node: str) -> None:
    if not node or not str(node).strip():
        raise ValidationError("Node name must not be empty")


def _require_id(value: int, label: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValidationError(f"{label} must be a positive integer, got {value!r}")


class ProxmoxClient:
    """
    Async Proxmox VE client.

    Authenticates with an API token (`PVEAPIToken=<id>=<secret>`). TLS
    verification is on unless ProxmoxConfig.tls_insecure is set.
    """

    def __init__(
        self,
        config: ProxmoxConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        if config.tls_insecure:
            logger.warning("Proxmox TLS verification disabled (PVE_TLS_INSECURE)")

        self.client = httpx.AsyncClient(
            base_url=config.api_url.rstrip("/"),
            headers={
                "Authorization": config.auth_header,
                "Accept": "application/json",
            },
            timeout=config.request_timeout,
            verify=not config.tls_insecure,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make an authenticated API request and unwrap the `data` envelope."""
        try:
            response = await self.client.request(
                method=method,
                url=endpoint,
                data=data,
                params=params,
            )
            response.raise_for_status()

            if not response.content:
                return None
            return response.json().get("data")

        except httpx.HTTPStatusError as e:
            error_msg = e.response.reason_phrase or "request rejected"
            try:
                error_data = e.response.json()
                if error_data.get("errors"):
                    error_msg = f"{error_msg} {error_data['errors']}"
                elif error_data.get("message"):
                    error_msg = error_data["message"].strip()
            except ValueError:
                pass
            raise HypervisorError(f"{method} {endpoint}: {error_msg}", e.response.status_code)
        except httpx.HTTPError as e:
            raise HypervisorError(f"{method} {endpoint}: {e}")

    @staticmethod
    def _guest_path(node: str, kind: InstanceKind, vmid: int) -> str:
        return f"/nodes/{node}/{kind.value}/{vmid}"

    # =========================================
    # NODES & TASKS
    # =========================================

    async def list_nodes(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/nodes") or []

    async def get_task_status(self, node: str, upid: str) -> Dict[str, Any]:
        _require_node(node)
        if not upid:
            raise ValidationError("Task UPID must not be empty")
        return await self._request("GET", f"/nodes/{node}/tasks/{quote(upid, safe='')}/status") or {}

    # =========================================
    # GUEST LIFECYCLE
    # =========================================

    async def clone(
        self,
        node: str,
        template_vmid: int,
        new_vmid: int,
        name: Optional[str] = None,
        kind: InstanceKind = InstanceKind.QEMU,
        full: bool = True,
        storage: Optional[str] = None,
    ) -> str:
        """Clone a template into a new guest. Returns the UPID."""
        _require_node(node)
        _require_id(template_vmid, "Template id")
        _require_id(new_vmid, "New vmid")

        params: Dict[str, Any] = {"newid": new_vmid, "full": 1 if full else 0}
        if name:
            params["hostname" if kind == InstanceKind.LXC else "name"] = name
        if storage:
            params["storage"] = storage

        logger.info(f"Cloning {kind.value} template {template_vmid} to {new_vmid} on {node}")
        return await self._request("POST", f"{self._guest_path(node, kind, template_vmid)}/clone", data=params)

    async def set_config(
        self,
        node: str,
        vmid: int,
        config: Dict[str, Any],
        kind: InstanceKind = InstanceKind.QEMU,
    ) -> Optional[str]:
        """Apply guest configuration. May return a UPID for async changes."""
        _require_node(node)
        _require_id(vmid, "vmid")
        if not config:
            raise ValidationError("Config update must not be empty")
        method = "POST" if kind == InstanceKind.QEMU else "PUT"
        return await self._request(method, f"{self._guest_path(node, kind, vmid)}/config", data=config)

    async def resize_disk(
        self,
        node: str,
        vmid: int,
        disk: str,
        size: str,
        kind: InstanceKind = InstanceKind.QEMU,
    ) -> Optional[str]:
        """Grow a disk to an absolute size such as `80G`."""
        _require_node(node)
        _require_id(vmid, "vmid")
        if not disk or not size:
            raise ValidationError("Disk and size must not be empty")
        return await self._request(
            "PUT",
            f"{self._guest_path(node, kind, vmid)}/resize",
            data={"disk": disk, "size": size},
        )

    async def start(self, node: str, vmid: int, kind: InstanceKind = InstanceKind.QEMU) -> str:
        _require_node(node)
        _require_id(vmid, "vmid")
        return await self._request("POST", f"{self._guest_path(node, kind, vmid)}/status/start")

    async def stop(self, node: str, vmid: int, kind: InstanceKind = InstanceKind.QEMU) -> str:
        _require_node(node)
        _require_id(vmid, "vmid")
        return await self._request("POST", f"{self._guest_path(node, kind, vmid)}/status/stop")

    async def reboot(self, node: str, vmid: int, kind: InstanceKind = InstanceKind.QEMU) -> str:
        _require_node(node)
        _require_id(vmid, "vmid")
        return await self._request("POST", f"{self._guest_path(node, kind, vmid)}/status/reboot")

    async def delete(self, node: str, vmid: int, kind: InstanceKind = InstanceKind.QEMU) -> str:
        """Destroy a guest and its disks. Returns the UPID."""
        _require_node(node)
        _require_id(vmid, "vmid")
        logger.info(f"Destroying {kind.value} {vmid} on {node}")
        return await self._request("DELETE", self._guest_path(node, kind, vmid), params={"purge": 1})

    async def get_status(self, node: str, vmid: int, kind: InstanceKind = InstanceKind.QEMU) -> Dict[str, Any]:
        """Live resource status (state, cpu, mem, uptime)."""
        _require_node(node)
        _require_id(vmid, "vmid")
        return await self._request("GET", f"{self._guest_path(node, kind, vmid)}/status/current") or {}

    # =========================================
    # SNAPSHOTS
    # =========================================

    async def create_snapshot(
        self,
        node: str,
        vmid: int,
        name: str,
        description: str = "",
        kind: InstanceKind = InstanceKind.QEMU,
    ) -> str:
        _require_node(node)
        _require_id(vmid, "vmid")
        if not name:
            raise ValidationError("Snapshot name must not be empty")

        data = {"snapname": name}
        if description:
            data["description"] = description
        return await self._request("POST", f"{self._guest_path(node, kind, vmid)}/snapshot", data=data)

    async def list_snapshots(
        self,
        node: str,
        vmid: int,
        kind: InstanceKind = InstanceKind.QEMU,
    ) -> List[Dict[str, Any]]:
        """Snapshots of a guest, without the `current` pseudo-entry."""
        _require_node(node)
        _require_id(vmid, "vmid")
        snapshots = await self._request("GET", f"{self._guest_path(node, kind, vmid)}/snapshot") or []
        return [s for s in snapshots if s.get("name") != "current"]
