"""
VPS Resource Allocator
======================

Hands out hypervisor numeric ids (vmid) and IP addresses.

Allocation and the write of the instance row that claims the result happen
under one asyncio.Lock, so two concurrent provisions can never be handed
the same vmid or address.
"""

import asyncio
import logging
from typing import Dict, Optional

from .errors import PoolExhausted
from .models import Instance, InstanceKind, IPPool
from .store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_VMID_FLOORS = {InstanceKind.QEMU: 110, InstanceKind.LXC: 5000}


class ResourceAllocator:
    """Single-writer allocator for vmids and pool addresses."""

    def __init__(self, store: StateStore, vmid_floors: Optional[Dict[InstanceKind, int]] = None):
        self.store = store
        self.vmid_floors = dict(DEFAULT_VMID_FLOORS)
        if vmid_floors:
            self.vmid_floors.update(vmid_floors)
        self._lock = asyncio.Lock()
        self._last_issued: Dict[InstanceKind, int] = {}

    async def next_vmid(self, kind: InstanceKind = InstanceKind.QEMU) -> int:
        """
        Next free vmid for the guest kind.

        Never lower than the floor, the highest live vmid + 1, or the last
        value issued by this process + 1. Within one process an id is never
        reissued, even after the highest instance gets deleted.
        """
        current = await self.store.max_vmid(kind)
        candidates = [self.vmid_floors[kind]]
        if current is not None:
            candidates.append(current + 1)
        if kind in self._last_issued:
            candidates.append(self._last_issued[kind] + 1)

        vmid = max(candidates)
        self._last_issued[kind] = vmid
        return vmid

    async def next_ip(self, pool: IPPool) -> str:
        """Smallest address in the pool range not bound to a live instance."""
        bound = await self.store.bound_ips()
        for address in pool.addresses():
            if address not in bound:
                return address
        raise PoolExhausted(pool.name)

    async def reserve(self, instance: Instance, pool: Optional[IPPool]) -> Instance:
        """
        Give the instance a vmid and (when a pool is supplied) an address,
        then persist it. Values the instance already holds are kept.
        """
        async with self._lock:
            if instance.vmid is None:
                instance.vmid = await self.next_vmid(instance.kind)
            if pool is not None and instance.ip_address is None:
                instance.ip_address = await self.next_ip(pool)
                instance.bridge = pool.bridge
                if pool.vlan is not None:
                    instance.vlan = pool.vlan

            await self.store.save_instance(instance)

        logger.info(
            f"Reserved vmid {instance.vmid} ip {instance.ip_address or 'dhcp'} for {instance.hostname}",
            extra={"instance_id": instance.id, "vmid": instance.vmid},
        )
        return instance
