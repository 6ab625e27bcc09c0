"""
VPS Provisioning Pipeline
=========================

Turns a paid order into a running instance.

Steps per attempt:
1. Reserve vmid + IP (reusing the order's instance row on retry)
2. Clone the plan template (skipped when the guest already exists)
3. Apply cores, memory, network and cloud-init config
4. Resize the primary disk (best-effort)
5. Start the guest and wait for it
6. Mark instance running and order completed

A failed attempt leaves the instance in ERROR and re-raises so the
dispatcher can retry. When retries are exhausted on_failed() marks the
order FAILED.
"""

import logging
import secrets
import string
from typing import Any, Dict, Optional
from urllib.parse import quote

from .allocator import ResourceAllocator
from .catalog import Plan, PlanCatalog
from .config import ProxmoxConfig
from .errors import HypervisorError, NotFoundError, VPSControlError
from .hypervisor import ProxmoxClient, TaskPoller
from .jobs import Job, ProvisionPayload
from .models import Instance, InstanceKind, InstanceStatus, IPPool, Order, OrderStatus, utcnow
from .store import StateStore

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 16


def generate_root_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def hostname_for(order_id: str) -> str:
    return f"vm-{order_id[:8]}"


class ProvisioningPipeline:
    """Handler for the provision queue."""

    def __init__(
        self,
        store: StateStore,
        client: ProxmoxClient,
        poller: TaskPoller,
        allocator: ResourceAllocator,
        catalog: PlanCatalog,
        config: ProxmoxConfig,
    ):
        self.store = store
        self.client = client
        self.poller = poller
        self.allocator = allocator
        self.catalog = catalog
        self.config = config

    def payload_for(self, order: Order, plan: Optional[Plan] = None) -> ProvisionPayload:
        """Build the provision job payload for a paid order."""
        plan = plan or self.catalog.get(order.plan_id)
        return ProvisionPayload(
            order_id=order.id,
            hostname=hostname_for(order.id),
            node=self.config.default_node,
            cpu=plan.cpu_cores,
            ram_mb=plan.ram_mb,
            disk_gb=plan.disk_gb,
            plan_id=plan.id,
            customer_id=order.customer_id,
            vlan=self.config.default_vlan,
        )

    # =========================================
    # JOB HANDLER
    # =========================================

    async def run(self, payload: ProvisionPayload) -> Optional[Instance]:
        log_extra = {"order_id": payload.order_id, "customer_id": payload.customer_id}

        order = await self.store.get_order(payload.order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {payload.order_id}")
        if order.status in (OrderStatus.COMPLETED, OrderStatus.FAILED):
            logger.info(f"Order {order.id} already {order.status.value}, skipping provision", extra=log_extra)
            return None

        order.transition(OrderStatus.PROCESSING)
        await self.store.save_order(order)

        plan = self.catalog.get(payload.plan_id)

        instance = await self.store.get_instance_by_order(order.id)
        is_retry = instance is not None
        if instance is None:
            instance = Instance(
                customer_id=payload.customer_id,
                order_id=order.id,
                plan_id=plan.id,
                hostname=payload.hostname,
                node=payload.node,
                cpu_cores=payload.cpu,
                ram_mb=payload.ram_mb,
                disk_gb=payload.disk_gb,
                kind=plan.kind,
                bandwidth_gb=plan.bandwidth_gb,
                vmid=payload.numeric_id,
                ip_address=payload.ip,
                bridge=self.config.default_bridge,
                vlan=payload.vlan,
                root_password=generate_root_password(),
            )
        instance.status = InstanceStatus.CREATING

        pools = await self.store.list_ip_pools()
        pool = pools[0] if pools else None
        instance = await self.allocator.reserve(instance, pool)
        log_extra.update({"instance_id": instance.id, "vmid": instance.vmid})

        logger.info(
            f"Provisioning {instance.hostname} (vmid {instance.vmid}) for order {order.id}"
            f"{' (retry)' if is_retry else ''}",
            extra=log_extra,
        )

        try:
            await self._build(instance, plan, pool, is_retry)
        except Exception as e:
            instance.status = InstanceStatus.ERROR
            instance.record_error(str(e))
            await self.store.save_instance(instance)
            logger.error(f"Provisioning attempt failed for order {order.id}: {e}", extra=log_extra)
            raise

        instance.status = InstanceStatus.RUNNING
        instance.provisioned_at = utcnow()
        instance.error_message = None
        await self.store.save_instance(instance)

        order.transition(OrderStatus.COMPLETED)
        await self.store.save_order(order)

        logger.info(f"Instance {instance.hostname} running at {instance.ip_address}", extra=log_extra)
        return instance

    async def on_failed(self, job: Job, error: BaseException) -> None:
        """Exhaustion hook: the order fails and its instance stays in ERROR."""
        payload: ProvisionPayload = job.payload
        message = str(error) or type(error).__name__

        order = await self.store.get_order(payload.order_id)
        if order is not None and order.status not in (OrderStatus.COMPLETED, OrderStatus.FAILED):
            order.transition(OrderStatus.FAILED, error=message)
            await self.store.save_order(order)

        instance = await self.store.get_instance_by_order(payload.order_id)
        if instance is not None and not instance.is_deleted:
            instance.status = InstanceStatus.ERROR
            instance.record_error(message)
            await self.store.save_instance(instance)

        logger.error(
            f"Provisioning failed for order {payload.order_id}: {message}",
            extra={"order_id": payload.order_id, "job_id": job.id},
        )

    # =========================================
    # STEPS
    # =========================================

    def template_for(self, plan: Plan) -> int:
        if plan.template_vmid is not None:
            return plan.template_vmid
        return self.config.template_vmid

    async def _build(self, instance: Instance, plan: Plan, pool: Optional[IPPool], is_retry: bool) -> None:
        node, vmid, kind = instance.node, instance.vmid, instance.kind
        timeout = self.config.task_timeout

        if is_retry and await self._exists(instance):
            logger.info(f"Guest {vmid} already exists on {node}, skipping clone", extra={"vmid": vmid})
        else:
            upid = await self.client.clone(
                node,
                self.template_for(plan),
                vmid,
                name=instance.hostname,
                kind=kind,
                storage=self.config.default_storage,
            )
            await self.poller.wait_for_task(node, upid, timeout)

        upid = await self.client.set_config(node, vmid, self.guest_config(instance, pool), kind=kind)
        if upid:
            await self.poller.wait_for_task(node, upid, timeout)

        await self._resize(instance)

        upid = await self.client.start(node, vmid, kind=kind)
        await self.poller.wait_for_task(node, upid, timeout)

    async def _exists(self, instance: Instance) -> bool:
        try:
            await self.client.get_status(instance.node, instance.vmid, kind=instance.kind)
            return True
        except HypervisorError:
            return False

    async def _resize(self, instance: Instance) -> None:
        disk = "rootfs" if instance.kind == InstanceKind.LXC else self.config.primary_disk
        try:
            upid = await self.client.resize_disk(
                instance.node, instance.vmid, disk, f"{instance.disk_gb}G", kind=instance.kind
            )
            if upid:
                await self.poller.wait_for_task(instance.node, upid, self.config.task_timeout)
        except VPSControlError as e:
            logger.warning(f"Disk resize failed for vmid {instance.vmid}: {e}", extra={"vmid": instance.vmid})

    def guest_config(self, instance: Instance, pool: Optional[IPPool]) -> Dict[str, Any]:
        """Hypervisor config for cores, memory, network and cloud-init."""
        bridge = instance.bridge or self.config.default_bridge
        if instance.ip_address and pool is not None:
            ip_setting = f"ip={instance.ip_address}/{pool.prefix_length},gw={pool.gateway}"
        else:
            ip_setting = "ip=dhcp"
        tag = f",tag={instance.vlan}" if instance.vlan else ""

        if instance.kind == InstanceKind.LXC:
            return {
                "cores": instance.cpu_cores,
                "memory": instance.ram_mb,
                "net0": f"name=eth0,bridge={bridge}{tag},{ip_setting}",
            }

        config: Dict[str, Any] = {
            "cores": instance.cpu_cores,
            "memory": instance.ram_mb,
            "net0": f"virtio,bridge={bridge}{tag}",
            "ipconfig0": ip_setting,
            "ciuser": self.config.ci_user,
        }
        if self.config.ssh_keys:
            config["sshkeys"] = quote(self.config.ssh_keys, safe="")
        if instance.root_password:
            config["cipassword"] = instance.root_password
        return config
