"""
VPS Control Service
===================

Operator and customer command surface. Each method takes the verified
principal's customer id (or is admin-only) and delegates to the pipeline
components; the FastAPI layer in api.py is a thin shell over this class.
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from .billing import VPSBilling
from .catalog import PlanCatalog
from .dispatcher import JobDispatcher
from .errors import NotFoundError, VPSControlError
from .hypervisor import ProxmoxClient
from .jobs import Job, JobState, ProvisionPayload, QueueName
from .lifecycle import SweepScheduler
from .models import OrderStatus
from .power import PowerController, get_owned_instance
from .snapshots import SnapshotManager
from .store import StateStore

logger = logging.getLogger(__name__)

RETRY_SUGGESTION = "The operation failed after all retries. Check the instance state and try again."


class VPSService:
    """Facade used by the HTTP routes."""

    def __init__(
        self,
        store: StateStore,
        dispatcher: JobDispatcher,
        client: ProxmoxClient,
        catalog: PlanCatalog,
        billing: VPSBilling,
        power: PowerController,
        snapshots: SnapshotManager,
        scheduler: SweepScheduler,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.client = client
        self.catalog = catalog
        self.billing = billing
        self.power = power
        self.snapshots = snapshots
        self.scheduler = scheduler

    # =========================================
    # CUSTOMER
    # =========================================

    def list_plans(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": plan.id,
                "name": plan.name,
                "kind": plan.kind.value,
                "cpu_cores": plan.cpu_cores,
                "ram_mb": plan.ram_mb,
                "disk_gb": plan.disk_gb,
                "bandwidth_gb": plan.bandwidth_gb,
                "price_monthly_usd": plan.price_monthly_usd,
                "allow_snapshots": plan.allow_snapshots,
            }
            for plan in self.catalog.all()
        ]

    async def create_checkout(self, customer_id: str, plan_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        return await self.billing.create_checkout_session(customer_id, plan_id, email)

    async def get_my_orders(self, customer_id: str) -> List[Dict[str, Any]]:
        return [order.to_dict() for order in await self.store.list_orders(customer_id)]

    async def list_my_instances(self, customer_id: str) -> List[Dict[str, Any]]:
        return [
            instance.to_dict()
            for instance in await self.store.list_instances(customer_id)
            if not instance.is_deleted
        ]

    async def get_instance(self, customer_id: str, instance_id: str) -> Dict[str, Any]:
        """Stored instance plus live hypervisor status (None when unreachable)."""
        instance = await get_owned_instance(self.store, customer_id, instance_id)

        live_status = None
        if instance.vmid is not None:
            try:
                live_status = await self.client.get_status(instance.node, instance.vmid, kind=instance.kind)
            except VPSControlError as e:
                logger.warning(f"Live status unavailable for {instance.id}: {e}", extra={"instance_id": instance.id})

        data = instance.to_dict()
        data["live_status"] = live_status
        return data

    async def power_action(self, customer_id: str, instance_id: str, action: str) -> Dict[str, Any]:
        return await self.power.perform_action(customer_id, instance_id, action)

    async def create_snapshot(
        self,
        customer_id: str,
        instance_id: str,
        name: str,
        description: str = "",
    ) -> Dict[str, Any]:
        return await self.snapshots.create_snapshot(customer_id, instance_id, name, description)

    async def list_snapshots(self, customer_id: str, instance_id: str) -> List[Dict[str, Any]]:
        return await self.snapshots.list_snapshots(customer_id, instance_id)

    async def get_job_status(self, customer_id: str, job_id: str, is_admin: bool = False) -> Dict[str, Any]:
        job = self.dispatcher.get_job(job_id)
        if job is None or not (is_admin or await self._owns_job(customer_id, job)):
            raise NotFoundError(f"Job not found: {job_id}")
        return self._job_status(job)

    async def _owns_job(self, customer_id: str, job: Job) -> bool:
        if isinstance(job.payload, ProvisionPayload):
            return job.payload.customer_id == customer_id
        instance = await self.store.get_instance(job.payload.instance_id)
        return instance is not None and instance.customer_id == customer_id

    @staticmethod
    def _job_status(job: Job) -> Dict[str, Any]:
        status = {
            JobState.PENDING: "queued",
            JobState.ACTIVE: "in_progress",
            JobState.DELAYED: "retrying",
            JobState.COMPLETED: "completed",
            JobState.FAILED: "failed",
        }[job.state]

        result = {
            "job_id": job.id,
            "queue": job.queue.value,
            "state": job.state.value,
            "status": status,
            "attempts": job.attempts,
            "max_attempts": job.policy.max_attempts,
            "error": job.last_error,
            "created_at": job.created_at.isoformat(),
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        }
        if job.state == JobState.FAILED and job.queue in (QueueName.POWER, QueueName.SNAPSHOT):
            result["status"] = "operation_failed"
            result["suggestion"] = RETRY_SUGGESTION
        return result

    # =========================================
    # ADMIN
    # =========================================

    async def admin_list_orders(self) -> List[Dict[str, Any]]:
        return [order.to_dict() for order in await self.store.list_orders()]

    async def admin_list_instances(self, include_deleted: bool = False) -> List[Dict[str, Any]]:
        return [
            instance.to_dict()
            for instance in await self.store.list_instances()
            if include_deleted or not instance.is_deleted
        ]

    async def dashboard_stats(self) -> Dict[str, Any]:
        """Local counts plus live hypervisor nodes (None when unreachable)."""
        instances = await self.store.list_instances()
        orders = await self.store.list_orders()
        subscriptions = await self.store.list_subscriptions()

        nodes = None
        try:
            nodes = await self.client.list_nodes()
        except VPSControlError as e:
            logger.warning(f"Hypervisor node list unavailable: {e}")

        return {
            "instances": dict(Counter(i.status.value for i in instances)),
            "orders": dict(Counter(o.status.value for o in orders)),
            "subscriptions": dict(Counter(s.status.value for s in subscriptions)),
            "revenue_completed_usd": round(
                sum(o.amount_usd for o in orders if o.status == OrderStatus.COMPLETED), 2
            ),
            "queues": self.dispatcher.stats(),
            "nodes": nodes,
        }

    async def trigger_sweep(self) -> Dict[str, Any]:
        result = await self.scheduler.tick()
        if result is None:
            return {"skipped": True}
        return {"skipped": False, **result}
