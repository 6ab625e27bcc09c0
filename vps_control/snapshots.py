"""
VPS Snapshot Manager
====================

Snapshots are taken through the snapshot queue and listed live from the
hypervisor; nothing about them is stored locally.
"""

import logging
import re
from typing import Any, Dict, List

from .catalog import PlanCatalog
from .config import ProxmoxConfig
from .errors import ForbiddenError, NotFoundError, ValidationError
from .hypervisor import ProxmoxClient, TaskPoller
from .jobs import Job, SnapshotPayload
from .power import get_owned_instance
from .store import StateStore

logger = logging.getLogger(__name__)

SNAPSHOT_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{1,39}$")


def validate_snapshot_name(name: str) -> str:
    if not name or not SNAPSHOT_NAME_PATTERN.match(name):
        raise ValidationError(
            "Snapshot name must start with a letter and contain 2-40 letters, digits, '-' or '_'"
        )
    return name


class SnapshotManager:
    """Entry point and queue handler for snapshots."""

    def __init__(
        self,
        store: StateStore,
        client: ProxmoxClient,
        poller: TaskPoller,
        dispatcher,
        catalog: PlanCatalog,
        config: ProxmoxConfig,
    ):
        self.store = store
        self.client = client
        self.poller = poller
        self.dispatcher = dispatcher
        self.catalog = catalog
        self.config = config

    async def create_snapshot(
        self,
        customer_id: str,
        instance_id: str,
        name: str,
        description: str = "",
    ) -> Dict[str, Any]:
        """Check name, ownership and plan entitlement, then queue the snapshot."""
        validate_snapshot_name(name)
        instance = await get_owned_instance(self.store, customer_id, instance_id)

        plan = self.catalog.find(instance.plan_id)
        if plan is None or not plan.allow_snapshots:
            raise ForbiddenError(
                "Snapshots are not included in your plan",
                {"plan_id": instance.plan_id},
            )
        if instance.vmid is None:
            raise ValidationError(f"Instance {instance.id} is still being provisioned")

        job = await self.dispatcher.enqueue(
            SnapshotPayload(instance_id=instance.id, name=name, description=description or ""),
            idempotency_key=f"snapshot:{instance.id}:{name}",
        )
        logger.info(
            f"Queued snapshot {name} for instance {instance.id}",
            extra={"instance_id": instance.id, "customer_id": customer_id, "job_id": job.id},
        )
        return {
            "message": "Snapshot creation queued",
            "job_id": job.id,
            "instance_id": instance.id,
            "name": name,
        }

    async def list_snapshots(self, customer_id: str, instance_id: str) -> List[Dict[str, Any]]:
        instance = await get_owned_instance(self.store, customer_id, instance_id)
        if instance.vmid is None:
            return []
        return await self.client.list_snapshots(instance.node, instance.vmid, kind=instance.kind)

    # =========================================
    # JOB HANDLER
    # =========================================

    async def run(self, payload: SnapshotPayload) -> None:
        instance = await self.store.get_instance(payload.instance_id)
        if instance is None or instance.is_deleted:
            raise NotFoundError(f"Instance not found: {payload.instance_id}")

        upid = await self.client.create_snapshot(
            instance.node,
            instance.vmid,
            payload.name,
            payload.description,
            kind=instance.kind,
        )
        await self.poller.wait_for_task(instance.node, upid, self.config.task_timeout)
        logger.info(
            f"Snapshot {payload.name} created for instance {instance.id}",
            extra={"instance_id": instance.id, "vmid": instance.vmid},
        )

    async def on_failed(self, job: Job, error: BaseException) -> None:
        """Record the error; the instance keeps its status."""
        payload: SnapshotPayload = job.payload
        instance = await self.store.get_instance(payload.instance_id)
        if instance is None:
            return
        instance.record_error(f"Snapshot {payload.name} failed: {error}")
        await self.store.save_instance(instance)
        logger.error(
            f"Snapshot {payload.name} failed for instance {instance.id}: {error}",
            extra={"instance_id": instance.id, "job_id": job.id},
        )
