"""
VPS Power Controller
====================

Queues start/stop/restart requests from customers and runs them against
the hypervisor. The billing lifecycle uses the same queue with a
target_status (suspend / reactivate) and the internal DELETE action.
"""

import logging
from typing import Any, Dict, Union

from .config import ProxmoxConfig
from .errors import ForbiddenError, NotFoundError, ValidationError, VPSControlError
from .hypervisor import ProxmoxClient, TaskPoller
from .jobs import Job, PowerAction, PowerPayload, USER_POWER_ACTIONS
from .models import BILLING_HOLD_STATUSES, Instance, InstanceStatus, utcnow
from .store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_SUSPENSION_REASON = "billing"


def power_job_key(instance_id: str, action: PowerAction) -> str:
    return f"power:{instance_id}:{action.value}"


def parse_action(action: Union[str, PowerAction]) -> PowerAction:
    """Accept only the customer-facing actions."""
    try:
        parsed = action if isinstance(action, PowerAction) else PowerAction(str(action).lower())
    except ValueError:
        raise ValidationError(f"Invalid power action: {action}")
    if parsed not in USER_POWER_ACTIONS:
        raise ValidationError(f"Invalid power action: {parsed.value}")
    return parsed


async def get_owned_instance(store: StateStore, customer_id: str, instance_id: str) -> Instance:
    """Instance owned by the customer, else NotFoundError. Deleted counts as missing."""
    instance = await store.get_instance(instance_id)
    if instance is None or instance.customer_id != customer_id or instance.is_deleted:
        raise NotFoundError(f"Instance not found: {instance_id}")
    return instance


class PowerController:
    """Entry point and queue handler for power operations."""

    def __init__(self, store: StateStore, client: ProxmoxClient, poller: TaskPoller, dispatcher, config: ProxmoxConfig):
        self.store = store
        self.client = client
        self.poller = poller
        self.dispatcher = dispatcher
        self.config = config

    async def perform_action(
        self,
        customer_id: str,
        instance_id: str,
        action: Union[str, PowerAction],
    ) -> Dict[str, Any]:
        """
        Validate and queue a power action. Returns as soon as the job is queued.

        Raises:
            ValidationError: unknown action, or the instance has no guest yet
            NotFoundError: instance missing or owned by someone else
            ForbiddenError: starting an instance suspended for billing
        """
        action = parse_action(action)
        instance = await get_owned_instance(self.store, customer_id, instance_id)

        if instance.status == InstanceStatus.SUSPENDED and action in (PowerAction.START, PowerAction.RESTART):
            raise ForbiddenError(
                "Instance is suspended for non-payment. Update your payment method to reactivate it.",
                {"instance_id": instance.id},
            )
        if instance.vmid is None or instance.status == InstanceStatus.CREATING:
            raise ValidationError(f"Instance {instance.id} is still being provisioned")

        job = await self.dispatcher.enqueue(
            PowerPayload(instance_id=instance.id, action=action),
            idempotency_key=power_job_key(instance.id, action),
        )
        logger.info(
            f"Queued {action.value} for instance {instance.id}",
            extra={"instance_id": instance.id, "customer_id": customer_id, "job_id": job.id},
        )
        return {
            "message": f"{action.value.capitalize()} operation queued",
            "job_id": job.id,
            "instance_id": instance.id,
            "action": action.value,
        }

    # =========================================
    # JOB HANDLER
    # =========================================

    async def run(self, payload: PowerPayload) -> None:
        instance = await self.store.get_instance(payload.instance_id)
        if instance is None:
            raise NotFoundError(f"Instance not found: {payload.instance_id}")
        if instance.is_deleted:
            logger.info(f"Instance {instance.id} already deleted, skipping {payload.action.value}")
            return
        if instance.vmid is None:
            raise ValidationError(f"Instance {instance.id} has no hypervisor id")

        if payload.action == PowerAction.DELETE:
            await self._delete(instance)
            return

        if payload.target_status == InstanceStatus.SUSPENDED and not await self._billing_hold(instance):
            logger.info(
                f"Subscription for {instance.customer_id} is in good standing, not suspending {instance.id}",
                extra={"instance_id": instance.id, "customer_id": instance.customer_id},
            )
            return

        if (
            payload.target_status is None
            and payload.action in (PowerAction.START, PowerAction.RESTART)
            and instance.status == InstanceStatus.SUSPENDED
        ):
            raise ForbiddenError(
                f"Instance {instance.id} was suspended before its {payload.action.value} ran",
                {"instance_id": instance.id},
            )

        calls = {
            PowerAction.START: self.client.start,
            PowerAction.STOP: self.client.stop,
            PowerAction.RESTART: self.client.reboot,
        }
        upid = await calls[payload.action](instance.node, instance.vmid, kind=instance.kind)
        await self.poller.wait_for_task(instance.node, upid, self.config.task_timeout)

        # Re-read: the row may have changed while the task ran
        instance = await self.store.get_instance(payload.instance_id) or instance
        now = utcnow()

        if payload.target_status is not None:
            status = payload.target_status
        elif instance.status == InstanceStatus.SUSPENDED:
            status = InstanceStatus.SUSPENDED
        elif payload.action == PowerAction.STOP:
            status = InstanceStatus.STOPPED
        else:
            status = InstanceStatus.RUNNING

        if status == InstanceStatus.SUSPENDED:
            if instance.status != InstanceStatus.SUSPENDED:
                instance.suspended_at = now
            instance.suspension_reason = payload.reason or instance.suspension_reason or DEFAULT_SUSPENSION_REASON
            instance.delete_after = payload.delete_after or instance.delete_after
        elif instance.status == InstanceStatus.SUSPENDED:
            instance.suspended_at = None
            instance.suspension_reason = None
            instance.delete_after = None

        instance.status = status
        await self.store.save_instance(instance)
        logger.info(
            f"Instance {instance.id} is now {status.value}",
            extra={"instance_id": instance.id, "vmid": instance.vmid},
        )

    async def _billing_hold(self, instance: Instance) -> bool:
        subscription = await self.store.get_subscription(instance.customer_id)
        return subscription is not None and subscription.status in BILLING_HOLD_STATUSES

    async def _delete(self, instance: Instance) -> None:
        """Best-effort remote stop and destroy, then soft delete locally."""
        log_extra = {"instance_id": instance.id, "vmid": instance.vmid}
        timeout = self.config.task_timeout

        try:
            upid = await self.client.stop(instance.node, instance.vmid, kind=instance.kind)
            await self.poller.wait_for_task(instance.node, upid, timeout)
        except VPSControlError as e:
            logger.warning(f"Stop before delete failed for {instance.id}: {e}", extra=log_extra)

        try:
            upid = await self.client.delete(instance.node, instance.vmid, kind=instance.kind)
            await self.poller.wait_for_task(instance.node, upid, timeout)
        except VPSControlError as e:
            logger.warning(f"Remote delete failed for {instance.id}: {e}", extra=log_extra)

        instance.status = InstanceStatus.DELETED
        instance.deleted_at = utcnow()
        await self.store.save_instance(instance)
        logger.info(f"Instance {instance.id} deleted", extra=log_extra)

    async def on_failed(self, job: Job, error: BaseException) -> None:
        payload: PowerPayload = job.payload
        instance = await self.store.get_instance(payload.instance_id)
        if instance is None or instance.is_deleted:
            return
        # Billing transitions leave the status for the next sweep
        if payload.target_status is None and instance.status != InstanceStatus.SUSPENDED:
            instance.status = InstanceStatus.ERROR
        instance.record_error(f"{payload.action.value} failed: {error}")
        await self.store.save_instance(instance)
        logger.error(
            f"Power {payload.action.value} failed for instance {instance.id}: {error}",
            extra={"instance_id": instance.id, "job_id": job.id},
        )
