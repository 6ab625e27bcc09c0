"""
VPS Billing Lifecycle Manager
=============================

Maps billing events onto instance state:

    payment failed        -> subscription past_due, suspend_after = now + grace
    sweep past deadline   -> running/stopped instances stopped as SUSPENDED,
                             delete_after = now + deletion period
    sweep past deletion   -> suspended instances deleted
    sweep, paying again   -> suspended instances started
    payment succeeded     -> subscription active, suspended instances started
    subscription deleted  -> subscription canceled, instances suspended now

Deadlines are stored when the transition happens, so the sweep only
compares stored timestamps with the clock.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import BillingConfig
from .jobs import PowerAction, PowerPayload
from .models import (
    ACTIVE_STATUSES,
    PAYING_STATUSES,
    Instance,
    InstanceStatus,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from .store import StateStore

logger = logging.getLogger(__name__)


class BillingLifecycleManager:
    """Subscription state plus the jobs that follow from it."""

    def __init__(
        self,
        store: StateStore,
        dispatcher,
        config: Optional[BillingConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or BillingConfig()
        self._clock = clock

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.config.grace_period_days)

    @property
    def deletion_period(self) -> timedelta:
        return timedelta(days=self.config.deletion_period_days)

    async def _get_or_create(self, customer_id: str) -> Subscription:
        subscription = await self.store.get_subscription(customer_id)
        if subscription is None:
            subscription = Subscription(customer_id=customer_id)
        return subscription

    # =========================================
    # BILLING EVENTS
    # =========================================

    async def activate(
        self,
        customer_id: str,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
    ) -> Subscription:
        """A completed checkout starts a fresh subscription, even after a cancel."""
        subscription = await self._get_or_create(customer_id)
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.past_due_since = None
        subscription.suspend_after = None
        subscription.cancel_at_period_end = False
        if stripe_customer_id:
            subscription.stripe_customer_id = stripe_customer_id
        if stripe_subscription_id:
            subscription.stripe_subscription_id = stripe_subscription_id
        await self.store.save_subscription(subscription)
        return subscription

    async def handle_payment_failed(self, customer_id: str) -> Subscription:
        """Start the grace period. A repeat failure keeps the first deadline."""
        subscription = await self._get_or_create(customer_id)
        if subscription.status == SubscriptionStatus.CANCELED:
            logger.info(f"Payment failure for canceled subscription {customer_id}, ignoring", extra={"customer_id": customer_id})
            return subscription

        now = self._clock()
        subscription.status = SubscriptionStatus.PAST_DUE
        if subscription.suspend_after is None:
            subscription.past_due_since = now
            subscription.suspend_after = now + self.grace_period
        await self.store.save_subscription(subscription)

        logger.warning(
            f"Customer {customer_id} past due, suspension after {subscription.suspend_after.isoformat()}",
            extra={"customer_id": customer_id},
        )
        return subscription

    async def handle_payment_succeeded(self, customer_id: str) -> Dict[str, Any]:
        """Clear deadlines and queue a start for every suspended instance."""
        subscription = await self._get_or_create(customer_id)
        if subscription.status == SubscriptionStatus.CANCELED:
            logger.info(f"Payment for canceled subscription {customer_id}, not reactivating", extra={"customer_id": customer_id})
            return {"reactivated": 0, "errors": []}

        subscription.status = SubscriptionStatus.ACTIVE
        subscription.past_due_since = None
        subscription.suspend_after = None
        await self.store.save_subscription(subscription)

        reactivated = 0
        errors: List[Dict[str, str]] = []
        for instance in await self.store.list_instances(customer_id, [InstanceStatus.SUSPENDED]):
            try:
                if await self._reactivate(instance):
                    reactivated += 1
            except Exception as e:
                logger.error(f"Failed to queue reactivation of {instance.id}: {e}", extra={"instance_id": instance.id})
                errors.append({"instance_id": instance.id, "error": str(e)})

        logger.info(f"Customer {customer_id} active again, {reactivated} instances reactivating", extra={"customer_id": customer_id})
        return {"reactivated": reactivated, "errors": errors}

    async def handle_subscription_deleted(self, customer_id: str) -> Dict[str, Any]:
        """Cancel the subscription and suspend its instances immediately."""
        subscription = await self._get_or_create(customer_id)
        subscription.status = SubscriptionStatus.CANCELED
        subscription.past_due_since = None
        subscription.suspend_after = None
        await self.store.save_subscription(subscription)

        result = await self._suspend_customer(customer_id, "subscription_canceled")
        logger.info(
            f"Subscription for {customer_id} canceled, {result['suspended']} instances suspending",
            extra={"customer_id": customer_id},
        )
        return result

    async def sync_subscription(
        self,
        customer_id: str,
        status: SubscriptionStatus,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
    ) -> Subscription:
        """Mirror a provider-side subscription update."""
        subscription = await self._get_or_create(customer_id)

        if subscription.status == SubscriptionStatus.CANCELED and status != SubscriptionStatus.CANCELED:
            logger.info(f"Ignoring {status.value} update for canceled subscription {customer_id}")
        else:
            subscription.status = status

        if current_period_start is not None:
            subscription.current_period_start = current_period_start
        if current_period_end is not None:
            subscription.current_period_end = current_period_end
        subscription.cancel_at_period_end = cancel_at_period_end
        if stripe_customer_id:
            subscription.stripe_customer_id = stripe_customer_id
        if stripe_subscription_id:
            subscription.stripe_subscription_id = stripe_subscription_id

        if subscription.status == SubscriptionStatus.PAST_DUE and subscription.suspend_after is None:
            now = self._clock()
            subscription.past_due_since = now
            subscription.suspend_after = now + self.grace_period

        await self.store.save_subscription(subscription)
        return subscription

    # =========================================
    # SWEEP
    # =========================================

    async def run_sweep(self) -> Dict[str, Any]:
        """
        Suspend customers past their grace deadline, delete instances past
        their deletion deadline and restart suspended instances of customers
        who are paying again. One failure never stops the rest.

        Counts cover newly queued jobs only.
        """
        now = self._clock()
        suspended = 0
        deleted = 0
        reactivated = 0
        errors: List[Dict[str, str]] = []

        for subscription in await self.store.list_subscriptions(SubscriptionStatus.PAST_DUE):
            if subscription.suspend_after is None or subscription.suspend_after > now:
                continue
            try:
                result = await self._suspend_customer(subscription.customer_id, "payment_overdue", now)
                suspended += result["suspended"]
                errors.extend(result["errors"])
            except Exception as e:
                logger.error(f"Sweep failed for customer {subscription.customer_id}: {e}", extra={"customer_id": subscription.customer_id})
                errors.append({"customer_id": subscription.customer_id, "error": str(e)})

        standing: Dict[str, Optional[Subscription]] = {}
        for instance in await self.store.list_instances(statuses=[InstanceStatus.SUSPENDED]):
            try:
                if instance.customer_id not in standing:
                    standing[instance.customer_id] = await self.store.get_subscription(instance.customer_id)
                subscription = standing[instance.customer_id]

                if subscription is not None and subscription.status in PAYING_STATUSES:
                    if await self._reactivate(instance):
                        reactivated += 1
                    continue

                if instance.delete_after is None or instance.delete_after > now:
                    continue
                _, created = await self.dispatcher.submit(
                    PowerPayload(instance_id=instance.id, action=PowerAction.DELETE),
                    idempotency_key=f"delete:{instance.id}",
                )
                if created:
                    deleted += 1
            except Exception as e:
                logger.error(f"Sweep failed for instance {instance.id}: {e}", extra={"instance_id": instance.id})
                errors.append({"instance_id": instance.id, "error": str(e)})

        logger.info(
            f"Billing sweep done: {suspended} suspending, {deleted} deleting, "
            f"{reactivated} reactivating, {len(errors)} errors"
        )
        return {"suspended": suspended, "deleted": deleted, "reactivated": reactivated, "errors": errors}

    async def _reactivate(self, instance: Instance) -> bool:
        _, created = await self.dispatcher.submit(
            PowerPayload(
                instance_id=instance.id,
                action=PowerAction.START,
                target_status=InstanceStatus.RUNNING,
            ),
            idempotency_key=f"reactivate:{instance.id}",
        )
        return created

    async def _suspend_customer(
        self,
        customer_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or self._clock()
        delete_after = now + self.deletion_period
        suspended = 0
        errors: List[Dict[str, str]] = []

        # ERROR instances that once ran are held to billing as well
        instances: List[Instance] = [
            instance
            for instance in await self.store.list_instances(customer_id, ACTIVE_STATUSES + (InstanceStatus.ERROR,))
            if instance.status != InstanceStatus.ERROR or instance.provisioned_at is not None
        ]
        for instance in instances:
            try:
                _, created = await self.dispatcher.submit(
                    PowerPayload(
                        instance_id=instance.id,
                        action=PowerAction.STOP,
                        target_status=InstanceStatus.SUSPENDED,
                        reason=reason,
                        delete_after=delete_after,
                    ),
                    idempotency_key=f"suspend:{instance.id}",
                )
                if created:
                    suspended += 1
            except Exception as e:
                logger.error(f"Failed to queue suspension of {instance.id}: {e}", extra={"instance_id": instance.id})
                errors.append({"instance_id": instance.id, "error": str(e)})

        return {"suspended": suspended, "errors": errors}


class SweepScheduler:
    """
    Runs the billing sweep every `interval` seconds.

    A tick that arrives while a sweep is still running is skipped.
    """

    def __init__(
        self,
        lifecycle: BillingLifecycleManager,
        interval: float = 3600.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.lifecycle = lifecycle
        self.interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._in_progress = False
        self.runs = 0
        self.skipped = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> Optional[Dict[str, Any]]:
        """Run one sweep unless one is already in progress."""
        if self._in_progress:
            self.skipped += 1
            logger.info("Billing sweep still running, skipping tick")
            return None

        self._in_progress = True
        try:
            self.runs += 1
            return await self.lifecycle.run_sweep()
        finally:
            self._in_progress = False

    async def _loop(self) -> None:
        pending: set = set()
        try:
            while True:
                await self._sleep(self.interval)
                task = asyncio.create_task(self._safe_tick())
                pending.add(task)
                task.add_done_callback(pending.discard)
        finally:
            for task in list(pending):
                task.cancel()

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Billing sweep failed")

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="billing-sweep")
        logger.info(f"Billing sweep scheduled every {self.interval:.0f}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Billing sweep stopped")
