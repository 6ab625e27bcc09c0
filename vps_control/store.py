"""
VPS Control State Store
=======================

The local system of record for instances, orders, subscriptions, IP pools
and unfinished jobs.

StateStore is the interface every pipeline talks to. MemoryStore keeps
everything in process and is what the test suite runs against;
database.PostgresStore is the production implementation.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set

from .jobs import Job, UNFINISHED_STATES
from .models import (
    Instance,
    InstanceKind,
    InstanceStatus,
    IPPool,
    Order,
    Subscription,
    SubscriptionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Persistence interface for the control plane."""

    # -----------------------------------------
    # Instances
    # -----------------------------------------

    @abstractmethod
    async def save_instance(self, instance: Instance) -> None:
        ...

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        ...

    @abstractmethod
    async def get_instance_by_order(self, order_id: str) -> Optional[Instance]:
        ...

    @abstractmethod
    async def list_instances(
        self,
        customer_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> List[Instance]:
        """List instances, newest first, optionally filtered."""

    @abstractmethod
    async def max_vmid(self, kind: InstanceKind) -> Optional[int]:
        """Highest vmid of the given kind among non-deleted instances."""

    @abstractmethod
    async def bound_ips(self) -> Set[str]:
        """Addresses held by non-deleted instances."""

    # -----------------------------------------
    # Orders
    # -----------------------------------------

    @abstractmethod
    async def save_order(self, order: Order) -> None:
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def get_order_by_session(self, session_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def list_orders(self, customer_id: Optional[str] = None) -> List[Order]:
        ...

    # -----------------------------------------
    # Subscriptions
    # -----------------------------------------

    @abstractmethod
    async def save_subscription(self, subscription: Subscription) -> None:
        ...

    @abstractmethod
    async def get_subscription(self, customer_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def get_subscription_by_stripe_customer(self, stripe_customer_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def list_subscriptions(self, status: Optional[SubscriptionStatus] = None) -> List[Subscription]:
        ...

    # -----------------------------------------
    # IP pools
    # -----------------------------------------

    @abstractmethod
    async def save_ip_pool(self, pool: IPPool) -> None:
        ...

    @abstractmethod
    async def list_ip_pools(self, active_only: bool = True) -> List[IPPool]:
        ...

    # -----------------------------------------
    # Jobs
    # -----------------------------------------

    @abstractmethod
    async def save_job(self, job: Job) -> None:
        ...

    @abstractmethod
    async def delete_job(self, job_id: str) -> None:
        ...

    @abstractmethod
    async def list_unfinished_jobs(self) -> List[Job]:
        ...


class MemoryStore(StateStore):
    """
    In-process store.

    Rows are deep-copied on the way in and out so callers must save() to
    persist a change, the same as with a database.
    """

    def __init__(self):
        self._instances: Dict[str, Instance] = {}
        self._orders: Dict[str, Order] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._pools: Dict[str, IPPool] = {}
        self._jobs: Dict[str, Job] = {}

    # Instances

    async def save_instance(self, instance: Instance) -> None:
        instance.updated_at = utcnow()
        self._instances[instance.id] = copy.deepcopy(instance)

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        instance = self._instances.get(instance_id)
        return copy.deepcopy(instance) if instance else None

    async def get_instance_by_order(self, order_id: str) -> Optional[Instance]:
        for instance in self._instances.values():
            if instance.order_id == order_id:
                return copy.deepcopy(instance)
        return None

    async def list_instances(
        self,
        customer_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> List[Instance]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            copy.deepcopy(i)
            for i in self._instances.values()
            if (customer_id is None or i.customer_id == customer_id)
            and (wanted is None or i.status in wanted)
        ]
        rows.sort(key=lambda i: i.created_at, reverse=True)
        return rows

    async def max_vmid(self, kind: InstanceKind) -> Optional[int]:
        vmids = [
            i.vmid
            for i in self._instances.values()
            if i.kind == kind and not i.is_deleted and i.vmid is not None
        ]
        return max(vmids) if vmids else None

    async def bound_ips(self) -> Set[str]:
        return {
            i.ip_address
            for i in self._instances.values()
            if i.ip_address and not i.is_deleted
        }

    # Orders

    async def save_order(self, order: Order) -> None:
        self._orders[order.id] = copy.deepcopy(order)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def get_order_by_session(self, session_id: str) -> Optional[Order]:
        for order in self._orders.values():
            if order.stripe_session_id == session_id:
                return copy.deepcopy(order)
        return None

    async def list_orders(self, customer_id: Optional[str] = None) -> List[Order]:
        rows = [
            copy.deepcopy(o)
            for o in self._orders.values()
            if customer_id is None or o.customer_id == customer_id
        ]
        rows.sort(key=lambda o: o.created_at, reverse=True)
        return rows

    # Subscriptions

    async def save_subscription(self, subscription: Subscription) -> None:
        subscription.updated_at = utcnow()
        self._subscriptions[subscription.customer_id] = copy.deepcopy(subscription)

    async def get_subscription(self, customer_id: str) -> Optional[Subscription]:
        sub = self._subscriptions.get(customer_id)
        return copy.deepcopy(sub) if sub else None

    async def get_subscription_by_stripe_customer(self, stripe_customer_id: str) -> Optional[Subscription]:
        for sub in self._subscriptions.values():
            if sub.stripe_customer_id == stripe_customer_id:
                return copy.deepcopy(sub)
        return None

    async def list_subscriptions(self, status: Optional[SubscriptionStatus] = None) -> List[Subscription]:
        return [
            copy.deepcopy(s)
            for s in self._subscriptions.values()
            if status is None or s.status == status
        ]

    # IP pools

    async def save_ip_pool(self, pool: IPPool) -> None:
        self._pools[pool.name] = copy.deepcopy(pool)

    async def list_ip_pools(self, active_only: bool = True) -> List[IPPool]:
        return [
            copy.deepcopy(p)
            for p in sorted(self._pools.values(), key=lambda p: p.name)
            if p.active or not active_only
        ]

    # Jobs

    async def save_job(self, job: Job) -> None:
        self._jobs[job.id] = copy.deepcopy(job)

    async def delete_job(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    async def list_unfinished_jobs(self) -> List[Job]:
        rows = [copy.deepcopy(j) for j in self._jobs.values() if j.state in UNFINISHED_STATES]
        rows.sort(key=lambda j: j.created_at)
        return rows
