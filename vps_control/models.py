"""
VPS Control Domain Models
=========================

Local system-of-record types: instances, orders, subscriptions and IP pools.

Instances are never physically removed. Deletion is the DELETED status plus
a deleted_at timestamp, and queries that should skip deleted rows filter on
status.
"""

import ipaddress
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from .errors import InvalidTransition, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class InstanceKind(Enum):
    """Proxmox guest type. Doubles as the API path segment."""
    QEMU = "qemu"
    LXC = "lxc"


class InstanceStatus(Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    ERROR = "error"
    DELETED = "deleted"


# Instances that a billing suspension applies to
ACTIVE_STATUSES = (InstanceStatus.RUNNING, InstanceStatus.STOPPED)


class OrderStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.FAILED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.FAILED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.FAILED: set(),
}


class SubscriptionStatus(Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    NOT_STARTED = "not_started"

    @classmethod
    def from_stripe(cls, value: str) -> "SubscriptionStatus":
        """Map a Stripe subscription status onto ours."""
        mapping = {
            "active": cls.ACTIVE,
            "trialing": cls.TRIALING,
            "past_due": cls.PAST_DUE,
            "unpaid": cls.PAST_DUE,
            "canceled": cls.CANCELED,
            "incomplete_expired": cls.CANCELED,
        }
        return mapping.get(value, cls.NOT_STARTED)


# Subscriptions whose instances may be suspended, and those that must never be
BILLING_HOLD_STATUSES = (SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED)
PAYING_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


@dataclass
class Instance:
    """A provisioned (or provisioning) virtual server."""
    customer_id: str
    order_id: str
    plan_id: str
    hostname: str
    node: str
    cpu_cores: int
    ram_mb: int
    disk_gb: int
    kind: InstanceKind = InstanceKind.QEMU
    bandwidth_gb: Optional[int] = None
    id: str = field(default_factory=new_id)
    vmid: Optional[int] = None
    ip_address: Optional[str] = None
    bridge: Optional[str] = None
    vlan: Optional[int] = None
    root_password: Optional[str] = field(default=None, repr=False)
    status: InstanceStatus = InstanceStatus.CREATING

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    provisioned_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    delete_after: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    error_message: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.status == InstanceStatus.DELETED

    def record_error(self, message: str, when: Optional[datetime] = None) -> None:
        self.error_message = message
        self.last_error_at = when or utcnow()

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        """Serialize to dictionary. The root secret is opt-in."""
        data = {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "plan_id": self.plan_id,
            "hostname": self.hostname,
            "kind": self.kind.value,
            "node": self.node,
            "vmid": self.vmid,
            "cpu_cores": self.cpu_cores,
            "ram_mb": self.ram_mb,
            "disk_gb": self.disk_gb,
            "bandwidth_gb": self.bandwidth_gb,
            "ip_address": self.ip_address,
            "bridge": self.bridge,
            "vlan": self.vlan,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "provisioned_at": _iso(self.provisioned_at),
            "suspended_at": _iso(self.suspended_at),
            "suspension_reason": self.suspension_reason,
            "delete_after": _iso(self.delete_after),
            "deleted_at": _iso(self.deleted_at),
            "error_message": self.error_message,
            "last_error_at": _iso(self.last_error_at),
        }
        if include_secret:
            data["root_password"] = self.root_password
        return data


@dataclass
class Order:
    """A single purchase intent. Yields at most one instance."""
    customer_id: str
    plan_id: str
    amount_usd: float
    currency: str = "usd"
    id: str = field(default_factory=new_id)
    status: OrderStatus = OrderStatus.PENDING
    stripe_session_id: Optional[str] = None
    stripe_payment_intent: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def transition(self, status: OrderStatus, error: Optional[str] = None) -> None:
        """
        Move the order forward.

        Re-entering the current state is a no-op so a retried job can mark
        an order processing again. Anything else not in ORDER_TRANSITIONS
        raises InvalidTransition.
        """
        if status == self.status:
            return
        if status not in ORDER_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Order {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.updated_at = utcnow()
        if status == OrderStatus.COMPLETED:
            self.completed_at = self.updated_at
        if error:
            self.error_message = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "plan_id": self.plan_id,
            "amount_usd": self.amount_usd,
            "currency": self.currency,
            "status": self.status.value,
            "stripe_session_id": self.stripe_session_id,
            "stripe_payment_intent": self.stripe_payment_intent,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class Subscription:
    """Per-customer billing state."""
    customer_id: str
    status: SubscriptionStatus = SubscriptionStatus.NOT_STARTED
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    # Deadline computed when the subscription went past due
    past_due_since: Optional[datetime] = None
    suspend_after: Optional[datetime] = None

    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "status": self.status.value,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "cancel_at_period_end": self.cancel_at_period_end,
            "past_due_since": _iso(self.past_due_since),
            "suspend_after": _iso(self.suspend_after),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class IPPool:
    """A named address range bound to a bridge and optional VLAN."""
    name: str
    cidr: str
    range_start: str
    range_end: str
    gateway: str
    bridge: str = "vmbr0"
    vlan: Optional[int] = None
    active: bool = True

    def __post_init__(self):
        try:
            network = ipaddress.ip_network(self.cidr, strict=False)
            start = ipaddress.ip_address(self.range_start)
            end = ipaddress.ip_address(self.range_end)
            ipaddress.ip_address(self.gateway)
        except ValueError as e:
            raise ValidationError(f"Invalid IP pool {self.name}: {e}")

        if start not in network or end not in network:
            raise ValidationError(f"IP pool {self.name} range is outside {self.cidr}")
        if int(start) > int(end):
            raise ValidationError(f"IP pool {self.name} range start is after its end")

    @property
    def prefix_length(self) -> int:
        return ipaddress.ip_network(self.cidr, strict=False).prefixlen

    def addresses(self) -> Iterator[str]:
        """Yield every allocatable address in ascending order. The gateway is never handed out."""
        start = int(ipaddress.ip_address(self.range_start))
        end = int(ipaddress.ip_address(self.range_end))
        gateway = ipaddress.ip_address(self.gateway)
        for value in range(start, end + 1):
            address = ipaddress.ip_address(value)
            if address != gateway:
                yield str(address)

    def size(self) -> int:
        return sum(1 for _ in self.addresses())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "cidr": self.cidr,
            "range_start": self.range_start,
            "range_end": self.range_end,
            "gateway": self.gateway,
            "bridge": self.bridge,
            "vlan": self.vlan,
            "active": self.active,
        }
