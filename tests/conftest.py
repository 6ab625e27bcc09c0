"""
VPS Control Test Fixtures
=========================

Shared fixtures for all test modules.
"""

import asyncio
import hashlib
import hmac
import json
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from vps_control.api import build_control_plane
from vps_control.config import (
    BillingConfig,
    IPPoolConfig,
    ProxmoxConfig,
    StripeConfig,
    VPSControlConfig,
)
from vps_control.errors import HypervisorError
from vps_control.models import (
    Instance,
    InstanceKind,
    InstanceStatus,
    IPPool,
    Order,
    OrderStatus,
)
from vps_control.store import MemoryStore

WEBHOOK_SECRET = "whsec_test_fake"


# ============================================
# TIME
# ============================================

class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """asyncio.sleep stand-in that records delays and only yields."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


# ============================================
# FAKE HYPERVISOR
# ============================================

class FakeHypervisor:
    """
    Scripted stand-in for ProxmoxClient.

    Every call is recorded in `calls`. Failures are injected per method:
    - fail_calls[method] = n    -> the next n calls raise HypervisorError
    - fail_tasks[method] = n    -> the next n tasks from method stop with exit status "ERROR"
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_calls: Dict[str, int] = defaultdict(int)
        self.fail_tasks: Dict[str, int] = defaultdict(int)
        self.guests: Dict[int, Dict[str, Any]] = {}
        self.snapshots: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self._counter = 0

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        if self.fail_calls[method] > 0:
            self.fail_calls[method] -= 1
            raise HypervisorError(f"{method} rejected", 500)

    def _task(self, method: str, node: str) -> str:
        self._counter += 1
        upid = f"UPID:{node}:{self._counter:08X}:{method}"
        if self.fail_tasks[method] > 0:
            self.fail_tasks[method] -= 1
            self.tasks[upid] = {"status": "stopped", "exitstatus": "ERROR"}
        else:
            self.tasks[upid] = {"status": "stopped", "exitstatus": "OK"}
        return upid

    async def list_nodes(self):
        self._record("list_nodes")
        return [{"node": "pve", "status": "online"}]

    async def get_task_status(self, node, upid):
        self._record("get_task_status", node, upid)
        return self.tasks[upid]

    async def clone(self, node, template_vmid, new_vmid, name=None, kind=InstanceKind.QEMU, full=True, storage=None):
        self._record("clone", node, template_vmid, new_vmid)
        self.guests[new_vmid] = {"status": "stopped", "name": name}
        return self._task("clone", node)

    async def set_config(self, node, vmid, config, kind=InstanceKind.QEMU):
        self._record("set_config", node, vmid, dict(config))
        return None

    async def resize_disk(self, node, vmid, disk, size, kind=InstanceKind.QEMU):
        self._record("resize_disk", node, vmid, disk, size)
        return None

    async def start(self, node, vmid, kind=InstanceKind.QEMU):
        self._record("start", node, vmid)
        self.guests.setdefault(vmid, {})["status"] = "running"
        return self._task("start", node)

    async def stop(self, node, vmid, kind=InstanceKind.QEMU):
        self._record("stop", node, vmid)
        self.guests.setdefault(vmid, {})["status"] = "stopped"
        return self._task("stop", node)

    async def reboot(self, node, vmid, kind=InstanceKind.QEMU):
        self._record("reboot", node, vmid)
        return self._task("reboot", node)

    async def delete(self, node, vmid, kind=InstanceKind.QEMU):
        self._record("delete", node, vmid)
        self.guests.pop(vmid, None)
        return self._task("delete", node)

    async def get_status(self, node, vmid, kind=InstanceKind.QEMU):
        self._record("get_status", node, vmid)
        if vmid not in self.guests:
            raise HypervisorError(f"guest {vmid} does not exist", 500)
        return {"vmid": vmid, "status": self.guests[vmid].get("status", "stopped")}

    async def create_snapshot(self, node, vmid, name, description="", kind=InstanceKind.QEMU):
        self._record("create_snapshot", node, vmid, name)
        self.snapshots[vmid].append({"name": name, "description": description})
        return self._task("create_snapshot", node)

    async def list_snapshots(self, node, vmid, kind=InstanceKind.QEMU):
        self._record("list_snapshots", node, vmid)
        return list(self.snapshots[vmid])

    async def aclose(self):
        pass


@pytest.fixture
def hypervisor():
    return FakeHypervisor()


# ============================================
# CONFIG
# ============================================

@pytest.fixture
def test_config():
    """Test configuration with dummy values."""
    return VPSControlConfig(
        proxmox=ProxmoxConfig(
            api_url="https://pve.test:8006/api2/json",
            token_id="root@pam!control",
            token_secret="secret-token",
            default_node="pve",
            default_bridge="vmbr0",
            default_vlan=None,
            ssh_keys="ssh-ed25519 AAAAC3Nza test@host",
            task_timeout=30.0,
        ),
        stripe=StripeConfig(
            secret_key="sk_test_fake",
            webhook_secret=WEBHOOK_SECRET,
        ),
        billing=BillingConfig(grace_period_days=3, deletion_period_days=30),
        ip_pool=IPPoolConfig(
            name="default",
            cidr="10.0.0.0/24",
            range_start="10.0.0.100",
            range_end="10.0.0.110",
            gateway="10.0.0.1",
        ),
    )


# ============================================
# STORE + CONTROL PLANE
# ============================================

@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def small_pool():
    return IPPool(
        name="small",
        cidr="192.168.10.0/24",
        range_start="192.168.10.10",
        range_end="192.168.10.12",
        gateway="192.168.10.1",
    )


@pytest.fixture
def plane(test_config, store, hypervisor, sleeper, clock):
    """Fully wired control plane over the fake hypervisor. Not started."""
    return build_control_plane(test_config, store, client=hypervisor, sleep=sleeper, clock=clock)


@pytest_asyncio.fixture
async def running_plane(plane):
    """Control plane with the default IP pool seeded and workers running."""
    await plane.seed_ip_pool()
    await plane.dispatcher.start()
    yield plane
    await plane.dispatcher.stop()


# ============================================
# DATA HELPERS
# ============================================

async def make_order(store, customer_id="cust-1", plan_id="vps-standard", status=OrderStatus.PENDING) -> Order:
    order = Order(customer_id=customer_id, plan_id=plan_id, amount_usd=12.0, status=status)
    await store.save_order(order)
    return order


async def make_instance(
    store,
    customer_id="cust-1",
    plan_id="vps-standard",
    status=InstanceStatus.RUNNING,
    vmid=110,
    ip="10.0.0.100",
    **kwargs,
) -> Instance:
    order = await make_order(store, customer_id, plan_id, status=OrderStatus.COMPLETED)
    instance = Instance(
        customer_id=customer_id,
        order_id=order.id,
        plan_id=plan_id,
        hostname=f"vm-{order.id[:8]}",
        node="pve",
        cpu_cores=2,
        ram_mb=4096,
        disk_gb=80,
        vmid=vmid,
        ip_address=ip,
        status=status,
        root_password="s3cretpassw0rd12",
        **kwargs,
    )
    await store.save_instance(instance)
    return instance


# ============================================
# STRIPE
# ============================================

def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test_123") -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


@pytest.fixture
def stripe_checkout_session():
    """checkout.session.completed object for the vps-standard plan."""
    def _make(order_id=None, customer_id="cust-1", plan_id="vps-standard"):
        metadata = {"plan_id": plan_id, "customer_id": customer_id}
        if order_id:
            metadata["order_id"] = order_id
        return {
            "id": "cs_test_123",
            "customer": "cus_test_123",
            "subscription": "sub_test_123",
            "payment_intent": "pi_test_123",
            "amount_total": 1200,
            "currency": "usd",
            "metadata": metadata,
        }
    return _make
