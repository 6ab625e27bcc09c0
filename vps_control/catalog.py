"""
VPS Plan Catalog
================

Static plan definitions. Plans are read-only to the control plane; a new
price or size is a new plan id, never an edit of an existing one.

Stripe price IDs are placeholders and must match the Stripe Dashboard.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .errors import NotFoundError
from .models import InstanceKind


@dataclass(frozen=True)
class Plan:
    """
    A purchasable VPS size.

    template_vmid of None clones the deployment default (PVE_TEMPLATE_VMID).
    """
    id: str
    name: str
    cpu_cores: int
    ram_mb: int
    disk_gb: int
    bandwidth_gb: Optional[int]
    price_monthly_usd: float
    allow_snapshots: bool
    template_vmid: Optional[int] = None
    kind: InstanceKind = InstanceKind.QEMU
    stripe_price_id: str = ""

    def __str__(self) -> str:
        return (
            f"{self.name}: {self.cpu_cores}vCPU, {self.ram_mb}MB RAM, "
            f"{self.disk_gb}GB disk (${self.price_monthly_usd}/mo)"
        )


# ============================================
# DEFAULT PLANS
# ============================================

DEFAULT_PLANS: List[Plan] = [
    Plan(
        id="vps-starter",
        name="Starter",
        cpu_cores=1,
        ram_mb=2048,
        disk_gb=40,
        bandwidth_gb=1000,
        price_monthly_usd=5.00,
        allow_snapshots=False,
        stripe_price_id="price_vps_starter_monthly",
    ),
    Plan(
        id="vps-standard",
        name="Standard",
        cpu_cores=2,
        ram_mb=4096,
        disk_gb=80,
        bandwidth_gb=2000,
        price_monthly_usd=12.00,
        allow_snapshots=True,
        stripe_price_id="price_vps_standard_monthly",
    ),
    Plan(
        id="vps-pro",
        name="Pro",
        cpu_cores=4,
        ram_mb=8192,
        disk_gb=160,
        bandwidth_gb=4000,
        price_monthly_usd=24.00,
        allow_snapshots=True,
        stripe_price_id="price_vps_pro_monthly",
    ),
    Plan(
        id="ct-small",
        name="Container Small",
        cpu_cores=1,
        ram_mb=1024,
        disk_gb=20,
        bandwidth_gb=500,
        price_monthly_usd=3.00,
        allow_snapshots=False,
        template_vmid=8000,
        kind=InstanceKind.LXC,
        stripe_price_id="price_ct_small_monthly",
    ),
]


class PlanCatalog:
    """Lookup over a fixed set of plans."""

    def __init__(self, plans: Optional[Iterable[Plan]] = None):
        self._plans: Dict[str, Plan] = {p.id: p for p in (plans if plans is not None else DEFAULT_PLANS)}

    def get(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if not plan:
            raise NotFoundError(f"Plan not found: {plan_id}")
        return plan

    def find(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def all(self) -> List[Plan]:
        return sorted(self._plans.values(), key=lambda p: p.price_monthly_usd)
