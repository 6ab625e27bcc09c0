"""
VPS Control API
===============

FastAPI application for the VPS control plane.

Endpoints:
- POST /api/webhook/stripe                  - Stripe webhook (public, signature verified)
- GET  /api/health                          - Health check
- GET  /api/plans                           - Plan catalog
- POST /api/checkout                        - Create order + Stripe checkout session
- GET  /api/orders                          - My orders
- GET  /api/instances                       - My instances
- GET  /api/instances/{id}                  - Instance with live status
- POST /api/instances/{id}/power            - Queue start/stop/restart
- GET  /api/instances/{id}/snapshots        - Live snapshot list
- POST /api/instances/{id}/snapshots        - Queue a snapshot
- GET  /api/jobs/{job_id}                   - Job status
- GET  /api/admin/orders                    - All orders (admin)
- GET  /api/admin/instances                 - All instances (admin)
- GET  /api/admin/stats                     - Dashboard counts (admin)
- POST /api/admin/sweep                     - Run the billing sweep now (admin)

Authentication is done by the reverse proxy. The verified principal
arrives in the X-Auth-UID / X-Auth-Email / X-Auth-Groups headers.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from . import __version__
from .allocator import ResourceAllocator
from .billing import VPSBilling
from .catalog import PlanCatalog
from .config import VPSControlConfig
from .database import PostgresStore, check_health, init_database
from .dispatcher import JobDispatcher
from .errors import VPSControlError
from .hypervisor import ProxmoxClient, TaskPoller
from .jobs import QueueName
from .lifecycle import BillingLifecycleManager, SweepScheduler
from .models import InstanceKind, IPPool, utcnow
from .power import PowerController
from .provisioning import ProvisioningPipeline
from .service import VPSService
from .snapshots import SnapshotManager
from .store import MemoryStore, StateStore

logger = logging.getLogger(__name__)


# ============================================
# COMPOSITION ROOT
# ============================================

@dataclass
class ControlPlane:
    """Every long-lived component, wired together."""
    config: VPSControlConfig
    store: StateStore
    client: ProxmoxClient
    poller: TaskPoller
    allocator: ResourceAllocator
    dispatcher: JobDispatcher
    catalog: PlanCatalog
    pipeline: ProvisioningPipeline
    power: PowerController
    snapshots: SnapshotManager
    lifecycle: BillingLifecycleManager
    scheduler: SweepScheduler
    billing: VPSBilling
    service: VPSService
    db_pool: Any = None

    async def seed_ip_pool(self) -> None:
        """Create the configured default pool if the store has none."""
        if await self.store.list_ip_pools(active_only=False):
            return
        settings = self.config.ip_pool
        await self.store.save_ip_pool(IPPool(
            name=settings.name,
            cidr=settings.cidr,
            range_start=settings.range_start,
            range_end=settings.range_end,
            gateway=settings.gateway,
            bridge=settings.bridge,
            vlan=settings.vlan,
        ))
        logger.info(f"Seeded IP pool {settings.name} ({settings.range_start} - {settings.range_end})")

    async def start(self) -> None:
        await self.seed_ip_pool()
        await self.dispatcher.recover()
        await self.dispatcher.start()
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.dispatcher.stop()
        await self.client.aclose()
        if self.db_pool is not None:
            await self.db_pool.close()
            logger.info("Database pool closed")


def build_control_plane(
    config: VPSControlConfig,
    store: StateStore,
    catalog: Optional[PlanCatalog] = None,
    client: Optional[ProxmoxClient] = None,
    transport=None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], datetime] = utcnow,
) -> ControlPlane:
    """Wire the control plane. client, transport, sleep and clock are for tests."""
    if not config.proxmox.is_configured:
        logger.warning("Proxmox API not configured - hypervisor calls will fail")

    catalog = catalog or PlanCatalog()
    client = client or ProxmoxClient(config.proxmox, transport=transport)
    poller = TaskPoller(client, interval=config.proxmox.task_poll_interval, sleep=sleep)
    allocator = ResourceAllocator(
        store,
        {InstanceKind(kind): floor for kind, floor in config.vmid_floors.items()},
    )
    dispatcher = JobDispatcher(store, config.queues, sleep=sleep)

    pipeline = ProvisioningPipeline(store, client, poller, allocator, catalog, config.proxmox)
    power = PowerController(store, client, poller, dispatcher, config.proxmox)
    snapshots = SnapshotManager(store, client, poller, dispatcher, catalog, config.proxmox)

    dispatcher.register(QueueName.PROVISION, pipeline.run, pipeline.on_failed)
    dispatcher.register(QueueName.POWER, power.run, power.on_failed)
    dispatcher.register(QueueName.SNAPSHOT, snapshots.run, snapshots.on_failed)

    lifecycle = BillingLifecycleManager(store, dispatcher, config.billing, clock=clock)
    scheduler = SweepScheduler(lifecycle, interval=config.billing.sweep_interval_seconds, sleep=sleep)
    billing = VPSBilling(config.stripe, store, catalog, lifecycle, pipeline, dispatcher)

    service = VPSService(store, dispatcher, client, catalog, billing, power, snapshots, scheduler)

    return ControlPlane(
        config=config,
        store=store,
        client=client,
        poller=poller,
        allocator=allocator,
        dispatcher=dispatcher,
        catalog=catalog,
        pipeline=pipeline,
        power=power,
        snapshots=snapshots,
        lifecycle=lifecycle,
        scheduler=scheduler,
        billing=billing,
        service=service,
    )


async def build_from_config(config: VPSControlConfig) -> ControlPlane:
    """Production wiring: Postgres when DATABASE_URL is set, else in-memory."""
    pool = None
    if config.database.is_configured:
        pool = await init_database(
            config.database.url,
            config.database.min_pool_size,
            config.database.max_pool_size,
        )
        store: StateStore = PostgresStore(pool)
    else:
        logger.warning("DATABASE_URL not set - using in-memory store, state is lost on restart")
        store = MemoryStore()

    plane = build_control_plane(config, store)
    plane.db_pool = pool
    return plane


# ============================================
# REQUEST MODELS
# ============================================

class CheckoutRequest(BaseModel):
    plan_id: str
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if v and not re.match(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$", v):
            raise ValueError("Invalid email format")
        return v.lower().strip() if v else None


class PowerRequest(BaseModel):
    action: str


class SnapshotRequest(BaseModel):
    name: str
    description: str = ""

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        if len(v) > 255:
            raise ValueError("Description must be at most 255 characters")
        return v


@dataclass
class Principal:
    user_id: str
    email: str
    groups: List[str]
    is_admin: bool = False


# ============================================
# FASTAPI APPLICATION
# ============================================

def create_app(
    config: Optional[VPSControlConfig] = None,
    plane: Optional[ControlPlane] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    When no control plane is supplied one is built from config at startup.
    """
    config = config or (plane.config if plane else VPSControlConfig.from_env())

    app = FastAPI(
        title="VPS Control Plane",
        description="Provisioning, power, snapshot and billing lifecycle API",
        version=__version__,
    )

    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.state.plane = plane
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VPSControlError)
    async def control_error_handler(request: Request, exc: VPSControlError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.on_event("startup")
    async def startup_event():
        if app.state.plane is None:
            app.state.plane = await build_from_config(config)
        await app.state.plane.start()
        logger.info("VPS control plane started")

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.plane is not None:
            await app.state.plane.stop()
        logger.info("VPS control plane stopped")

    # ----------------------------------------
    # DEPENDENCIES
    # ----------------------------------------

    def get_service(request: Request) -> VPSService:
        return request.app.state.plane.service

    async def get_principal(request: Request) -> Principal:
        """Extract the verified principal from proxy headers."""
        user_id = request.headers.get("X-Auth-UID")
        if not user_id:
            raise HTTPException(status_code=401, detail="Not authenticated")

        groups = [g.strip() for g in request.headers.get("X-Auth-Groups", "").split(",") if g.strip()]
        return Principal(
            user_id=user_id,
            email=request.headers.get("X-Auth-Email", ""),
            groups=groups,
            is_admin=config.admin_group in groups,
        )

    async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.is_admin:
            raise HTTPException(status_code=403, detail="Admin access required")
        return principal

    # ----------------------------------------
    # PUBLIC
    # ----------------------------------------

    @app.post("/api/webhook/stripe")
    @limiter.limit("30/minute")
    async def stripe_webhook(request: Request):
        """
        Handle Stripe webhook events.

        This endpoint is PUBLIC but secured via Stripe signature verification.
        """
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        result = await request.app.state.plane.billing.process_webhook(payload, signature)
        return {"status": "ok", "result": result}

    @app.get("/api/health")
    async def health(request: Request) -> Dict[str, Any]:
        plane: ControlPlane = request.app.state.plane
        database = {"status": "memory"}
        if plane.db_pool is not None:
            database = await check_health(plane.db_pool)

        return {
            "status": "healthy" if database.get("status") != "unhealthy" else "degraded",
            "version": __version__,
            "hypervisor_configured": plane.config.proxmox.is_configured,
            "billing_configured": plane.config.stripe.is_configured,
            "database": database,
            "queues": plane.dispatcher.stats(),
            "sweep_running": plane.scheduler.is_running,
        }

    @app.get("/api/plans")
    async def list_plans(service: VPSService = Depends(get_service)):
        return {"plans": service.list_plans()}

    # ----------------------------------------
    # CUSTOMER
    # ----------------------------------------

    @app.post("/api/checkout")
    async def create_checkout(
        body: CheckoutRequest,
        principal: Principal = Depends(get_principal),
        service: VPSService = Depends(get_service),
    ):
        return await service.create_checkout(principal.user_id, body.plan_id, body.email or principal.email or None)

    @app.get("/api/orders")
    async def get_my_orders(
        principal: Principal = Depends(get_principal),
        service: VPSService = Depends(get_service),
    ):
        return {"orders": await service.get_my_orders(principal.user_id)}

    @app.get("/api/instances")
    async def list_my_instances(
        principal: Principal = Depends(get_principal),
        service: VPSService = Depends(get_service),
    ):
        return {"instances": await service.list_my_instances(principal.user_id)}

    @app.get("/api/instances/{instance_id}")
    async def get_instance(
        instance_id: str,
        principal: Principal = Depends(get_principal),
        service: VPSService = Depends(get_service),
    ):
        return await service.get_instance(principal.user_id, instance_id)

    @app.post("/api/instances/{instance_id}/power", status_code=202)
    async def power_action(
        instance_id: str,
        body: PowerRequest,
        principal: Principal = Depends(get_principal),
        service: VPSService = Depends(get_service),
    ):
        return await service.power_action(principal.user_id, instance_id, body.action)

    @app.get("/api/instances/{instance_id}/snapshots")
    async def list_snapshots(
        instance_id: str,
        principal: Principal = Depends(get_principal),
        service: VPSService = Depends(get_service),
    ):
        return {"snapshots": await service.list_snapshots(principal.user_id, instance_id)}

    @app.post("/api/instances/{instance_id}/snapshots", status_code=202)
    async def create_snapshot(
        instance_id: str,
        body: SnapshotRequest,
        principal: Principal = Depends(get_principal),
        service: VPSService = Depends(get_service),
    ):
        return await service.create_snapshot(principal.user_id, instance_id, body.name, body.description)

    @app.get("/api/jobs/{job_id}")
    async def get_job_status(
        job_id: str,
        principal: Principal = Depends(get_principal),
        service: VPSService = Depends(get_service),
    ):
        return await service.get_job_status(principal.user_id, job_id, is_admin=principal.is_admin)

    # ----------------------------------------
    # ADMIN
    # ----------------------------------------

    @app.get("/api/admin/orders")
    async def admin_list_orders(
        admin: Principal = Depends(require_admin),
        service: VPSService = Depends(get_service),
    ):
        return {"orders": await service.admin_list_orders()}

    @app.get("/api/admin/instances")
    async def admin_list_instances(
        include_deleted: bool = False,
        admin: Principal = Depends(require_admin),
        service: VPSService = Depends(get_service),
    ):
        return {"instances": await service.admin_list_instances(include_deleted)}

    @app.get("/api/admin/stats")
    async def dashboard_stats(
        admin: Principal = Depends(require_admin),
        service: VPSService = Depends(get_service),
    ):
        return await service.dashboard_stats()

    @app.post("/api/admin/sweep")
    async def trigger_sweep(
        admin: Principal = Depends(require_admin),
        service: VPSService = Depends(get_service),
    ):
        logger.info(f"Billing sweep triggered by {admin.user_id}")
        return await service.trigger_sweep()

    return app
