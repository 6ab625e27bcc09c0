"""
VPS Control Centralized Configuration
=====================================

Single source of truth for all configuration values.
Reads from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass
class ProxmoxConfig:
    """Proxmox VE API access and provisioning defaults."""
    api_url: str = ""
    token_id: str = ""
    token_secret: str = ""
    tls_insecure: bool = False
    default_node: str = "pve"
    default_bridge: str = "vmbr0"
    default_vlan: Optional[int] = 200
    default_storage: str = "local-lvm"
    template_vmid: int = 9000
    primary_disk: str = "scsi0"
    ci_user: str = "ubuntu"
    ssh_keys: str = ""
    request_timeout: float = 30.0
    task_poll_interval: float = 2.0
    task_timeout: float = 300.0

    @property
    def auth_header(self) -> str:
        return f"PVEAPIToken={self.token_id}={self.token_secret}"

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.token_id and self.token_secret)


@dataclass
class StripeConfig:
    secret_key: str = ""
    webhook_secret: str = ""
    success_url: str = "https://localhost/billing/success"
    cancel_url: str = "https://localhost/billing/cancel"
    signature_tolerance: int = 300

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key and self.webhook_secret)


@dataclass
class DatabaseConfig:
    url: str = ""
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass
class QueueSettings:
    """Concurrency and retry policy for one job queue."""
    concurrency: int
    max_attempts: int
    backoff_base: float
    job_timeout: float = 900.0
    keep_completed: int = 10
    keep_failed: int = 5


def _default_queues() -> Dict[str, QueueSettings]:
    return {
        "provision": QueueSettings(concurrency=3, max_attempts=3, backoff_base=2.0, job_timeout=1800.0),
        "power": QueueSettings(concurrency=5, max_attempts=3, backoff_base=2.0, job_timeout=600.0),
        "snapshot": QueueSettings(concurrency=2, max_attempts=2, backoff_base=5.0, job_timeout=900.0),
    }


@dataclass
class QueueConfig:
    queues: Dict[str, QueueSettings] = field(default_factory=_default_queues)

    def settings_for(self, name: str) -> QueueSettings:
        return self.queues[name]


@dataclass
class BillingConfig:
    grace_period_days: int = 3
    deletion_period_days: int = 30
    sweep_interval_seconds: int = 3600


@dataclass
class IPPoolConfig:
    """The default address pool seeded into the state store at startup."""
    name: str = "default"
    cidr: str = "10.0.0.0/24"
    range_start: str = "10.0.0.100"
    range_end: str = "10.0.0.254"
    gateway: str = "10.0.0.1"
    bridge: str = "vmbr0"
    vlan: Optional[int] = None


@dataclass
class VPSControlConfig:
    """Master configuration for the VPS control plane."""

    # Sub-configs
    proxmox: ProxmoxConfig = field(default_factory=ProxmoxConfig)
    stripe: StripeConfig = field(default_factory=StripeConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    ip_pool: IPPoolConfig = field(default_factory=IPPoolConfig)

    # VMID floors per guest kind
    vmid_floors: Dict[str, int] = field(default_factory=lambda: {"qemu": 110, "lxc": 5000})

    # Application settings
    log_level: str = "INFO"
    log_format: str = "json"
    admin_group: str = "vps-admins"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_env(cls) -> "VPSControlConfig":
        """Load configuration from environment variables."""
        queues = _default_queues()
        for name, settings in queues.items():
            prefix = f"QUEUE_{name.upper()}_"
            settings.concurrency = _env_int(prefix + "CONCURRENCY", settings.concurrency)
            settings.max_attempts = _env_int(prefix + "ATTEMPTS", settings.max_attempts)
            settings.backoff_base = float(os.environ.get(prefix + "BACKOFF", settings.backoff_base))
            settings.job_timeout = float(os.environ.get(prefix + "TIMEOUT", settings.job_timeout))

        return cls(
            proxmox=ProxmoxConfig(
                api_url=os.environ.get("PVE_API_URL", ""),
                token_id=os.environ.get("PVE_TOKEN_ID", ""),
                token_secret=os.environ.get("PVE_TOKEN_SECRET", ""),
                tls_insecure=_env_bool("PVE_TLS_INSECURE", False),
                default_node=os.environ.get("PVE_DEFAULT_NODE", "pve"),
                default_bridge=os.environ.get("PVE_DEFAULT_BRIDGE", "vmbr0"),
                default_vlan=_env_int("PVE_DEFAULT_VLAN", 200),
                default_storage=os.environ.get("PVE_DEFAULT_STORAGE", "local-lvm"),
                template_vmid=_env_int("PVE_TEMPLATE_VMID", 9000),
                ci_user=os.environ.get("PVE_CI_USER", "ubuntu"),
                ssh_keys=os.environ.get("PVE_SSH_KEYS", ""),
                task_timeout=float(os.environ.get("PVE_TASK_TIMEOUT", "300")),
            ),
            stripe=StripeConfig(
                secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
                webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
                success_url=os.environ.get("STRIPE_SUCCESS_URL", "https://localhost/billing/success"),
                cancel_url=os.environ.get("STRIPE_CANCEL_URL", "https://localhost/billing/cancel"),
            ),
            database=DatabaseConfig(
                url=os.environ.get("DATABASE_URL", ""),
            ),
            queues=QueueConfig(queues=queues),
            billing=BillingConfig(
                grace_period_days=_env_int("BILLING_GRACE_PERIOD_DAYS", 3),
                deletion_period_days=_env_int("BILLING_DELETION_PERIOD_DAYS", 30),
                sweep_interval_seconds=_env_int("BILLING_SWEEP_INTERVAL", 3600),
            ),
            ip_pool=IPPoolConfig(
                name=os.environ.get("IP_POOL_NAME", "default"),
                cidr=os.environ.get("IP_POOL_CIDR", "10.0.0.0/24"),
                range_start=os.environ.get("IP_POOL_START", "10.0.0.100"),
                range_end=os.environ.get("IP_POOL_END", "10.0.0.254"),
                gateway=os.environ.get("IP_POOL_GATEWAY", "10.0.0.1"),
                bridge=os.environ.get("IP_POOL_BRIDGE", os.environ.get("PVE_DEFAULT_BRIDGE", "vmbr0")),
                vlan=_env_int("IP_POOL_VLAN", None),
            ),
            vmid_floors={
                "qemu": _env_int("VMID_FLOOR_QEMU", 110),
                "lxc": _env_int("VMID_FLOOR_LXC", 5000),
            },
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "json"),
            admin_group=os.environ.get("ADMIN_GROUP", "vps-admins"),
            cors_origins=os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(","),
        )
