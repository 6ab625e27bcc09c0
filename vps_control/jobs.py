"""
VPS Control Job Types
=====================

Typed job payloads, one variant per queue, plus the Job envelope and its
retry policy.

Payloads are frozen dataclasses so a retried attempt always sees the same
input. Dispatch on payload type is exhaustive in JobDispatcher.queue_for().
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from .config import QueueSettings
from .models import InstanceStatus, new_id, utcnow


class QueueName(Enum):
    PROVISION = "provision"
    POWER = "power"
    SNAPSHOT = "snapshot"


class PowerAction(Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    # Internal only: best-effort stop + destroy, then soft delete
    DELETE = "delete"


USER_POWER_ACTIONS = (PowerAction.START, PowerAction.STOP, PowerAction.RESTART)


# ============================================
# PAYLOADS
# ============================================

@dataclass(frozen=True)
class ProvisionPayload:
    """Build a new instance for a paid order."""
    queue: ClassVar[QueueName] = QueueName.PROVISION

    order_id: str
    hostname: str
    node: str
    cpu: int
    ram_mb: int
    disk_gb: int
    plan_id: str
    customer_id: str
    numeric_id: Optional[int] = None
    vlan: Optional[int] = None
    ip: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisionPayload":
        return cls(**data)


@dataclass(frozen=True)
class PowerPayload:
    """
    Run a power action against an existing instance.

    target_status overrides the status recorded once the remote task has
    finished; the billing lifecycle uses it to land instances in SUSPENDED
    or back in RUNNING.
    """
    queue: ClassVar[QueueName] = QueueName.POWER

    instance_id: str
    action: PowerAction
    target_status: Optional[InstanceStatus] = None
    reason: Optional[str] = None
    delete_after: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "action": self.action.value,
            "target_status": self.target_status.value if self.target_status else None,
            "reason": self.reason,
            "delete_after": self.delete_after.isoformat() if self.delete_after else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PowerPayload":
        return cls(
            instance_id=data["instance_id"],
            action=PowerAction(data["action"]),
            target_status=InstanceStatus(data["target_status"]) if data.get("target_status") else None,
            reason=data.get("reason"),
            delete_after=datetime.fromisoformat(data["delete_after"]) if data.get("delete_after") else None,
        )


@dataclass(frozen=True)
class SnapshotPayload:
    """Take a point-in-time snapshot of an instance."""
    queue: ClassVar[QueueName] = QueueName.SNAPSHOT

    instance_id: str
    name: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotPayload":
        return cls(**data)


JobPayload = Union[ProvisionPayload, PowerPayload, SnapshotPayload]

PAYLOAD_TYPES = {
    QueueName.PROVISION: ProvisionPayload,
    QueueName.POWER: PowerPayload,
    QueueName.SNAPSHOT: SnapshotPayload,
}


def payload_from_dict(queue: QueueName, data: Dict[str, Any]) -> JobPayload:
    return PAYLOAD_TYPES[queue].from_dict(data)


# ============================================
# JOB ENVELOPE
# ============================================

@dataclass(frozen=True)
class RetryPolicy:
    """Attempts and exponential backoff for one queue."""
    max_attempts: int
    backoff_base: float
    factor: float = 2.0
    timeout: float = 900.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        return self.backoff_base * (self.factor ** (attempt - 1))

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base,
            timeout=settings.job_timeout,
        )


class JobState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


UNFINISHED_STATES = (JobState.PENDING, JobState.ACTIVE, JobState.DELAYED)


@dataclass
class Job:
    """A unit of work travelling through one queue."""
    queue: QueueName
    payload: JobPayload
    policy: RetryPolicy
    idempotency_key: Optional[str] = None
    id: str = field(default_factory=new_id)
    state: JobState = JobState.PENDING
    attempts: int = 0
    delays: List[float] = field(default_factory=list)
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue.value,
            "idempotency_key": self.idempotency_key,
            "payload": self.payload.to_dict(),
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.policy.max_attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
