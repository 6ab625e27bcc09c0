"""
VPS Control Error Taxonomy
==========================

Every error raised by the control plane derives from VPSControlError.

Two class attributes drive how errors travel:
- retryable: whether the job dispatcher may attempt the job again
- http_status: the status code the API layer answers with
"""

from typing import Optional, Dict, Any


class VPSControlError(Exception):
    """Base exception for control plane errors."""

    retryable: bool = False
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "detail": self.message,
            **self.details,
        }


class ValidationError(VPSControlError):
    """Bad input, rejected before any remote call."""
    http_status = 400


class NotFoundError(VPSControlError):
    """Referenced entity is missing or not owned by the caller."""
    http_status = 404


class ForbiddenError(VPSControlError):
    """Entitlement or policy check failed."""
    http_status = 403


class PoolExhausted(VPSControlError):
    """No allocatable address remains in the IP pool."""
    http_status = 503

    def __init__(self, pool_name: str):
        self.pool_name = pool_name
        super().__init__(
            f"No available IP addresses in pool {pool_name}",
            {"pool": pool_name},
        )


class InvalidTransition(VPSControlError):
    """A state machine was asked to move backwards or sideways."""
    http_status = 409


class WebhookSignatureError(VPSControlError):
    """Payment provider webhook failed signature verification."""
    http_status = 400


class PaymentProviderError(VPSControlError):
    """Stripe rejected a request or could not be reached."""
    http_status = 502


class HypervisorError(VPSControlError):
    """The Proxmox API rejected the request or could not be reached."""

    retryable = True
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        prefix = f"HTTP {status_code}" if status_code else "connection error"
        super().__init__(f"[proxmox] {prefix}: {message}", {"status_code": status_code})


class TaskFailed(VPSControlError):
    """A hypervisor task stopped with a non-OK exit status."""

    retryable = True
    http_status = 502

    def __init__(self, upid: str, exit_status: str):
        self.upid = upid
        self.exit_status = exit_status
        super().__init__(
            f"Task {upid} failed with exit status {exit_status}",
            {"upid": upid, "exit_status": exit_status},
        )


class TaskTimeout(VPSControlError):
    """A hypervisor task did not finish before its deadline."""

    retryable = True
    http_status = 504

    def __init__(self, upid: str, timeout: float):
        self.upid = upid
        self.timeout = timeout
        super().__init__(
            f"Task {upid} timed out after {timeout:.0f}s",
            {"upid": upid, "timeout": timeout},
        )


def is_retryable(error: BaseException) -> bool:
    """Unknown exceptions are retried; taxonomy errors say for themselves."""
    if isinstance(error, VPSControlError):
        return error.retryable
    return True
