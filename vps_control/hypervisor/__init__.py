"""
Hypervisor access: the Proxmox API client and the task poller.
"""

from .client import ProxmoxClient
from .tasks import TaskPoller

__all__ = ["ProxmoxClient", "TaskPoller"]
