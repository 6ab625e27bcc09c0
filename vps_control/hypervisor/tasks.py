"""
Hypervisor Task Poller
======================

Waits for an asynchronous Proxmox task (UPID) to finish.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from ..errors import TaskFailed, TaskTimeout
from .client import ProxmoxClient

logger = logging.getLogger(__name__)

# Exit statuses Proxmox reports for a successful task
OK_EXIT_STATUSES = ("OK", "0")


class TaskPoller:
    """
    Polls task status at a fixed interval until it stops or times out.

    The sleep and clock are injectable so tests can run without waiting.
    Cancellation raised out of the sleep propagates to the caller.
    """

    def __init__(
        self,
        client: ProxmoxClient,
        interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.interval = interval
        self._sleep = sleep
        self._clock = clock

    async def wait_for_task(self, node: str, upid: str, timeout: float = 300.0) -> None:
        started = self._clock()

        while True:
            status = await self.client.get_task_status(node, upid)

            if status.get("status") == "stopped":
                exit_status = str(status.get("exitstatus", ""))
                if exit_status not in OK_EXIT_STATUSES:
                    logger.warning(f"Task failed: {upid} ({exit_status})", extra={"upid": upid})
                    raise TaskFailed(upid, exit_status)
                logger.debug(f"Task finished: {upid}", extra={"upid": upid})
                return

            if self._clock() - started >= timeout:
                raise TaskTimeout(upid, timeout)

            await self._sleep(self.interval)
