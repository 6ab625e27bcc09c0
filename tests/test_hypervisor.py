"""
Tests for the Proxmox Client and Task Poller
============================================

The client runs against httpx.MockTransport; the poller against a mocked
client with an injected clock and sleep.
"""

import asyncio
import itertools
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs

import httpx
import pytest

from vps_control.config import ProxmoxConfig
from vps_control.errors import HypervisorError, TaskFailed, TaskTimeout, ValidationError
from vps_control.hypervisor import ProxmoxClient, TaskPoller
from vps_control.models import InstanceKind

PVE_URL = "https://pve.test:8006/api2/json"


def make_client(handler):
    config = ProxmoxConfig(api_url=PVE_URL, token_id="root@pam!ctl", token_secret="tok")
    return ProxmoxClient(config, transport=httpx.MockTransport(handler))


class RequestLog:
    """Handler that records requests and answers from a script."""

    def __init__(self, status_code=200, body=None):
        self.requests = []
        self.status_code = status_code
        self.body = body if body is not None else {"data": "UPID:pve:00001:qmstart:110:root@pam:"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


# ============================================
# CLIENT
# ============================================

class TestProxmoxClient:
    """Test REST calls and error mapping."""

    @pytest.mark.asyncio
    async def test_start_returns_upid_with_token_auth(self):
        log = RequestLog()
        client = make_client(log)

        upid = await client.start("pve", 110)

        assert upid.startswith("UPID:pve")
        request = log.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api2/json/nodes/pve/qemu/110/status/start"
        assert request.headers["Authorization"] == "PVEAPIToken=root@pam!ctl=tok"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_clone_sends_form_params(self):
        log = RequestLog()
        client = make_client(log)

        await client.clone("pve", 9000, 115, name="vm-abc12345", storage="local-lvm")

        request = log.requests[0]
        assert request.url.path == "/api2/json/nodes/pve/qemu/9000/clone"
        form = parse_qs(request.content.decode())
        assert form["newid"] == ["115"]
        assert form["name"] == ["vm-abc12345"]
        assert form["full"] == ["1"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_lxc_paths(self):
        log = RequestLog()
        client = make_client(log)

        await client.stop("pve", 5001, kind=InstanceKind.LXC)

        assert log.requests[0].url.path == "/api2/json/nodes/pve/lxc/5001/status/stop"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_delete_uses_delete_method(self):
        log = RequestLog()
        client = make_client(log)

        await client.delete("pve", 120)

        assert log.requests[0].method == "DELETE"
        assert log.requests[0].url.path == "/api2/json/nodes/pve/qemu/120"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_task_status_encodes_upid(self):
        log = RequestLog(body={"data": {"status": "running"}})
        client = make_client(log)

        status = await client.get_task_status("pve", "UPID:pve:00001:qmstart:110:root@pam:")

        assert status == {"status": "running"}
        assert "UPID%3Apve" in log.requests[0].url.raw_path.decode()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_list_snapshots_filters_current(self):
        log = RequestLog(body={"data": [
            {"name": "before-upgrade", "snaptime": 1700000000},
            {"name": "current", "description": "You are here!"},
        ]})
        client = make_client(log)

        snapshots = await client.list_snapshots("pve", 110)

        assert [s["name"] for s in snapshots] == ["before-upgrade"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_maps_to_hypervisor_error(self):
        log = RequestLog(status_code=500, body={"data": None, "message": "VM 110 not running\n"})
        client = make_client(log)

        with pytest.raises(HypervisorError) as exc_info:
            await client.stop("pve", 110)

        assert exc_info.value.status_code == 500
        assert "VM 110 not running" in exc_info.value.message
        assert exc_info.value.retryable
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_has_no_status(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(HypervisorError) as exc_info:
            await client.list_nodes()

        assert exc_info.value.status_code is None
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("call", [
        lambda c: c.start("", 110),
        lambda c: c.start("pve", 0),
        lambda c: c.clone("pve", -1, 110),
        lambda c: c.resize_disk("pve", 110, "scsi0", ""),
        lambda c: c.create_snapshot("pve", 110, ""),
    ])
    async def test_validation_before_request(self, call):
        """Bad input never reaches the API."""
        log = RequestLog()
        client = make_client(log)

        with pytest.raises(ValidationError):
            await call(client)

        assert log.requests == []
        await client.aclose()


# ============================================
# TASK POLLER
# ============================================

def stepping_clock(step: float):
    counter = itertools.count()
    return lambda: next(counter) * step


class TestTaskPoller:
    """Test polling until a task stops."""

    @pytest.mark.asyncio
    async def test_waits_until_stopped_ok(self, sleeper):
        client = MagicMock()
        client.get_task_status = AsyncMock(side_effect=[
            {"status": "running"},
            {"status": "running"},
            {"status": "stopped", "exitstatus": "OK"},
        ])
        poller = TaskPoller(client, sleep=sleeper, clock=stepping_clock(0.1))

        await poller.wait_for_task("pve", "UPID:1", timeout=300)

        assert client.get_task_status.await_count == 3
        assert sleeper.delays == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_zero_exit_status_is_success(self, sleeper):
        client = MagicMock()
        client.get_task_status = AsyncMock(return_value={"status": "stopped", "exitstatus": "0"})
        poller = TaskPoller(client, sleep=sleeper)

        await poller.wait_for_task("pve", "UPID:1")

    @pytest.mark.asyncio
    async def test_failed_exit_status(self, sleeper):
        client = MagicMock()
        client.get_task_status = AsyncMock(return_value={"status": "stopped", "exitstatus": "clone failed: disk full"})
        poller = TaskPoller(client, sleep=sleeper)

        with pytest.raises(TaskFailed) as exc_info:
            await poller.wait_for_task("pve", "UPID:1")

        assert exc_info.value.exit_status == "clone failed: disk full"

    @pytest.mark.asyncio
    async def test_timeout(self, sleeper):
        client = MagicMock()
        client.get_task_status = AsyncMock(return_value={"status": "running"})
        poller = TaskPoller(client, sleep=sleeper, clock=stepping_clock(2.0))

        with pytest.raises(TaskTimeout) as exc_info:
            await poller.wait_for_task("pve", "UPID:1", timeout=10)

        assert exc_info.value.timeout == 10
        assert len(sleeper.delays) < 10

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        client = MagicMock()
        client.get_task_status = AsyncMock(return_value={"status": "running"})

        async def cancelled_sleep(delay):
            raise asyncio.CancelledError()

        poller = TaskPoller(client, sleep=cancelled_sleep)

        with pytest.raises(asyncio.CancelledError):
            await poller.wait_for_task("pve", "UPID:1")
