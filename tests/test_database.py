"""
Tests for the PostgreSQL Store
==============================

Uses a mocked asyncpg pool; rows are plain dicts.
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from vps_control.database import INSTANCE_COLUMNS, PostgresStore, _upsert_sql, check_health
from vps_control.jobs import JobState, PowerAction, QueueName
from vps_control.models import Instance, InstanceKind, InstanceStatus, SubscriptionStatus

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def pool():
    pool = MagicMock()
    pool.execute = AsyncMock()
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchrow = AsyncMock(return_value=None)
    pool.fetchval = AsyncMock(return_value=None)
    return pool


def instance_row(**overrides):
    row = {column: None for column in INSTANCE_COLUMNS}
    row.update(
        id="inst-1", customer_id="cust-1", order_id="order-1", plan_id="vps-standard",
        hostname="vm-order-1", kind="qemu", node="pve", vmid=110, cpu_cores=2, ram_mb=4096,
        disk_gb=80, ip_address="10.0.0.100", status="running", created_at=NOW, updated_at=NOW,
    )
    row.update(overrides)
    return row


class TestUpsertSql:
    def test_conflict_updates_all_but_key(self):
        sql = _upsert_sql("ip_pools", ("name", "cidr", "active"), "name")

        assert sql.startswith("INSERT INTO ip_pools (name, cidr, active) VALUES ($1, $2, $3)")
        assert "ON CONFLICT (name) DO UPDATE SET cidr = EXCLUDED.cidr, active = EXCLUDED.active" in sql


class TestPostgresStore:
    """Row mapping in and out of the database."""

    @pytest.mark.asyncio
    async def test_save_instance_sends_enum_values(self, pool):
        store = PostgresStore(pool)
        instance = Instance(
            customer_id="cust-1", order_id="order-1", plan_id="vps-standard", hostname="vm-1",
            node="pve", cpu_cores=2, ram_mb=4096, disk_gb=80, kind=InstanceKind.LXC,
            status=InstanceStatus.SUSPENDED,
        )

        await store.save_instance(instance)

        args = pool.execute.await_args.args
        values = dict(zip(INSTANCE_COLUMNS, args[1:]))
        assert values["kind"] == "lxc"
        assert values["status"] == "suspended"
        assert values["id"] == instance.id

    @pytest.mark.asyncio
    async def test_get_instance_maps_row(self, pool):
        pool.fetchrow.return_value = instance_row()
        store = PostgresStore(pool)

        instance = await store.get_instance("inst-1")

        assert instance.kind == InstanceKind.QEMU
        assert instance.status == InstanceStatus.RUNNING
        assert instance.vmid == 110

    @pytest.mark.asyncio
    async def test_missing_instance(self, pool):
        assert await PostgresStore(pool).get_instance("nope") is None

    @pytest.mark.asyncio
    async def test_list_instances_filters(self, pool):
        store = PostgresStore(pool)

        await store.list_instances("cust-1", [InstanceStatus.RUNNING, InstanceStatus.STOPPED])

        sql, *params = pool.fetch.await_args.args
        assert "customer_id = $1" in sql
        assert "status = ANY($2::text[])" in sql
        assert params == ["cust-1", ["running", "stopped"]]

    @pytest.mark.asyncio
    async def test_list_subscriptions_by_status(self, pool):
        pool.fetch.return_value = [{
            "customer_id": "cust-1", "status": "past_due", "stripe_customer_id": "cus_1",
            "stripe_subscription_id": "sub_1", "current_period_start": None, "current_period_end": None,
            "cancel_at_period_end": False, "past_due_since": NOW, "suspend_after": NOW, "updated_at": NOW,
        }]

        subscriptions = await PostgresStore(pool).list_subscriptions(SubscriptionStatus.PAST_DUE)

        assert pool.fetch.await_args.args[1] == "past_due"
        assert subscriptions[0].status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_unfinished_jobs_restore_payload(self, pool):
        pool.fetch.return_value = [{
            "id": "job-1",
            "queue": "power",
            "idempotency_key": "suspend:inst-1",
            "payload": json.dumps({
                "instance_id": "inst-1",
                "action": "stop",
                "target_status": "suspended",
                "reason": "payment_overdue",
                "delete_after": NOW.isoformat(),
            }),
            "state": "delayed",
            "attempts": 1,
            "max_attempts": 3,
            "backoff_base": 2.0,
            "timeout": 600.0,
            "last_error": "busy",
            "created_at": NOW,
            "updated_at": NOW,
        }]

        jobs = await PostgresStore(pool).list_unfinished_jobs()

        job = jobs[0]
        assert job.queue == QueueName.POWER
        assert job.state == JobState.DELAYED
        assert job.payload.action == PowerAction.STOP
        assert job.payload.target_status == InstanceStatus.SUSPENDED
        assert job.payload.delete_after == NOW
        assert job.policy.max_attempts == 3


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, pool):
        pool.fetchval.side_effect = [1, 4, 2]

        health = await check_health(pool)

        assert health == {"status": "healthy", "connected": True, "instances_live": 4, "jobs_unfinished": 2}

    @pytest.mark.asyncio
    async def test_unhealthy(self, pool):
        pool.fetchval.side_effect = OSError("connection refused")

        health = await check_health(pool)

        assert health["status"] == "unhealthy"
        assert health["connected"] is False
