"""
VPS Control Database Layer
==========================

Async PostgreSQL store using asyncpg.
Handles schema migrations on startup.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import asyncpg

from .jobs import Job, JobState, QueueName, RetryPolicy, payload_from_dict
from .models import (
    Instance,
    InstanceKind,
    InstanceStatus,
    IPPool,
    Order,
    OrderStatus,
    Subscription,
    SubscriptionStatus,
)
from .store import StateStore

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


async def init_database(database_url: str, min_size: int = 2, max_size: int = 10) -> "asyncpg.Pool":
    """
    Create the connection pool and run migrations.

    Args:
        database_url: PostgreSQL connection string
        min_size: Minimum pool connections
        max_size: Maximum pool connections

    Returns:
        asyncpg connection pool
    """
    logger.info("Initializing database connection pool...")
    pool = await asyncpg.create_pool(
        database_url,
        min_size=min_size,
        max_size=max_size,
    )

    await run_migrations(pool)

    logger.info("Database initialized successfully")
    return pool


async def run_migrations(pool: "asyncpg.Pool"):
    """
    Run pending SQL migrations in order.

    Migrations are SQL files in vps_control/migrations/ named NNN_description.sql.
    Applied migrations are tracked in the schema_migrations table.
    """
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version VARCHAR(10) PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)

        applied = set()
        rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
        for row in rows:
            applied.add(row["version"])

        for migration_file in sorted(MIGRATIONS_DIR.glob("*.sql")):
            version = migration_file.stem.split("_")[0]

            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration {version}: {migration_file.name}")
            sql = migration_file.read_text(encoding="utf-8")

            try:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(
                        "INSERT INTO schema_migrations (version) VALUES ($1)",
                        version,
                    )
                logger.info(f"Migration {version} applied successfully")
            except Exception as e:
                logger.error(f"Migration {version} failed: {e}")
                raise


async def check_health(pool: "asyncpg.Pool") -> Dict[str, Any]:
    """Check database connectivity and return stats."""
    try:
        await pool.fetchval("SELECT 1")
        instance_count = await pool.fetchval("SELECT COUNT(*) FROM instances WHERE status <> 'deleted'")
        open_jobs = await pool.fetchval("SELECT COUNT(*) FROM jobs")

        return {
            "status": "healthy",
            "connected": True,
            "instances_live": instance_count,
            "jobs_unfinished": open_jobs,
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "connected": False,
            "error": str(e),
        }


# =============================================================================
# Row mapping
# =============================================================================

def _instance_from_row(row) -> Instance:
    data = dict(row)
    data["kind"] = InstanceKind(data["kind"])
    data["status"] = InstanceStatus(data["status"])
    return Instance(**data)


def _order_from_row(row) -> Order:
    data = dict(row)
    data["status"] = OrderStatus(data["status"])
    data["amount_usd"] = float(data["amount_usd"])
    return Order(**data)


def _subscription_from_row(row) -> Subscription:
    data = dict(row)
    data["status"] = SubscriptionStatus(data["status"])
    return Subscription(**data)


def _job_from_row(row) -> Job:
    queue = QueueName(row["queue"])
    return Job(
        id=row["id"],
        queue=queue,
        payload=payload_from_dict(queue, json.loads(row["payload"])),
        policy=RetryPolicy(
            max_attempts=row["max_attempts"],
            backoff_base=row["backoff_base"],
            timeout=row["timeout"],
        ),
        idempotency_key=row["idempotency_key"],
        state=JobState(row["state"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


INSTANCE_COLUMNS = (
    "id", "customer_id", "order_id", "plan_id", "hostname", "kind", "node", "vmid",
    "cpu_cores", "ram_mb", "disk_gb", "bandwidth_gb", "ip_address", "bridge", "vlan",
    "root_password", "status", "created_at", "updated_at", "provisioned_at",
    "suspended_at", "suspension_reason", "delete_after", "deleted_at",
    "error_message", "last_error_at",
)


def _upsert_sql(table: str, columns, key: str) -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c != key)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT ({key}) DO UPDATE SET {updates}"
    )


class PostgresStore(StateStore):
    """StateStore backed by an asyncpg pool."""

    def __init__(self, pool: "asyncpg.Pool"):
        self.pool = pool

    # =========================================
    # INSTANCES
    # =========================================

    async def save_instance(self, instance: Instance) -> None:
        instance.updated_at = datetime.now(instance.created_at.tzinfo)
        values = []
        for column in INSTANCE_COLUMNS:
            value = getattr(instance, column)
            if column in ("kind", "status"):
                value = value.value
            values.append(value)
        await self.pool.execute(_upsert_sql("instances", INSTANCE_COLUMNS, "id"), *values)

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        row = await self.pool.fetchrow("SELECT * FROM instances WHERE id = $1", instance_id)
        return _instance_from_row(row) if row else None

    async def get_instance_by_order(self, order_id: str) -> Optional[Instance]:
        row = await self.pool.fetchrow("SELECT * FROM instances WHERE order_id = $1", order_id)
        return _instance_from_row(row) if row else None

    async def list_instances(
        self,
        customer_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
    ) -> List[Instance]:
        clauses: List[str] = []
        params: list = []
        if customer_id is not None:
            params.append(customer_id)
            clauses.append(f"customer_id = ${len(params)}")
        if statuses is not None:
            params.append([s.value for s in statuses])
            clauses.append(f"status = ANY(${len(params)}::text[])")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.pool.fetch(
            f"SELECT * FROM instances {where} ORDER BY created_at DESC",
            *params,
        )
        return [_instance_from_row(r) for r in rows]

    async def max_vmid(self, kind: InstanceKind) -> Optional[int]:
        return await self.pool.fetchval(
            "SELECT MAX(vmid) FROM instances WHERE kind = $1 AND status <> 'deleted'",
            kind.value,
        )

    async def bound_ips(self) -> Set[str]:
        rows = await self.pool.fetch(
            "SELECT ip_address FROM instances WHERE status <> 'deleted' AND ip_address IS NOT NULL"
        )
        return {r["ip_address"] for r in rows}

    # =========================================
    # ORDERS
    # =========================================

    async def save_order(self, order: Order) -> None:
        columns = (
            "id", "customer_id", "plan_id", "amount_usd", "currency", "status",
            "stripe_session_id", "stripe_payment_intent", "error_message",
            "created_at", "updated_at", "completed_at",
        )
        values = [getattr(order, c) for c in columns]
        values[columns.index("status")] = order.status.value
        await self.pool.execute(_upsert_sql("orders", columns, "id"), *values)

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await self.pool.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        return _order_from_row(row) if row else None

    async def get_order_by_session(self, session_id: str) -> Optional[Order]:
        row = await self.pool.fetchrow("SELECT * FROM orders WHERE stripe_session_id = $1", session_id)
        return _order_from_row(row) if row else None

    async def list_orders(self, customer_id: Optional[str] = None) -> List[Order]:
        if customer_id is None:
            rows = await self.pool.fetch("SELECT * FROM orders ORDER BY created_at DESC")
        else:
            rows = await self.pool.fetch(
                "SELECT * FROM orders WHERE customer_id = $1 ORDER BY created_at DESC",
                customer_id,
            )
        return [_order_from_row(r) for r in rows]

    # =========================================
    # SUBSCRIPTIONS
    # =========================================

    async def save_subscription(self, subscription: Subscription) -> None:
        columns = (
            "customer_id", "status", "stripe_customer_id", "stripe_subscription_id",
            "current_period_start", "current_period_end", "cancel_at_period_end",
            "past_due_since", "suspend_after",
        )
        values = [getattr(subscription, c) for c in columns]
        values[columns.index("status")] = subscription.status.value
        sql = _upsert_sql("subscriptions", columns, "customer_id") + ", updated_at = NOW()"
        await self.pool.execute(sql, *values)

    async def get_subscription(self, customer_id: str) -> Optional[Subscription]:
        row = await self.pool.fetchrow("SELECT * FROM subscriptions WHERE customer_id = $1", customer_id)
        return _subscription_from_row(row) if row else None

    async def get_subscription_by_stripe_customer(self, stripe_customer_id: str) -> Optional[Subscription]:
        row = await self.pool.fetchrow(
            "SELECT * FROM subscriptions WHERE stripe_customer_id = $1",
            stripe_customer_id,
        )
        return _subscription_from_row(row) if row else None

    async def list_subscriptions(self, status: Optional[SubscriptionStatus] = None) -> List[Subscription]:
        if status is None:
            rows = await self.pool.fetch("SELECT * FROM subscriptions")
        else:
            rows = await self.pool.fetch("SELECT * FROM subscriptions WHERE status = $1", status.value)
        return [_subscription_from_row(r) for r in rows]

    # =========================================
    # IP POOLS
    # =========================================

    async def save_ip_pool(self, pool: IPPool) -> None:
        columns = ("name", "cidr", "range_start", "range_end", "gateway", "bridge", "vlan", "active")
        await self.pool.execute(
            _upsert_sql("ip_pools", columns, "name"),
            *[getattr(pool, c) for c in columns],
        )

    async def list_ip_pools(self, active_only: bool = True) -> List[IPPool]:
        sql = "SELECT * FROM ip_pools"
        if active_only:
            sql += " WHERE active"
        rows = await self.pool.fetch(sql + " ORDER BY name")
        return [IPPool(**dict(r)) for r in rows]

    # =========================================
    # JOBS
    # =========================================

    async def save_job(self, job: Job) -> None:
        await self.pool.execute(
            """
            INSERT INTO jobs (
                id, queue, idempotency_key, payload, state, attempts,
                max_attempts, backoff_base, timeout, last_error, created_at
            ) VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (id) DO UPDATE SET
                state = EXCLUDED.state,
                attempts = EXCLUDED.attempts,
                last_error = EXCLUDED.last_error,
                updated_at = NOW()
            """,
            job.id,
            job.queue.value,
            job.idempotency_key,
            json.dumps(job.payload.to_dict()),
            job.state.value,
            job.attempts,
            job.policy.max_attempts,
            job.policy.backoff_base,
            job.policy.timeout,
            job.last_error,
            job.created_at,
        )

    async def delete_job(self, job_id: str) -> None:
        await self.pool.execute("DELETE FROM jobs WHERE id = $1", job_id)

    async def list_unfinished_jobs(self) -> List[Job]:
        rows = await self.pool.fetch(
            "SELECT * FROM jobs WHERE state IN ('pending', 'active', 'delayed') ORDER BY created_at"
        )
        return [_job_from_row(r) for r in rows]
