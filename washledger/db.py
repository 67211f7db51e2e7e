"""
Async Postgres LedgerStore: customers, workers, orders (JSONB document + indexed columns)
and the append-only side tables.
Ledger mutations lock the customer row (SELECT ... FOR UPDATE) inside one transaction; order
status moves lock the order row the same way and validate the move before writing.
"""
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import asyncpg
from asyncpg.exceptions import (
    DeadlockDetectedError,
    InterfaceError,
    PostgresConnectionError,
    SerializationError,
    UniqueViolationError,
)

from washledger.config import settings
from washledger.models import (
    Customer,
    CustomerStats,
    LowRatingAlert,
    MetricsReport,
    Order,
    OrderAuditRecord,
    OrderStatus,
    Rating,
    ReminderLog,
    Worker,
    WorkerStats,
)
from washledger.store import (
    DuplicateRecordError,
    LedgerStore,
    RecordNotFoundError,
    StatsUpdate,
    StoreUnavailableError,
    build_rated_order,
    build_transitioned_order,
    check_annotation_field,
)

logger = logging.getLogger(__name__)

APP_SETTINGS_ID = "app_config"

_TRANSIENT_ERRORS = (
    SerializationError,
    DeadlockDetectedError,
    PostgresConnectionError,
    InterfaceError,
    ConnectionError,
    asyncio.TimeoutError,
)

_CUSTOMER_COLUMNS = """
    id, name, push_target, created_at,
    total_orders, completed_orders, cancelled_orders, free_washes_available, last_visit
"""


def _customer_from_row(row: asyncpg.Record) -> Customer:
    return Customer(
        id=row["id"],
        name=row["name"],
        push_target=row["push_target"],
        created_at=row["created_at"],
        stats=_stats_from_row(row),
    )


def _stats_from_row(row: asyncpg.Record) -> CustomerStats:
    return CustomerStats(
        total_orders=row["total_orders"],
        completed_orders=row["completed_orders"],
        cancelled_orders=row["cancelled_orders"],
        free_washes_available=row["free_washes_available"],
        last_visit=row["last_visit"],
    )


def _worker_from_row(row: asyncpg.Record) -> Worker:
    return Worker(
        id=row["id"],
        name=row["name"],
        is_active=row["is_active"],
        stats=WorkerStats(
            total_orders_completed=row["total_orders_completed"],
            average_rating=float(row["average_rating"]),
            total_ratings=row["total_ratings"],
        ),
    )


def _order_from_row(row: asyncpg.Record) -> Order:
    return Order.model_validate_json(row["document"])


class PostgresStore(LedgerStore):

    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or settings.database_url
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        await self.get_pool()
        await self.init_schema()

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=1,
                max_size=5,
                command_timeout=60,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def _connection(self):
        """Acquire a connection, mapping transient backend failures to StoreUnavailableError."""
        pool = await self.get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except _TRANSIENT_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def init_schema(self) -> None:
        async with self._connection() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS customers (
                    id VARCHAR(16) PRIMARY KEY,
                    name VARCHAR(255),
                    push_target TEXT,
                    total_orders INT NOT NULL DEFAULT 0,
                    completed_orders INT NOT NULL DEFAULT 0,
                    cancelled_orders INT NOT NULL DEFAULT 0,
                    free_washes_available INT NOT NULL DEFAULT 0 CHECK (free_washes_available >= 0),
                    last_visit TIMESTAMPTZ,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS workers (
                    id VARCHAR(255) PRIMARY KEY,
                    name VARCHAR(255),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    total_orders_completed INT NOT NULL DEFAULT 0,
                    average_rating NUMERIC(2, 1) NOT NULL DEFAULT 0,
                    total_ratings INT NOT NULL DEFAULT 0,
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id VARCHAR(255) PRIMARY KEY,
                    customer_id VARCHAR(16) NOT NULL,
                    worker_id VARCHAR(255),
                    status VARCHAR(20) NOT NULL,
                    has_rating BOOLEAN NOT NULL DEFAULT FALSE,
                    document JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_customer_status
                ON orders(customer_id, status);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_worker_status
                ON orders(worker_id, status);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_created_at
                ON orders(created_at);
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS order_audit (
                    id UUID PRIMARY KEY,
                    order_id VARCHAR(255) NOT NULL,
                    customer_id VARCHAR(16) NOT NULL,
                    action VARCHAR(20) NOT NULL,
                    record JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id UUID PRIMARY KEY,
                    type VARCHAR(50) NOT NULL,
                    order_id VARCHAR(255) NOT NULL,
                    worker_id VARCHAR(255),
                    resolved BOOLEAN NOT NULL DEFAULT FALSE,
                    record JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics_reports (
                    kind VARCHAR(10) NOT NULL,
                    period VARCHAR(10) NOT NULL,
                    report JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    PRIMARY KEY (kind, period)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS reminder_logs (
                    id UUID PRIMARY KEY,
                    record JSONB NOT NULL,
                    executed_at TIMESTAMPTZ DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS app_settings (
                    id VARCHAR(50) PRIMARY KEY,
                    document JSONB NOT NULL,
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                );
            """)

    # -- customers ---------------------------------------------------------------

    async def get_customer(self, customer_id: str) -> Customer | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = $1;",
                customer_id,
            )
        return _customer_from_row(row) if row else None

    async def upsert_customer(self, customer: Customer) -> Customer:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO customers (id, name, push_target)
                VALUES ($1, $2, $3)
                ON CONFLICT (id) DO UPDATE
                SET name = EXCLUDED.name, push_target = EXCLUDED.push_target, updated_at = NOW()
                RETURNING {_CUSTOMER_COLUMNS};
                """,
                customer.id,
                customer.name,
                customer.push_target,
            )
        return _customer_from_row(row)

    async def list_customers(self, with_push_target: bool = False) -> list[Customer]:
        query = f"SELECT {_CUSTOMER_COLUMNS} FROM customers"
        if with_push_target:
            query += " WHERE push_target IS NOT NULL"
        async with self._connection() as conn:
            rows = await conn.fetch(query + " ORDER BY id;")
        return [_customer_from_row(r) for r in rows]

    async def find_inactive_customers(self, last_visit_before: datetime) -> list[Customer]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_CUSTOMER_COLUMNS} FROM customers
                WHERE last_visit < $1 AND completed_orders > 0
                ORDER BY last_visit ASC;
                """,
                last_visit_before,
            )
        return [_customer_from_row(r) for r in rows]

    async def clear_push_target(self, customer_id: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE customers SET push_target = NULL, updated_at = NOW() WHERE id = $1;",
                customer_id,
            )

    async def update_customer_stats_atomically(
        self, customer_id: str, update: StatsUpdate
    ) -> tuple[CustomerStats, CustomerStats]:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = $1 FOR UPDATE;",
                    customer_id,
                )
                if row is None:
                    raise RecordNotFoundError("customer", customer_id)
                before = _stats_from_row(row)
                after = update(before.model_copy())
                await conn.execute(
                    """
                    UPDATE customers
                    SET total_orders = $2, completed_orders = $3, cancelled_orders = $4,
                        free_washes_available = $5, last_visit = $6, updated_at = NOW()
                    WHERE id = $1;
                    """,
                    customer_id,
                    after.total_orders,
                    after.completed_orders,
                    after.cancelled_orders,
                    after.free_washes_available,
                    after.last_visit,
                )
        return before, after

    # -- orders ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT document FROM orders WHERE id = $1;", order_id)
        return _order_from_row(row) if row else None

    async def insert_order(self, order: Order) -> Order:
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO orders (id, customer_id, worker_id, status, has_rating, document, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, COALESCE($7, NOW()))
                    RETURNING created_at;
                    """,
                    order.id,
                    order.customer_id,
                    order.worker_id,
                    order.status,
                    order.rating is not None,
                    order.model_dump_json(),
                    order.created_at,
                )
            except UniqueViolationError:
                raise DuplicateRecordError(f"order {order.id} already exists")
            if order.created_at is None:
                order = order.model_copy(update={"created_at": row["created_at"]})
                await self._write_order(conn, order)
        return order

    async def _write_order(self, conn: asyncpg.Connection, order: Order) -> None:
        await conn.execute(
            """
            UPDATE orders
            SET status = $2, worker_id = $3, has_rating = $4, document = $5::jsonb, updated_at = NOW()
            WHERE id = $1;
            """,
            order.id,
            order.status,
            order.worker_id,
            order.rating is not None,
            order.model_dump_json(),
        )

    async def _locked_order(self, conn: asyncpg.Connection, order_id: str) -> Order:
        row = await conn.fetchrow("SELECT document FROM orders WHERE id = $1 FOR UPDATE;", order_id)
        if row is None:
            raise RecordNotFoundError("order", order_id)
        return _order_from_row(row)

    async def find_active_order(self, customer_id: str, exclude_order_id: str | None = None) -> Order | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT document FROM orders
                WHERE customer_id = $1 AND status IN ('pending', 'in_progress')
                  AND ($2::text IS NULL OR id <> $2)
                ORDER BY created_at ASC
                LIMIT 1;
                """,
                customer_id,
                exclude_order_id,
            )
        return _order_from_row(row) if row else None

    async def transition_order(
        self, order_id: str, new_status: OrderStatus, fields: dict[str, Any] | None = None
    ) -> tuple[Order, Order]:
        async with self._connection() as conn:
            async with conn.transaction():
                before = await self._locked_order(conn, order_id)
                now = await conn.fetchval("SELECT NOW();")
                after = build_transitioned_order(before, new_status, fields, now)
                await self._write_order(conn, after)
        return before, after

    async def set_credit_deducted(self, order_id: str, deducted: bool) -> tuple[Order, Order]:
        async with self._connection() as conn:
            async with conn.transaction():
                before = await self._locked_order(conn, order_id)
                after = before.model_copy(update={"credit_deducted": deducted})
                await self._write_order(conn, after)
        return before, after

    async def add_rating(self, order_id: str, rating: Rating) -> tuple[Order, Order]:
        async with self._connection() as conn:
            async with conn.transaction():
                before = await self._locked_order(conn, order_id)
                after = build_rated_order(before, rating)
                await self._write_order(conn, after)
        return before, after

    async def annotate_order(self, order_id: str, field: str, message: str) -> None:
        check_annotation_field(field)
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE orders
                SET document = document || jsonb_build_object($2::text, $3::text, $4::text, to_jsonb(NOW())),
                    updated_at = NOW()
                WHERE id = $1;
                """,
                order_id,
                field,
                message,
                f"{field}_at",
            )
        if result.endswith(" 0"):
            raise RecordNotFoundError("order", order_id)

    async def list_orders_created_between(self, start: datetime, end: datetime) -> list[Order]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT document FROM orders
                WHERE created_at >= $1 AND created_at < $2
                ORDER BY created_at ASC;
                """,
                start,
                end,
            )
        return [_order_from_row(r) for r in rows]

    async def list_rated_completed_orders(self, worker_id: str) -> list[Order]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT document FROM orders
                WHERE worker_id = $1 AND status = 'completed' AND has_rating;
                """,
                worker_id,
            )
        return [_order_from_row(r) for r in rows]

    # -- workers -----------------------------------------------------------------

    async def get_worker(self, worker_id: str) -> Worker | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM workers WHERE id = $1;", worker_id)
        return _worker_from_row(row) if row else None

    async def upsert_worker(self, worker: Worker) -> Worker:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO workers (id, name, is_active)
                VALUES ($1, $2, $3)
                ON CONFLICT (id) DO UPDATE
                SET name = EXCLUDED.name, is_active = EXCLUDED.is_active, updated_at = NOW()
                RETURNING *;
                """,
                worker.id,
                worker.name,
                worker.is_active,
            )
        return _worker_from_row(row)

    async def increment_worker_completed(self, worker_id: str) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE workers
                SET total_orders_completed = total_orders_completed + 1, updated_at = NOW()
                WHERE id = $1;
                """,
                worker_id,
            )
        return not result.endswith(" 0")

    async def update_worker_rating(self, worker_id: str, average_rating: float, total_ratings: int) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE workers
                SET average_rating = $2, total_ratings = $3, updated_at = NOW()
                WHERE id = $1;
                """,
                worker_id,
                average_rating,
                total_ratings,
            )
        return not result.endswith(" 0")

    # -- side records ------------------------------------------------------------

    async def append_audit(self, record: OrderAuditRecord) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO order_audit (id, order_id, customer_id, action, record)
                VALUES ($1, $2, $3, $4, $5::jsonb);
                """,
                uuid.uuid4(),
                record.order_id,
                record.customer_id,
                record.action,
                record.model_dump_json(),
            )

    async def create_alert(self, alert: LowRatingAlert) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO alerts (id, type, order_id, worker_id, resolved, record)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb);
                """,
                uuid.uuid4(),
                alert.type,
                alert.order_id,
                alert.worker_id,
                alert.resolved,
                alert.model_dump_json(),
            )

    async def save_report(self, report: MetricsReport) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO metrics_reports (kind, period, report)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (kind, period) DO UPDATE SET report = EXCLUDED.report, created_at = NOW();
                """,
                report.kind,
                report.period,
                report.model_dump_json(),
            )

    async def append_reminder_log(self, log: ReminderLog) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO reminder_logs (id, record) VALUES ($1, $2::jsonb);",
                uuid.uuid4(),
                log.model_dump_json(),
            )

    # -- settings ----------------------------------------------------------------

    async def get_app_settings_document(self) -> dict | None:
        async with self._connection() as conn:
            raw = await conn.fetchval("SELECT document FROM app_settings WHERE id = $1;", APP_SETTINGS_ID)
        return json.loads(raw) if raw is not None else None

    async def save_app_settings_document(self, document: dict) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO app_settings (id, document)
                VALUES ($1, $2::jsonb)
                ON CONFLICT (id) DO UPDATE SET document = EXCLUDED.document, updated_at = NOW();
                """,
                APP_SETTINGS_ID,
                json.dumps(document),
            )
