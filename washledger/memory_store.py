"""
In-memory LedgerStore for tests and local runs (STORE_BACKEND=memory).
Per-customer asyncio locks give the same serialization the Postgres row lock gives.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any

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
    utcnow,
)
from washledger.order_state import ACTIVE_STATES, COMPLETED
from washledger.store import (
    DuplicateRecordError,
    LedgerStore,
    RecordNotFoundError,
    StatsUpdate,
    build_rated_order,
    build_transitioned_order,
    check_annotation_field,
)

logger = logging.getLogger(__name__)


class InMemoryStore(LedgerStore):

    def __init__(self) -> None:
        self.customers: dict[str, Customer] = {}
        self.orders: dict[str, Order] = {}
        self.workers: dict[str, Worker] = {}
        self.audit_log: list[OrderAuditRecord] = []
        self.alerts: list[LowRatingAlert] = []
        self.reports: dict[str, MetricsReport] = {}
        self.reminder_logs: list[ReminderLog] = []
        self.app_settings_document: dict | None = None
        self._customer_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._order_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def connect(self) -> None:
        logger.info("Using in-memory store")

    # -- customers ---------------------------------------------------------------

    async def get_customer(self, customer_id: str) -> Customer | None:
        customer = self.customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def upsert_customer(self, customer: Customer) -> Customer:
        async with self._customer_locks[customer.id]:
            existing = self.customers.get(customer.id)
            if existing is None:
                stored = customer.model_copy(deep=True)
                if stored.created_at is None:
                    stored.created_at = utcnow()
            else:
                stored = existing.model_copy(update={"name": customer.name, "push_target": customer.push_target})
            self.customers[customer.id] = stored
            return stored.model_copy(deep=True)

    async def list_customers(self, with_push_target: bool = False) -> list[Customer]:
        return [
            c.model_copy(deep=True)
            for c in self.customers.values()
            if not with_push_target or c.push_target
        ]

    async def find_inactive_customers(self, last_visit_before: datetime) -> list[Customer]:
        return [
            c.model_copy(deep=True)
            for c in self.customers.values()
            if c.stats.last_visit is not None
            and c.stats.last_visit < last_visit_before
            and c.stats.completed_orders > 0
        ]

    async def clear_push_target(self, customer_id: str) -> None:
        customer = self.customers.get(customer_id)
        if customer is not None:
            self.customers[customer_id] = customer.model_copy(update={"push_target": None})

    async def update_customer_stats_atomically(
        self, customer_id: str, update: StatsUpdate
    ) -> tuple[CustomerStats, CustomerStats]:
        async with self._customer_locks[customer_id]:
            customer = self.customers.get(customer_id)
            if customer is None:
                raise RecordNotFoundError("customer", customer_id)
            before = customer.stats.model_copy()
            # yield while holding the lock so concurrent callers really queue up behind it
            await asyncio.sleep(0)
            after = update(before.model_copy())
            self.customers[customer_id] = customer.model_copy(update={"stats": after})
            return before, after.model_copy()

    # -- orders ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order | None:
        order = self.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def insert_order(self, order: Order) -> Order:
        async with self._order_locks[order.id]:
            if order.id in self.orders:
                raise DuplicateRecordError(f"order {order.id} already exists")
            stored = order.model_copy(deep=True)
            if stored.created_at is None:
                stored.created_at = utcnow()
            self.orders[order.id] = stored
            return stored.model_copy(deep=True)

    async def find_active_order(self, customer_id: str, exclude_order_id: str | None = None) -> Order | None:
        for order in self.orders.values():
            if order.customer_id == customer_id and order.status in ACTIVE_STATES and order.id != exclude_order_id:
                return order.model_copy(deep=True)
        return None

    async def transition_order(
        self, order_id: str, new_status: OrderStatus, fields: dict[str, Any] | None = None
    ) -> tuple[Order, Order]:
        async with self._order_locks[order_id]:
            before = self.orders.get(order_id)
            if before is None:
                raise RecordNotFoundError("order", order_id)
            after = build_transitioned_order(before, new_status, fields, utcnow())
            self.orders[order_id] = after
            return before.model_copy(deep=True), after.model_copy(deep=True)

    async def set_credit_deducted(self, order_id: str, deducted: bool) -> tuple[Order, Order]:
        async with self._order_locks[order_id]:
            before = self.orders.get(order_id)
            if before is None:
                raise RecordNotFoundError("order", order_id)
            after = before.model_copy(update={"credit_deducted": deducted})
            self.orders[order_id] = after
            return before.model_copy(deep=True), after.model_copy(deep=True)

    async def add_rating(self, order_id: str, rating: Rating) -> tuple[Order, Order]:
        async with self._order_locks[order_id]:
            before = self.orders.get(order_id)
            if before is None:
                raise RecordNotFoundError("order", order_id)
            after = build_rated_order(before, rating)
            self.orders[order_id] = after
            return before.model_copy(deep=True), after.model_copy(deep=True)

    async def annotate_order(self, order_id: str, field: str, message: str) -> None:
        check_annotation_field(field)
        async with self._order_locks[order_id]:
            order = self.orders.get(order_id)
            if order is None:
                raise RecordNotFoundError("order", order_id)
            self.orders[order_id] = order.model_copy(update={field: message, f"{field}_at": utcnow()})

    async def list_orders_created_between(self, start: datetime, end: datetime) -> list[Order]:
        return [
            o.model_copy(deep=True)
            for o in self.orders.values()
            if o.created_at is not None and start <= o.created_at < end
        ]

    async def list_rated_completed_orders(self, worker_id: str) -> list[Order]:
        return [
            o.model_copy(deep=True)
            for o in self.orders.values()
            if o.worker_id == worker_id and o.status == COMPLETED and o.rating is not None
        ]

    # -- workers -----------------------------------------------------------------

    async def get_worker(self, worker_id: str) -> Worker | None:
        worker = self.workers.get(worker_id)
        return worker.model_copy(deep=True) if worker else None

    async def upsert_worker(self, worker: Worker) -> Worker:
        existing = self.workers.get(worker.id)
        if existing is None:
            stored = worker.model_copy(deep=True)
        else:
            stored = existing.model_copy(update={"name": worker.name, "is_active": worker.is_active})
        self.workers[worker.id] = stored
        return stored.model_copy(deep=True)

    async def increment_worker_completed(self, worker_id: str) -> bool:
        worker = self.workers.get(worker_id)
        if worker is None:
            return False
        worker.stats.total_orders_completed += 1
        return True

    async def update_worker_rating(self, worker_id: str, average_rating: float, total_ratings: int) -> bool:
        worker = self.workers.get(worker_id)
        if worker is None:
            return False
        worker.stats.average_rating = average_rating
        worker.stats.total_ratings = total_ratings
        return True

    # -- side records ------------------------------------------------------------

    async def append_audit(self, record: OrderAuditRecord) -> None:
        self.audit_log.append(record)

    async def create_alert(self, alert: LowRatingAlert) -> None:
        self.alerts.append(alert)

    async def save_report(self, report: MetricsReport) -> None:
        self.reports[f"{report.kind}:{report.period}"] = report

    async def append_reminder_log(self, log: ReminderLog) -> None:
        self.reminder_logs.append(log)

    # -- settings ----------------------------------------------------------------

    async def get_app_settings_document(self) -> dict | None:
        return dict(self.app_settings_document) if self.app_settings_document is not None else None

    async def save_app_settings_document(self, document: dict) -> None:
        self.app_settings_document = dict(document)
