"""
Persistence interface the lifecycle core talks to. Implementations: PostgresStore (washledger.db)
and InMemoryStore (washledger.memory_store).
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

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
)
from washledger.order_state import CANCELLED, COMPLETED, is_valid_transition

logger = logging.getLogger(__name__)

StatsUpdate = Callable[[CustomerStats], CustomerStats]

# Annotation fields handlers may write on an order; each has a matching *_at timestamp
ANNOTATION_FIELDS = frozenset({
    "processing_error",
    "completion_error",
    "cancellation_error",
    "rating_processing_error",
})


class StoreError(Exception):
    """Base class for persistence failures."""


class RecordNotFoundError(StoreError):
    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class DuplicateRecordError(StoreError):
    """Raised when inserting a record whose id already exists."""


class InvalidTransitionError(StoreError):
    """Raised when an order write would make a status move the state machine does not allow."""
    def __init__(self, current_state: str | None = None, attempted: str | None = None):
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(f"cannot move order from {current_state} to {attempted}")


class StoreUnavailableError(StoreError):
    """Transient backend failure (lost connection, serialization conflict). Safe to retry."""


class LedgerStore(ABC):
    """Orders, customers and workers plus the append-only side records."""

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # -- customers ---------------------------------------------------------------

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Customer | None:
        ...

    @abstractmethod
    async def upsert_customer(self, customer: Customer) -> Customer:
        """Create the customer or update its profile fields. Stats are never overwritten here."""

    @abstractmethod
    async def list_customers(self, with_push_target: bool = False) -> list[Customer]:
        ...

    @abstractmethod
    async def find_inactive_customers(self, last_visit_before: datetime) -> list[Customer]:
        """Customers with at least one completed order whose last visit is older than the cutoff."""

    @abstractmethod
    async def clear_push_target(self, customer_id: str) -> None:
        ...

    @abstractmethod
    async def update_customer_stats_atomically(
        self, customer_id: str, update: StatsUpdate
    ) -> tuple[CustomerStats, CustomerStats]:
        """
        Lock the customer's stats, apply update to the locked value and persist the result,
        all in one unit. Concurrent calls for the same customer serialize. If update raises,
        nothing is written. Returns (before, after). Raises RecordNotFoundError if missing.
        """

    # -- orders ------------------------------------------------------------------

    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None:
        ...

    @abstractmethod
    async def insert_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def find_active_order(self, customer_id: str, exclude_order_id: str | None = None) -> Order | None:
        ...

    @abstractmethod
    async def transition_order(
        self, order_id: str, new_status: OrderStatus, fields: dict[str, Any] | None = None
    ) -> tuple[Order, Order]:
        """
        Move an order to new_status under its row lock, validating the move and setting
        completed_at / cancelled_at on entry. Extra fields are written in the same update.
        Returns (before, after).
        """

    @abstractmethod
    async def set_credit_deducted(self, order_id: str, deducted: bool) -> tuple[Order, Order]:
        """
        Set the order's credit_deducted marker under its row lock. Returns (before, after), so
        callers clearing the marker learn whether it was set: only one of them sees True.
        """

    @abstractmethod
    async def add_rating(self, order_id: str, rating: Rating) -> tuple[Order, Order]:
        """Attach a rating to a completed, unrated order. Returns (before, after)."""

    @abstractmethod
    async def annotate_order(self, order_id: str, field: str, message: str) -> None:
        """Record a non-fatal processing error on the order (field plus field_at)."""

    @abstractmethod
    async def list_orders_created_between(self, start: datetime, end: datetime) -> list[Order]:
        """Orders with start <= created_at < end."""

    @abstractmethod
    async def list_rated_completed_orders(self, worker_id: str) -> list[Order]:
        ...

    # -- workers -----------------------------------------------------------------

    @abstractmethod
    async def get_worker(self, worker_id: str) -> Worker | None:
        ...

    @abstractmethod
    async def upsert_worker(self, worker: Worker) -> Worker:
        ...

    @abstractmethod
    async def increment_worker_completed(self, worker_id: str) -> bool:
        """Returns False when the worker does not exist."""

    @abstractmethod
    async def update_worker_rating(self, worker_id: str, average_rating: float, total_ratings: int) -> bool:
        """Returns False when the worker does not exist."""

    # -- side records ------------------------------------------------------------

    @abstractmethod
    async def append_audit(self, record: OrderAuditRecord) -> None:
        ...

    @abstractmethod
    async def create_alert(self, alert: LowRatingAlert) -> None:
        ...

    @abstractmethod
    async def save_report(self, report: MetricsReport) -> None:
        ...

    @abstractmethod
    async def append_reminder_log(self, log: ReminderLog) -> None:
        ...

    # -- settings ----------------------------------------------------------------

    @abstractmethod
    async def get_app_settings_document(self) -> dict | None:
        ...

    @abstractmethod
    async def save_app_settings_document(self, document: dict) -> None:
        ...


def check_annotation_field(field: str) -> None:
    if field not in ANNOTATION_FIELDS:
        raise ValueError(f"unknown annotation field: {field}")


def build_transitioned_order(
    before: Order, new_status: OrderStatus, fields: dict[str, Any] | None, now: datetime
) -> Order:
    """The order as it looks after a validated status move. Both stores write exactly this."""
    if not is_valid_transition(before.status, new_status):
        raise InvalidTransitionError(current_state=before.status, attempted=new_status)
    data = before.model_dump()
    data.update(fields or {})
    data["status"] = new_status
    if new_status == COMPLETED and before.completed_at is None:
        data["completed_at"] = now
    if new_status == CANCELLED and before.cancelled_at is None:
        data["cancelled_at"] = now
    return Order.model_validate(data)


def build_rated_order(before: Order, rating: Rating) -> Order:
    if before.status != COMPLETED:
        raise InvalidTransitionError(current_state=before.status, attempted="rating_added")
    if before.rating is not None:
        raise DuplicateRecordError(f"order {before.id} is already rated")
    return before.model_copy(update={"rating": rating})
