"""
Shared helpers for the test modules: record factories, a recording dispatcher and publisher.
Everything runs against the in-memory store; no Redis, Postgres or AWS needed.
"""
from datetime import datetime, timedelta, timezone

from washledger.changes import OrderChange
from washledger.memory_store import InMemoryStore
from washledger.models import Customer, CustomerStats, Order, ServiceRef, Worker, WorkerRef
from washledger.notifications import InvalidTargetError, NotificationDispatcher

PLATE = "ABC123"
T0 = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


def make_customer(plate: str = PLATE, push_target: str | None = "arn:endpoint/abc", **stats) -> Customer:
    return Customer(id=plate, name="Test Driver", push_target=push_target, stats=CustomerStats(**stats))


def make_order(
    order_id: str = "o1",
    customer_id: str = PLATE,
    status: str = "pending",
    is_redemption: bool = False,
    payment_method: str | None = None,
    price: int = 150,
    worker_id: str | None = "w1",
    service_id: str = "basic",
    created_at: datetime | None = T0,
    **extra,
) -> Order:
    if is_redemption:
        payment_method = "redeemed"
    return Order(
        id=order_id,
        customer_id=customer_id,
        status=status,
        is_redemption=is_redemption,
        payment_method=payment_method,
        service=ServiceRef(id=service_id, name=service_id.title(), price=price),
        worker=WorkerRef(id=worker_id, name="Sam") if worker_id else None,
        created_at=created_at,
        **extra,
    )


def moved(order: Order, status: str, minutes: int = 30, **fields) -> Order:
    """The order after a status move, with completed_at / cancelled_at set like the store does."""
    update = {"status": status, **fields}
    if status == "completed":
        update["completed_at"] = (order.created_at or T0) + timedelta(minutes=minutes)
        if not order.is_redemption and "payment_method" not in fields:
            update["payment_method"] = "cash"
    if status == "cancelled":
        update["cancelled_at"] = (order.created_at or T0) + timedelta(minutes=minutes)
    return Order.model_validate({**order.model_dump(), **update})


async def seeded_store(*customers: Customer, workers: tuple[str, ...] = ("w1",)) -> InMemoryStore:
    store = InMemoryStore()
    for customer in customers or (make_customer(),):
        await store.upsert_customer(customer)
    for worker_id in workers:
        await store.upsert_worker(Worker(id=worker_id, name="Sam"))
    return store


class RecordingDispatcher(NotificationDispatcher):
    """Delivers into a list. Targets in stale_targets fail like a disabled push endpoint."""

    def __init__(self, store, stale_targets: set[str] | None = None, fail: bool = False):
        super().__init__(store)
        self.sent: list[dict] = []
        self.stale_targets = stale_targets or set()
        self.fail = fail

    async def deliver(self, target: str, title: str, body: str, data: dict[str, str]) -> str:
        if target in self.stale_targets:
            raise InvalidTargetError("EndpointDisabled")
        if self.fail:
            raise RuntimeError("push service unavailable")
        self.sent.append({"target": target, "title": title, "body": body, "data": data})
        return f"msg-{len(self.sent)}"

    def types(self) -> list[str]:
        return [m["data"].get("type") for m in self.sent]


class RecordingPublisher:
    def __init__(self):
        self.changes: list[OrderChange] = []

    async def __call__(self, change: OrderChange) -> None:
        self.changes.append(change)
