"""
Order change messages: what the change feed delivers to the lifecycle worker.
Delivery is at-least-once and unordered; consumers rely on the transition guards, not on event ids.
"""
import uuid
from typing import Awaitable, Callable, Literal

from pydantic import BaseModel, Field, model_validator

from washledger.models import Order

ChangeKind = Literal["created", "updated"]


class OrderChange(BaseModel):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_id: str
    kind: ChangeKind
    before: Order | None = None
    after: Order
    attempts: int = 0

    @model_validator(mode="after")
    def _check_shape(self) -> "OrderChange":
        if self.after.id != self.order_id or (self.before is not None and self.before.id != self.order_id):
            raise ValueError("change snapshots must belong to order_id")
        if self.kind == "updated" and self.before is None:
            raise ValueError("an update change needs a before snapshot")
        return self


ChangePublisher = Callable[[OrderChange], Awaitable[None]]


def created_change(order: Order) -> OrderChange:
    return OrderChange(order_id=order.id, kind="created", after=order)


def updated_change(before: Order, after: Order) -> OrderChange:
    return OrderChange(order_id=after.id, kind="updated", before=before, after=after)
