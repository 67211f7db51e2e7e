"""
Record schemas for orders, customers, workers and the side records the lifecycle writes.
Everything crossing a boundary (HTTP body, queue message, database row) is parsed into these
models before it reaches the state machine.
"""
import re
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

OrderStatus = Literal["pending", "in_progress", "completed", "cancelled"]
PaymentMethod = Literal["cash", "card", "transfer", "redeemed"]
CancelledBy = Literal["customer", "worker", "admin", "system"]

REDEEMED: PaymentMethod = "redeemed"

# 3 letters + 3 letters/digits once spaces and dashes are stripped (e.g. ABC123, ABC12D)
PLATE_PATTERN = re.compile(r"^[A-Z]{3}[0-9A-Z]{3}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_plate(plate: str | None) -> str:
    if not plate:
        return ""
    return re.sub(r"[\s-]", "", plate).upper()


def is_valid_plate(plate: str | None) -> bool:
    if not plate or not isinstance(plate, str):
        return False
    return bool(PLATE_PATTERN.match(normalize_plate(plate)))


def _plate(value: str) -> str:
    normalized = normalize_plate(value)
    if not PLATE_PATTERN.match(normalized):
        raise ValueError(f"invalid plate identifier: {value!r}")
    return normalized


class Rating(BaseModel):
    stars: int = Field(..., ge=1, le=5)
    comment: str | None = None


class ServiceRef(BaseModel):
    id: str
    name: str | None = None
    price: int = Field(default=0, ge=0, description="Price in the smallest currency unit")


class WorkerRef(BaseModel):
    id: str
    name: str | None = None


class Order(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    customer_id: str
    worker: WorkerRef | None = None
    service: ServiceRef | None = None
    status: OrderStatus = "pending"
    is_redemption: bool = False
    payment_method: PaymentMethod | None = None
    rating: Rating | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    cancelled_by: CancelledBy | None = None
    # set while the customer's balance holds a credit taken for this order
    credit_deducted: bool = False

    # Non-fatal processing annotations, written by the lifecycle handlers
    processing_error: str | None = None
    processing_error_at: datetime | None = None
    completion_error: str | None = None
    completion_error_at: datetime | None = None
    cancellation_error: str | None = None
    cancellation_error_at: datetime | None = None
    rating_processing_error: str | None = None
    rating_processing_error_at: datetime | None = None

    @field_validator("customer_id")
    @classmethod
    def _normalize_customer(cls, v: str) -> str:
        return _plate(v)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Order":
        if self.is_redemption != (self.payment_method == REDEEMED):
            raise ValueError("is_redemption must be set exactly when payment_method is 'redeemed'")
        if self.rating is not None and self.status != "completed":
            raise ValueError("a rating can only be attached to a completed order")
        return self

    @property
    def worker_id(self) -> str | None:
        return self.worker.id if self.worker else None

    @property
    def service_name(self) -> str | None:
        return self.service.name if self.service else None


class CustomerStats(BaseModel):
    total_orders: int = 0
    completed_orders: int = 0  # paid, non-redemption completions only
    cancelled_orders: int = 0
    free_washes_available: int = Field(default=0, ge=0)
    last_visit: datetime | None = None


class Customer(BaseModel):
    id: str
    name: str | None = None
    push_target: str | None = None
    stats: CustomerStats = Field(default_factory=CustomerStats)
    created_at: datetime | None = None

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, v: str) -> str:
        return _plate(v)


class WorkerStats(BaseModel):
    total_orders_completed: int = 0
    average_rating: float = 0.0
    total_ratings: int = 0


class Worker(BaseModel):
    id: str
    name: str | None = None
    is_active: bool = True
    stats: WorkerStats = Field(default_factory=WorkerStats)


class OrderAuditRecord(BaseModel):
    order_id: str
    customer_id: str
    action: Literal["cancelled"] = "cancelled"
    cancelled_by: str = "unknown"
    cancel_reason: str | None = None
    is_redemption: bool = False
    service_name: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class LowRatingAlert(BaseModel):
    type: Literal["low_rating"] = "low_rating"
    order_id: str
    worker_id: str
    worker_name: str = "Unknown"
    customer_id: str
    rating: int
    comment: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False


class RankedEntry(BaseModel):
    id: str
    name: str
    count: int


class OrderMetrics(BaseModel):
    total_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    in_progress_orders: int = 0
    revenue: int = 0
    free_washes_redeemed: int = 0
    average_service_time: int = 0
    most_popular_service: RankedEntry | None = None
    top_worker: RankedEntry | None = None
    average_rating: float = 0.0
    total_ratings: int = 0


class MetricsReport(BaseModel):
    period: str  # YYYY-MM-DD for daily reports, YYYY-MM for monthly ones
    kind: Literal["daily", "monthly"]
    start: datetime
    end: datetime
    metrics: OrderMetrics
    created_at: datetime = Field(default_factory=utcnow)


class ReminderLog(BaseModel):
    type: Literal["inactive_customers"] = "inactive_customers"
    total_found: int = 0
    total_with_target: int = 0
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[dict] = Field(default_factory=list)
    reminder_after_days: int = 30
    error: str | None = None
    executed_at: datetime = Field(default_factory=utcnow)
