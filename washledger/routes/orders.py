import uuid
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from washledger.changes import ChangePublisher, created_change, updated_change
from washledger.dependencies import get_publisher, get_store
from washledger.models import REDEEMED, Order, Rating, ServiceRef, WorkerRef, normalize_plate
from washledger.order_state import CANCELLED, COMPLETED, IN_PROGRESS
from washledger.store import DuplicateRecordError, InvalidTransitionError, LedgerStore, RecordNotFoundError

router = APIRouter(prefix="/orders", tags=["orders"])

PaidMethod = Literal["cash", "card", "transfer"]


class CreateOrderBody(BaseModel):
    id: str | None = Field(default=None, description="Order id; generated when omitted")
    customer_id: str = Field(..., description="Customer plate")
    service: ServiceRef
    worker: WorkerRef | None = None
    is_redemption: bool = Field(default=False, description="Pay with an earned free wash")


class StartOrderBody(BaseModel):
    worker: WorkerRef | None = None


class CompleteOrderBody(BaseModel):
    payment_method: PaidMethod | None = Field(default=None, description="Required unless the order is a redemption")
    worker: WorkerRef | None = None


class CancelOrderBody(BaseModel):
    cancelled_by: Literal["customer", "worker", "admin"]
    reason: str | None = None


def _order_response(order: Order, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=order.model_dump(mode="json"))


async def _transition(
    store: LedgerStore,
    publish: ChangePublisher,
    order_id: str,
    new_status,
    fields: dict,
) -> Order:
    try:
        before, after = await store.transition_order(order_id, new_status, fields)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    await publish(updated_change(before, after))
    return after


@router.post("")
async def create_order(
    body: CreateOrderBody,
    store: LedgerStore = Depends(get_store),
    publish: ChangePublisher = Depends(get_publisher),
) -> JSONResponse:
    """Create a pending order. Active-order and free-wash checks happen asynchronously in the lifecycle."""
    customer_id = normalize_plate(body.customer_id)
    if await store.get_customer(customer_id) is None:
        raise HTTPException(status_code=404, detail=f"Customer {customer_id} not found")
    try:
        order = Order(
            id=body.id or uuid.uuid4().hex,
            customer_id=customer_id,
            service=body.service,
            worker=body.worker,
            status="pending",
            is_redemption=body.is_redemption,
            payment_method=REDEEMED if body.is_redemption else None,
        )
        order = await store.insert_order(order)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    except DuplicateRecordError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await publish(created_change(order))
    return _order_response(order, status_code=201)


@router.get("/{order_id}")
async def get_order(order_id: str, store: LedgerStore = Depends(get_store)) -> JSONResponse:
    order = await store.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return _order_response(order)


@router.post("/{order_id}/start")
async def start_order(
    order_id: str,
    body: StartOrderBody,
    store: LedgerStore = Depends(get_store),
    publish: ChangePublisher = Depends(get_publisher),
) -> JSONResponse:
    fields = {"worker": body.worker.model_dump()} if body.worker else {}
    return _order_response(await _transition(store, publish, order_id, IN_PROGRESS, fields))


@router.post("/{order_id}/complete")
async def complete_order(
    order_id: str,
    body: CompleteOrderBody,
    store: LedgerStore = Depends(get_store),
    publish: ChangePublisher = Depends(get_publisher),
) -> JSONResponse:
    current = await store.get_order(order_id)
    if current is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    fields: dict = {}
    if not current.is_redemption:
        if body.payment_method is None:
            raise HTTPException(status_code=422, detail="payment_method is required for a paid order")
        fields["payment_method"] = body.payment_method
    if body.worker:
        fields["worker"] = body.worker.model_dump()
    return _order_response(await _transition(store, publish, order_id, COMPLETED, fields))


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancelOrderBody,
    store: LedgerStore = Depends(get_store),
    publish: ChangePublisher = Depends(get_publisher),
) -> JSONResponse:
    fields = {"cancelled_by": body.cancelled_by, "cancel_reason": body.reason}
    return _order_response(await _transition(store, publish, order_id, CANCELLED, fields))


@router.post("/{order_id}/rating")
async def rate_order(
    order_id: str,
    body: Rating,
    store: LedgerStore = Depends(get_store),
    publish: ChangePublisher = Depends(get_publisher),
) -> JSONResponse:
    try:
        before, after = await store.add_rating(order_id, body)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidTransitionError, DuplicateRecordError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    await publish(updated_change(before, after))
    return _order_response(after)
