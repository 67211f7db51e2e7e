from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from washledger.app_settings import load_app_settings
from washledger.calculations import calculate_progress_percentage, washes_until_free
from washledger.dependencies import get_store
from washledger.models import Customer, Worker, is_valid_plate, normalize_plate
from washledger.store import LedgerStore

router = APIRouter(tags=["customers"])


class RegisterCustomerBody(BaseModel):
    id: str = Field(..., description="Vehicle plate, e.g. ABC123")
    name: str | None = None
    push_target: str | None = Field(default=None, description="Push delivery target (SNS endpoint ARN)")


class RegisterWorkerBody(BaseModel):
    id: str
    name: str | None = None
    is_active: bool = True


@router.post("/customers")
async def register_customer(body: RegisterCustomerBody, store: LedgerStore = Depends(get_store)) -> JSONResponse:
    if not is_valid_plate(body.id):
        raise HTTPException(status_code=422, detail=f"Invalid plate {body.id!r}: expected 3 letters then 3 letters or digits")
    try:
        customer = Customer(id=body.id, name=body.name, push_target=body.push_target)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    customer = await store.upsert_customer(customer)
    return JSONResponse(status_code=200, content=customer.model_dump(mode="json"))


@router.get("/customers/{customer_id}")
async def get_customer(customer_id: str, store: LedgerStore = Depends(get_store)) -> JSONResponse:
    """Customer stats plus progress toward the next free wash."""
    customer = await store.get_customer(normalize_plate(customer_id))
    if customer is None:
        raise HTTPException(status_code=404, detail=f"Customer {customer_id} not found")
    app_settings = await load_app_settings(store)
    required = app_settings.washes_required_for_free
    content = customer.model_dump(mode="json", exclude={"push_target"})
    content["loyalty"] = {
        "washes_required_for_free": required,
        "washes_until_free": washes_until_free(customer.stats.completed_orders, required),
        "progress_percentage": calculate_progress_percentage(customer.stats.completed_orders, required),
    }
    return JSONResponse(status_code=200, content=content)


@router.post("/workers")
async def register_worker(body: RegisterWorkerBody, store: LedgerStore = Depends(get_store)) -> JSONResponse:
    worker = await store.upsert_worker(Worker(id=body.id, name=body.name, is_active=body.is_active))
    return JSONResponse(status_code=200, content=worker.model_dump(mode="json"))


@router.get("/workers/{worker_id}")
async def get_worker(worker_id: str, store: LedgerStore = Depends(get_store)) -> JSONResponse:
    worker = await store.get_worker(worker_id)
    if worker is None:
        raise HTTPException(status_code=404, detail=f"Worker {worker_id} not found")
    return JSONResponse(status_code=200, content=worker.model_dump(mode="json"))
