from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from washledger.changes import ChangePublisher, OrderChange
from washledger.dependencies import get_publisher
from washledger.metrics import changes_ingested_total
from washledger.redis_client import check_idempotency

router = APIRouter(prefix="/events", tags=["events"])


@router.post("/ingest")
async def ingest_change(body: OrderChange, publish: ChangePublisher = Depends(get_publisher)) -> JSONResponse:
    """
    Accept an order change produced outside this service (e.g. a database change stream).
    Idempotent: same event_id twice -> 200 (already processed). New change -> 202 Accepted.
    """
    idempotency_key = f"idempotency:{body.event_id}"
    is_duplicate = await check_idempotency(idempotency_key)

    if is_duplicate:
        return JSONResponse(
            status_code=200,
            content={"status": "already_processed", "event_id": body.event_id},
        )

    await publish(body.model_copy(update={"attempts": 0}))
    changes_ingested_total.labels(kind=body.kind).inc()
    return JSONResponse(
        status_code=202,
        content={"status": "accepted", "event_id": body.event_id, "order_id": body.order_id},
    )
