import logging
from dataclasses import asdict
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from washledger.app_settings import AppSettings, load_app_settings
from washledger.config import settings
from washledger.dependencies import get_dispatcher, get_store
from washledger.notifications import CONDITIONS, NotificationDispatcher, notify_custom
from washledger.queue import CHANGES_DLQ_KEY, CHANGES_QUEUE_KEY
from washledger.redis_client import replay_redis_dlq
from washledger.reports import metrics_for_range
from washledger.sqs_client import replay_dlq_to_main
from washledger.store import LedgerStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class AdminNotificationBody(BaseModel):
    type: Literal["broadcast", "specific", "conditional"]
    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    users: list[str] | None = Field(default=None, description="Customer ids, for type=specific")
    condition: str | None = Field(default=None, description="Named condition, for type=conditional")
    data: dict = Field(default_factory=dict)


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay change messages from the DLQ to the main queue (SQS when configured, else the Redis list).
    Returns number of messages replayed.
    """
    if settings.sqs_queue_url:
        replayed = await replay_dlq_to_main(limit=limit)
    else:
        replayed = await replay_redis_dlq(CHANGES_DLQ_KEY, CHANGES_QUEUE_KEY, limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )


@router.post("/notifications")
async def send_notification(
    body: AdminNotificationBody,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    if body.type == "broadcast":
        stats = await notify_custom(dispatcher, "all", body.title, body.body, body.data)
    elif body.type == "specific":
        if not body.users:
            raise HTTPException(status_code=422, detail="users is required for a specific notification")
        stats = await notify_custom(dispatcher, body.users, body.title, body.body, body.data)
    else:
        predicate = CONDITIONS.get(body.condition or "")
        if predicate is None:
            raise HTTPException(status_code=422, detail=f"Unknown condition: {body.condition}")
        stats = await dispatcher.send_conditional(predicate, body.title, body.body, {**body.data, "type": "custom_admin"})
    logger.info("Admin %s notification: %d sent, %d failed", body.type, stats.successful, stats.failed)
    return JSONResponse(status_code=200, content={"success": True, "stats": asdict(stats)})


@router.get("/reports/metrics")
async def range_metrics(
    start: datetime,
    end: datetime,
    store: LedgerStore = Depends(get_store),
) -> JSONResponse:
    """Order metrics for orders created in [start, end)."""
    try:
        metrics = await metrics_for_range(store, start, end)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return JSONResponse(status_code=200, content=metrics.model_dump(mode="json"))


@router.get("/settings")
async def get_settings(store: LedgerStore = Depends(get_store)) -> JSONResponse:
    app_settings = await load_app_settings(store)
    return JSONResponse(status_code=200, content=app_settings.model_dump(mode="json"))


@router.put("/settings")
async def put_settings(body: dict, store: LedgerStore = Depends(get_store)) -> JSONResponse:
    try:
        app_settings = AppSettings.model_validate(body)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    await store.save_app_settings_document(app_settings.model_dump(mode="json"))
    return JSONResponse(status_code=200, content=app_settings.model_dump(mode="json"))
