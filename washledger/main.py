import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from washledger.config import settings
from washledger.dependencies import create_store
from washledger.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from washledger.notifications import get_dispatcher
from washledger.queue import publish_change
from washledger.redis_client import close_redis, get_redis
from washledger.routes import admin, customers, events, orders
from washledger.sqs_client import get_queue_depth

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = create_store()
    await store.connect()
    app.state.store = store
    app.state.dispatcher = get_dispatcher(store)
    app.state.publish = publish_change
    await get_redis()
    yield
    await close_redis()
    await store.close()


app = FastAPI(title="Wash Ledger", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(customers.router)
app.include_router(events.router)
app.include_router(admin.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: lifecycle counters, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
        except Exception:
            logger.warning("Could not read SQS queue depth", exc_info=True)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
