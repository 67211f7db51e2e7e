"""
Worker: pull order change messages from Redis or AWS SQS and run the lifecycle handlers.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- A redelivered message (same event_id) is skipped; handler outcomes are recorded on the order itself.
  The change:{event_id} key is claimed before the handlers run and released only when they raise,
  so two concurrent deliveries never both apply. The cost is an at-most-once window: if the
  process dies after the claim and before the ledger commit, the redelivery is skipped and that
  transition is lost. Replay it with a new event_id (POST /events/ingest) to recover.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m washledger.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis
from pydantic import ValidationError

from washledger.app_settings import load_app_settings
from washledger.changes import ChangePublisher, OrderChange
from washledger.config import settings
from washledger.dependencies import create_store
from washledger.lifecycle import handle_change
from washledger.metrics import messages_dlq_total, messages_failed_total, messages_processed_total
from washledger.notifications import NotificationDispatcher, get_dispatcher
from washledger.queue import CHANGES_DLQ_KEY, CHANGES_QUEUE_KEY, make_body, publish_change
from washledger.redis_client import check_idempotency, close_redis, release_idempotency
from washledger.sqs_client import change_message_visibility, delete_message, receive_messages
from washledger.store import LedgerStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090
SEEN_CHANGE_TTL_SECONDS = 7 * 86400


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def parse_change(raw: str) -> OrderChange | None:
    """Decode one queue message; None (logged) when it is not a usable change."""
    try:
        return OrderChange.model_validate_json(raw)
    except ValidationError as e:
        logger.warning("Invalid change message from queue, dropped: %s", e)
        return None


async def process_change(
    change: OrderChange,
    store: LedgerStore,
    dispatcher: NotificationDispatcher,
    publish: ChangePublisher,
) -> bool:
    """
    Run the handlers for one change. Returns False when the change was already processed.
    Raises only when the change could not be handled at all (store unreachable); the
    caller retries in that case.
    """
    seen_key = f"change:{change.event_id}"
    if await check_idempotency(seen_key, SEEN_CHANGE_TTL_SECONDS):
        logger.info("Duplicate change event_id=%s for order %s, skipped", change.event_id, change.order_id)
        return False
    try:
        app_settings = await load_app_settings(store)
        outcomes = await handle_change(change, store, dispatcher, app_settings, publish)
    except Exception:
        await release_idempotency(seen_key)
        raise
    for outcome in outcomes:
        if outcome.error:
            logger.warning("Order %s %s handled with error: %s", outcome.order_id, outcome.transition, outcome.error)
    return True


async def process_one_redis(
    r: redis.Redis,
    store: LedgerStore,
    dispatcher: NotificationDispatcher,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    change = parse_change(raw)
    if change is None:
        return
    attempts = change.attempts

    async with sem:
        try:
            processed = await process_change(change, store, dispatcher, publish_change)
            if processed:
                logger.info("Processed event_id=%s (order %s, %s)", change.event_id, change.order_id, change.kind)
            messages_processed_total.inc()
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed to process event_id=%s (attempt %d): %s", change.event_id, attempts + 1, e)
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                dlq_message = make_body(change, next_attempts)
                dlq_message["last_error"] = str(e)
                dlq_message["failed_at"] = time.time()
                await r.lpush(CHANGES_DLQ_KEY, json.dumps(dlq_message))
                messages_dlq_total.inc()
                logger.warning("Moved event_id=%s to DLQ after %d attempts", change.event_id, settings.worker_max_retries)
            else:
                backoff_sec = 2 ** attempts
                logger.info(
                    "Re-queuing event_id=%s in %ds (attempt %d/%d)",
                    change.event_id, backoff_sec, next_attempts, settings.worker_max_retries,
                )
                await asyncio.sleep(backoff_sec)
                await r.lpush(CHANGES_QUEUE_KEY, json.dumps(make_body(change, next_attempts)))


async def process_one_sqs(
    store: LedgerStore,
    dispatcher: NotificationDispatcher,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
) -> None:
    change = parse_change(body)
    if change is None:
        await asyncio.to_thread(delete_message, receipt_handle)
        return

    async with sem:
        try:
            processed = await process_change(change, store, dispatcher, publish_change)
            if processed:
                logger.info("Processed event_id=%s (order %s, %s)", change.event_id, change.order_id, change.kind)
            messages_processed_total.inc()
            await asyncio.to_thread(delete_message, receipt_handle)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed to process event_id=%s (receive #%d): %s", change.event_id, receive_count, e)
            # Don't delete: message will reappear after visibility timeout; after max receives SQS moves to DLQ
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(shutdown_event: asyncio.Event, store: LedgerStore, dispatcher: NotificationDispatcher) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Store ready. Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        CHANGES_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(CHANGES_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, store, dispatcher, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await r.aclose()


async def run_worker_sqs(shutdown_event: asyncio.Event, store: LedgerStore, dispatcher: NotificationDispatcher) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Store ready. Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(store, dispatcher, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    store = create_store()
    await store.connect()
    dispatcher = get_dispatcher(store)
    try:
        if settings.sqs_queue_url:
            await run_worker_sqs(shutdown_event, store, dispatcher)
        else:
            await run_worker_redis(shutdown_event, store, dispatcher)
    finally:
        await close_redis()
        await store.close()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
