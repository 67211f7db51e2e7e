"""
Publish order change messages. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
import json

from washledger.changes import OrderChange
from washledger.config import settings
from washledger.redis_client import get_redis
from washledger.sqs_client import send_message

CHANGES_QUEUE_KEY = "queue:order_changes"
CHANGES_DLQ_KEY = "queue:order_changes:dlq"


def make_body(change: OrderChange, attempts: int | None = None) -> dict:
    body = change.model_dump(mode="json")
    if attempts is not None:
        body["attempts"] = attempts
    return body


async def push_to_queue(body: dict) -> None:
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(CHANGES_QUEUE_KEY, json.dumps(body))


async def publish_change(change: OrderChange) -> None:
    await push_to_queue(make_body(change))
