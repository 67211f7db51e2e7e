"""
AWS SQS helpers for the order change feed: send, receive, delete, DLQ replay.
Used when SQS_QUEUE_URL is set; boto3 calls run in threads from async code.
"""
import asyncio
import json
import logging
from typing import Any

import boto3
from pydantic import ValidationError

from washledger.changes import OrderChange
from washledger.config import settings

logger = logging.getLogger(__name__)

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(body: dict, queue_url: str | None = None) -> None:
    """Send one change message (main queue unless queue_url is given)."""
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=queue_url or settings.sqs_queue_url,
        MessageBody=json.dumps(body),
    )


def receive_messages(max_number: int = 10, wait_seconds: int = 5, queue_url: str | None = None) -> list[dict]:
    """Sync long-poll receive (worker calls it in a thread). Returns list of {ReceiptHandle, Body, Attributes}."""
    client = _get_client()
    resp = client.receive_message(
        QueueUrl=queue_url or settings.sqs_queue_url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
        AttributeNames=["ApproximateReceiveCount"],
    )
    return resp.get("Messages") or []


def delete_message(receipt_handle: str, queue_url: str | None = None) -> None:
    client = _get_client()
    client.delete_message(
        QueueUrl=queue_url or settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
    )


def change_message_visibility(receipt_handle: str, visibility_timeout: int) -> None:
    """Push the next delivery of a failed message out by visibility_timeout seconds."""
    client = _get_client()
    client.change_message_visibility(
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=visibility_timeout,
    )


async def get_queue_depth() -> tuple[int, int]:
    """Return (ApproximateNumberOfMessages, ApproximateNumberOfMessagesNotVisible) for metrics."""
    if not settings.sqs_queue_url:
        return 0, 0
    client = _get_client()

    def _get():
        r = client.get_queue_attributes(
            QueueUrl=settings.sqs_queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attrs = r.get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )

    return await asyncio.to_thread(_get)


async def replay_dlq_to_main(limit: int = 100) -> int:
    """
    Move change messages from the DLQ back to the main queue with attempts reset.
    Messages that do not parse as an order change are dropped.
    Returns number of DLQ messages consumed.
    """
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    replayed = 0
    while replayed < limit:
        messages = await asyncio.to_thread(receive_messages, 10, 0, settings.sqs_dlq_url)
        if not messages:
            break
        for msg in messages:
            if replayed >= limit:
                break
            receipt = msg.get("ReceiptHandle") or ""
            try:
                change = OrderChange.model_validate_json(msg.get("Body") or "{}")
            except ValidationError as e:
                logger.warning("Dropping unreadable DLQ message: %s", e)
            else:
                await send_message(change.model_copy(update={"attempts": 0}).model_dump(mode="json"))
            await asyncio.to_thread(delete_message, receipt, settings.sqs_dlq_url)
            replayed += 1
    return replayed
