"""
Push notification dispatch. Delivery is best-effort: every send returns a DispatchResult and
never raises to the caller. A delivery target the push service reports as stale is removed
from the customer record.
"""
import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import boto3
from botocore.exceptions import ClientError

from washledger.config import settings
from washledger.metrics import notifications_sent_total
from washledger.models import Customer, Order, utcnow
from washledger.store import LedgerStore

logger = logging.getLogger(__name__)

# SNS error codes meaning the endpoint will never accept deliveries again
INVALID_TARGET_CODES = frozenset({"EndpointDisabled", "NotFound"})

_sns_client: Any = None


def _get_sns_client():
    global _sns_client
    if _sns_client is None:
        _sns_client = boto3.client("sns", region_name=settings.aws_region)
    return _sns_client


class InvalidTargetError(Exception):
    """The delivery target is gone (uninstalled app, disabled endpoint)."""


@dataclass
class DispatchResult:
    success: bool
    error: str | None = None
    message_id: str | None = None


@dataclass
class DispatchStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)


class NotificationDispatcher(ABC):

    def __init__(self, store: LedgerStore):
        self.store = store

    @abstractmethod
    async def deliver(self, target: str, title: str, body: str, data: dict[str, str]) -> str:
        """Hand one message to the transport; returns its message id."""

    async def send(self, customer_id: str, title: str, body: str, data: dict | None = None) -> DispatchResult:
        customer = await self.store.get_customer(customer_id)
        if customer is None:
            logger.warning("Customer %s not found, notification skipped", customer_id)
            notifications_sent_total.labels(outcome="no_customer").inc()
            return DispatchResult(success=False, error="Customer not found")
        if not customer.push_target:
            logger.warning("Customer %s has no push target", customer_id)
            notifications_sent_total.labels(outcome="no_target").inc()
            return DispatchResult(success=False, error="No push target")

        payload = {str(k): str(v) for k, v in (data or {}).items()}
        payload["customer_id"] = customer_id
        payload["timestamp"] = utcnow().isoformat()
        try:
            message_id = await self.deliver(customer.push_target, title, body, payload)
        except InvalidTargetError as e:
            logger.warning("Push target for customer %s is stale, removing it: %s", customer_id, e)
            notifications_sent_total.labels(outcome="invalid_target").inc()
            try:
                await self.store.clear_push_target(customer_id)
            except Exception:
                logger.exception("Failed to remove stale push target for customer %s", customer_id)
            return DispatchResult(success=False, error=str(e))
        except Exception as e:
            logger.exception("Error sending notification to %s", customer_id)
            notifications_sent_total.labels(outcome="error").inc()
            return DispatchResult(success=False, error=str(e))

        logger.info("Notification sent to %s: %s", customer_id, message_id)
        notifications_sent_total.labels(outcome="success").inc()
        return DispatchResult(success=True, message_id=message_id)

    async def send_to_many(self, customer_ids: list[str], title: str, body: str, data: dict | None = None) -> DispatchStats:
        logger.info("Sending notification to %d customers", len(customer_ids))
        results = await asyncio.gather(
            *(self.send(cid, title, body, data) for cid in customer_ids),
            return_exceptions=True,
        )
        stats = DispatchStats(total=len(results))
        for customer_id, result in zip(customer_ids, results):
            if isinstance(result, DispatchResult) and result.success:
                stats.successful += 1
            else:
                stats.failed += 1
                error = result.error if isinstance(result, DispatchResult) else str(result)
                stats.errors.append({"customer_id": customer_id, "error": error or "Unknown error"})
        logger.info("Dispatch stats: total=%d successful=%d failed=%d", stats.total, stats.successful, stats.failed)
        return stats

    async def send_broadcast(self, title: str, body: str, data: dict | None = None) -> DispatchStats:
        customers = await self.store.list_customers(with_push_target=True)
        if not customers:
            logger.warning("No customers with a push target")
            return DispatchStats()
        return await self.send_to_many([c.id for c in customers], title, body, data)

    async def send_conditional(
        self,
        predicate: Callable[[Customer], bool],
        title: str,
        body: str,
        data: dict | None = None,
    ) -> DispatchStats:
        customers = await self.store.list_customers(with_push_target=True)
        eligible = [c.id for c in customers if predicate(c)]
        logger.info("%d customers match the condition", len(eligible))
        if not eligible:
            return DispatchStats()
        return await self.send_to_many(eligible, title, body, data)


class SnsPushDispatcher(NotificationDispatcher):
    """Mobile push through AWS SNS platform endpoints; push_target holds the endpoint ARN."""

    def _publish(self, target: str, title: str, body: str, data: dict[str, str]) -> str:
        message = {
            "default": body,
            "GCM": json.dumps({
                "notification": {"title": title, "body": body, "sound": "default", "color": "#0ea5e9"},
                "data": data,
                "priority": "high",
            }),
            "APNS": json.dumps({
                "aps": {"alert": {"title": title, "body": body}, "sound": "default", "badge": 1},
                **data,
            }),
        }
        try:
            resp = _get_sns_client().publish(
                TargetArn=target,
                MessageStructure="json",
                Message=json.dumps(message),
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in INVALID_TARGET_CODES:
                raise InvalidTargetError(code) from e
            raise
        return resp["MessageId"]

    async def deliver(self, target: str, title: str, body: str, data: dict[str, str]) -> str:
        return await asyncio.to_thread(self._publish, target, title, body, data)


class LoggingDispatcher(NotificationDispatcher):
    """Logs instead of delivering. Used when push is disabled."""

    async def deliver(self, target: str, title: str, body: str, data: dict[str, str]) -> str:
        message_id = uuid.uuid4().hex
        logger.info("[push disabled] %s -> %s: %s | %s", message_id, target, title, body)
        return message_id


def get_dispatcher(store: LedgerStore) -> NotificationDispatcher:
    if settings.push_enabled:
        return SnsPushDispatcher(store)
    return LoggingDispatcher(store)


# -- message builders -----------------------------------------------------------


async def notify_order_completed(dispatcher: NotificationDispatcher, order: Order) -> DispatchResult:
    service_name = order.service_name or "wash"
    return await dispatcher.send(
        order.customer_id,
        "Your wash is ready!",
        f"Your {service_name} is complete. Thanks for choosing us!",
        {"type": "order_completed", "order_id": order.id, "service_name": order.service_name or ""},
    )


async def notify_free_wash_earned(
    dispatcher: NotificationDispatcher, customer_id: str, washes_required: int
) -> DispatchResult:
    return await dispatcher.send(
        customer_id,
        "You earned a FREE wash!",
        f"Congratulations! You completed {washes_required} washes. Your next wash is on us.",
        {"type": "free_wash_earned", "washes_required": washes_required},
    )


async def notify_inactive_customer(
    dispatcher: NotificationDispatcher, customer_id: str, days_since_last_visit: int
) -> DispatchResult:
    return await dispatcher.send(
        customer_id,
        "We miss you!",
        f"It has been {days_since_last_visit} days since your last visit. Come back and keep your ride shining!",
        {"type": "inactive_reminder", "days_since_last_visit": days_since_last_visit},
    )


async def notify_free_wash_reminder(
    dispatcher: NotificationDispatcher, customer_id: str, free_washes: int
) -> DispatchResult:
    plural = "es" if free_washes > 1 else ""
    return await dispatcher.send(
        customer_id,
        "You have free washes!",
        f"You have {free_washes} FREE wash{plural} waiting for you. Don't miss out!",
        {"type": "free_wash_reminder", "free_washes": free_washes},
    )


async def notify_custom(
    dispatcher: NotificationDispatcher,
    target: str | list[str],
    title: str,
    body: str,
    data: dict | None = None,
) -> DispatchStats:
    payload = {**(data or {}), "type": "custom_admin"}
    if target == "all":
        return await dispatcher.send_broadcast(title, body, payload)
    if isinstance(target, list):
        return await dispatcher.send_to_many(target, title, body, payload)
    raise ValueError("target must be 'all' or a list of customer ids")


# -- admin conditions -----------------------------------------------------------


def _inactive_for(days: int, now: datetime | None = None) -> Callable[[Customer], bool]:
    def check(customer: Customer) -> bool:
        if customer.stats.last_visit is None:
            return False
        return (now or utcnow()) - customer.stats.last_visit >= timedelta(days=days)
    return check


CONDITIONS: dict[str, Callable[[Customer], bool]] = {
    "has_free_washes": lambda c: c.stats.free_washes_available > 0,
    "inactive_30_days": _inactive_for(30),
    "completed_5_plus": lambda c: c.stats.completed_orders >= 5,
    "has_unredeemed_washes": lambda c: c.stats.free_washes_available > 0 and c.stats.completed_orders >= 6,
}
