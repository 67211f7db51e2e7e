"""
Reminder run for customers who have not visited in a while.
Targets customers with at least one paid completion, a push target, and a last visit older than
the configured threshold; capped per run and paced between sends.
"""
import asyncio
import logging
from datetime import datetime, timedelta

from washledger.app_settings import AppSettings
from washledger.models import ReminderLog, utcnow
from washledger.notifications import NotificationDispatcher, notify_free_wash_reminder, notify_inactive_customer
from washledger.store import LedgerStore

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 100
SEND_INTERVAL_SEC = 0.1
MAX_LOGGED_ERRORS = 10


async def remind_inactive_customers(
    store: LedgerStore,
    dispatcher: NotificationDispatcher,
    app_settings: AppSettings,
    now: datetime | None = None,
    send_interval: float = SEND_INTERVAL_SEC,
) -> ReminderLog:
    now = now or utcnow()
    reminder_after_days = app_settings.notifications.reminder_after_days or 30
    log = ReminderLog(reminder_after_days=reminder_after_days)
    logger.info("Looking for customers inactive for more than %d days", reminder_after_days)

    try:
        inactive = await store.find_inactive_customers(now - timedelta(days=reminder_after_days))
        with_target = [c for c in inactive if c.push_target]
        log.total_found = len(inactive)
        log.total_with_target = len(with_target)
        logger.info("Inactive customers: %d found, %d with a push target", len(inactive), len(with_target))

        to_process = with_target[:MAX_NOTIFICATIONS]
        if len(with_target) > MAX_NOTIFICATIONS:
            logger.warning("Limiting reminders to %d", MAX_NOTIFICATIONS)
        log.total_processed = len(to_process)

        errors: list[dict] = []
        for customer in to_process:
            days_since = (now - customer.stats.last_visit).days
            try:
                result = await notify_inactive_customer(dispatcher, customer.id, days_since)
                if result.success and customer.stats.free_washes_available > 0:
                    await notify_free_wash_reminder(dispatcher, customer.id, customer.stats.free_washes_available)
                if result.success:
                    log.successful += 1
                else:
                    log.failed += 1
                    errors.append({"customer_id": customer.id, "error": result.error})
            except Exception as e:
                log.failed += 1
                errors.append({"customer_id": customer.id, "error": str(e)})
                logger.exception("Error sending reminder to %s", customer.id)
            if send_interval:
                await asyncio.sleep(send_interval)
        log.errors = errors[:MAX_LOGGED_ERRORS]
    except Exception as e:
        logger.exception("Inactive customer reminder run failed")
        log.error = str(e)
        await store.append_reminder_log(log)
        raise

    await store.append_reminder_log(log)
    logger.info("Reminders done: %d/%d", log.successful, log.total_processed)
    if log.failed:
        logger.warning("%d reminders failed", log.failed)
    return log
