"""
Scheduled jobs, meant to be run by cron (or any scheduler) once a day:
- daily-report: metrics for the previous day, plus the month when that day closed one
- inactive-reminder: push reminders to customers who have not visited in a while
Run: python -m washledger.jobs daily-report [--date YYYY-MM-DD] | inactive-reminder
"""
import argparse
import asyncio
import logging
import sys
from datetime import date, datetime
from zoneinfo import ZoneInfo

from washledger.app_settings import load_app_settings
from washledger.config import settings
from washledger.dependencies import create_store
from washledger.notifications import get_dispatcher
from washledger.reminders import remind_inactive_customers
from washledger.reports import run_daily_reports

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


async def daily_report(today: date | None = None) -> None:
    tz = ZoneInfo(settings.report_timezone)
    today = today or datetime.now(tz).date()
    store = create_store()
    await store.connect()
    try:
        reports = await run_daily_reports(store, today, tz)
        logger.info("Saved %d report(s): %s", len(reports), ", ".join(f"{r.kind}:{r.period}" for r in reports))
    finally:
        await store.close()


async def inactive_reminder() -> None:
    store = create_store()
    await store.connect()
    try:
        app_settings = await load_app_settings(store)
        log = await remind_inactive_customers(store, get_dispatcher(store), app_settings)
        logger.info("Reminder run: %d sent, %d failed", log.successful, log.failed)
    finally:
        await store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="washledger.jobs", description="Wash ledger scheduled jobs")
    sub = parser.add_subparsers(dest="job", required=True)
    report = sub.add_parser("daily-report", help="Compute the previous day's (and month's) order metrics")
    report.add_argument("--date", type=date.fromisoformat, default=None, help="Run as if today were this date")
    sub.add_parser("inactive-reminder", help="Remind inactive customers to come back")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.job == "daily-report":
        asyncio.run(daily_report(args.date))
    else:
        asyncio.run(inactive_reminder())


if __name__ == "__main__":
    main()
