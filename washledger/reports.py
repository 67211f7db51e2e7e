"""
Order metrics over a date range: a pure aggregation plus the daily/monthly report jobs that store it.
"""
import calendar
import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable
from zoneinfo import ZoneInfo

from washledger.calculations import (
    calculate_average_rating,
    calculate_average_service_time,
    calculate_revenue,
    find_most_popular_service,
    find_top_worker,
)
from washledger.models import REDEEMED, MetricsReport, Order, OrderMetrics
from washledger.order_state import CANCELLED, COMPLETED, IN_PROGRESS
from washledger.store import LedgerStore

logger = logging.getLogger(__name__)


def compute_order_metrics(orders: Iterable[Order]) -> OrderMetrics:
    """Aggregate a set of orders. No side effects."""
    orders = list(orders)
    completed = [o for o in orders if o.status == COMPLETED]
    ratings = [o.rating for o in completed if o.rating is not None and o.rating.stars]
    return OrderMetrics(
        total_orders=len(orders),
        completed_orders=len(completed),
        cancelled_orders=sum(1 for o in orders if o.status == CANCELLED),
        in_progress_orders=sum(1 for o in orders if o.status == IN_PROGRESS),
        revenue=calculate_revenue(completed),
        free_washes_redeemed=sum(1 for o in completed if o.payment_method == REDEEMED),
        average_service_time=calculate_average_service_time(completed),
        most_popular_service=find_most_popular_service(orders),
        top_worker=find_top_worker(completed),
        average_rating=calculate_average_rating(ratings),
        total_ratings=len(ratings),
    )


async def metrics_for_range(store: LedgerStore, start: datetime, end: datetime) -> OrderMetrics:
    if end <= start:
        raise ValueError("end must be after start")
    orders = await store.list_orders_created_between(start, end)
    logger.info("Computing metrics over %d orders from %s to %s", len(orders), start.isoformat(), end.isoformat())
    return compute_order_metrics(orders)


def _day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=tz)
    return start, start + timedelta(days=1)


async def generate_daily_report(store: LedgerStore, day: date, tz: ZoneInfo) -> MetricsReport:
    start, end = _day_bounds(day, tz)
    metrics = await metrics_for_range(store, start, end)
    report = MetricsReport(period=day.isoformat(), kind="daily", start=start, end=end, metrics=metrics)
    await store.save_report(report)
    logger.info("Daily report saved: %s (%d orders)", report.period, metrics.total_orders)
    return report


async def generate_monthly_report(store: LedgerStore, year: int, month: int, tz: ZoneInfo) -> MetricsReport:
    start = datetime(year, month, 1, tzinfo=tz)
    last_day = calendar.monthrange(year, month)[1]
    end = datetime.combine(date(year, month, last_day), time.min, tzinfo=tz) + timedelta(days=1)
    metrics = await metrics_for_range(store, start, end)
    report = MetricsReport(period=f"{year}-{month:02d}", kind="monthly", start=start, end=end, metrics=metrics)
    await store.save_report(report)
    logger.info("Monthly report saved: %s", report.period)
    return report


def is_last_day_of_month(day: date) -> bool:
    return day.day == calendar.monthrange(day.year, day.month)[1]


async def run_daily_reports(store: LedgerStore, today: date, tz: ZoneInfo) -> list[MetricsReport]:
    """Report on the day before today; on the last day of a month also report on the whole month."""
    yesterday = today - timedelta(days=1)
    reports = [await generate_daily_report(store, yesterday, tz)]
    if is_last_day_of_month(yesterday):
        logger.info("End of month, computing monthly report")
        try:
            reports.append(await generate_monthly_report(store, yesterday.year, yesterday.month, tz))
        except Exception:
            logger.exception("Error computing monthly report for %d-%02d", yesterday.year, yesterday.month)
    return reports
