"""
Loyalty and reporting arithmetic. Pure functions, no I/O.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from washledger.models import REDEEMED, Order, RankedEntry, Rating

UNNAMED = "Unnamed"


def round_half_up(value: float, digits: int = 0) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def should_get_free_wash(completed_orders: int, washes_required: int | None) -> bool:
    """True when completed_orders is a positive multiple of washes_required. Earning is off for required <= 0."""
    if not washes_required or washes_required <= 0:
        return False
    return completed_orders > 0 and completed_orders % washes_required == 0


def washes_until_free(completed_orders: int, washes_required: int | None) -> int:
    if not washes_required or washes_required <= 0:
        return 0
    return washes_required - (completed_orders % washes_required)


def calculate_free_washes_available(
    completed_orders: int,
    washes_required: int | None,
    current_free_washes: int = 0,
) -> int:
    """Reporting helper: the balance after a completion that brought the count to completed_orders."""
    if should_get_free_wash(completed_orders, washes_required):
        return current_free_washes + 1
    return current_free_washes


def calculate_progress_percentage(completed_orders: int, washes_required: int | None) -> int:
    """Progress toward the next credit, 0-100."""
    if not washes_required or washes_required <= 0:
        return 0
    remainder = completed_orders % washes_required
    return int(round_half_up(remainder / washes_required * 100))


def calculate_revenue(orders: Iterable[Order]) -> int:
    """Sum of service prices over completed orders that were paid (not redeemed)."""
    total = 0
    for order in orders:
        if order.status == "completed" and order.payment_method != REDEEMED:
            total += order.service.price if order.service else 0
    return total


def calculate_average_rating(ratings: Iterable[Rating]) -> float:
    valid = [r.stars for r in ratings if r.stars and r.stars > 0]
    if not valid:
        return 0.0
    return round_half_up(sum(valid) / len(valid), 1)


def calculate_average_service_time(orders: Iterable[Order]) -> int:
    """Mean minutes from creation to completion over completed orders with both timestamps."""
    durations = [
        (o.completed_at - o.created_at).total_seconds() / 60
        for o in orders
        if o.status == "completed" and o.created_at and o.completed_at
    ]
    if not durations:
        return 0
    return int(round_half_up(sum(durations) / len(durations)))


def _pick_max(entries: Sequence[RankedEntry]) -> RankedEntry | None:
    # strict greater-than: the first entry seen keeps the lead on ties
    best = None
    for entry in entries:
        if best is None or entry.count > best.count:
            best = entry
    return best


def find_most_popular_service(orders: Iterable[Order]) -> RankedEntry | None:
    counts: dict[str, RankedEntry] = {}
    for order in orders:
        if not order.service or not order.service.id:
            continue
        entry = counts.get(order.service.id)
        if entry is None:
            entry = counts[order.service.id] = RankedEntry(
                id=order.service.id, name=order.service.name or UNNAMED, count=0
            )
        entry.count += 1
    return _pick_max(list(counts.values()))


def find_top_worker(orders: Iterable[Order]) -> RankedEntry | None:
    counts: dict[str, RankedEntry] = {}
    for order in orders:
        if order.status != "completed" or not order.worker or not order.worker.id:
            continue
        entry = counts.get(order.worker.id)
        if entry is None:
            entry = counts[order.worker.id] = RankedEntry(
                id=order.worker.id, name=order.worker.name or UNNAMED, count=0
            )
        entry.count += 1
    return _pick_max(list(counts.values()))
