import pytest

from _helper import make_order, moved
from washledger.calculations import (
    calculate_average_rating,
    calculate_average_service_time,
    calculate_free_washes_available,
    calculate_progress_percentage,
    calculate_revenue,
    find_most_popular_service,
    find_top_worker,
    round_half_up,
    should_get_free_wash,
    washes_until_free,
)
from washledger.models import Rating


@pytest.mark.parametrize(
    "completed,required,expected",
    [
        (6, 6, True),
        (12, 6, True),
        (5, 6, False),
        (7, 6, False),
        (0, 6, False),
        (6, 0, False),
        (6, None, False),
        (6, -3, False),
    ],
)
def test_should_get_free_wash(completed, required, expected):
    assert should_get_free_wash(completed, required) is expected


def test_washes_until_free():
    assert washes_until_free(0, 6) == 6
    assert washes_until_free(4, 6) == 2
    assert washes_until_free(6, 6) == 6
    assert washes_until_free(4, 0) == 0


def test_calculate_free_washes_available_is_a_reporting_helper():
    assert calculate_free_washes_available(6, 6, current_free_washes=1) == 2
    assert calculate_free_washes_available(5, 6, current_free_washes=1) == 1


def test_progress_percentage_rounds_half_up():
    assert calculate_progress_percentage(1, 6) == 17
    assert calculate_progress_percentage(3, 6) == 50
    assert calculate_progress_percentage(1, 8) == 13  # 12.5
    assert calculate_progress_percentage(6, 6) == 0
    assert calculate_progress_percentage(3, 0) == 0


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(4.25, 1) == 4.3
    assert round_half_up(4.24, 1) == 4.2


def test_revenue_counts_paid_completed_orders_only():
    orders = [
        moved(make_order("a", price=100), "completed"),
        moved(make_order("b", price=250), "completed", payment_method="card"),
        moved(make_order("c", price=300, is_redemption=True), "completed"),
        make_order("d", price=999),
        moved(make_order("e", price=500), "cancelled"),
    ]
    assert calculate_revenue(orders) == 350


def test_average_rating():
    assert calculate_average_rating([]) == 0.0
    assert calculate_average_rating([Rating(stars=5), Rating(stars=4)]) == 4.5
    assert calculate_average_rating([Rating(stars=5), Rating(stars=4), Rating(stars=4)]) == 4.3


def test_average_service_time_in_minutes():
    orders = [
        moved(make_order("a"), "completed", minutes=20),
        moved(make_order("b"), "completed", minutes=45),
        make_order("c"),
    ]
    assert calculate_average_service_time(orders) == 33  # 32.5 rounds up
    assert calculate_average_service_time([]) == 0


def test_most_popular_service_first_seen_wins_ties():
    orders = [
        make_order("a", service_id="deluxe"),
        make_order("b", service_id="basic"),
        make_order("c", service_id="basic"),
        make_order("d", service_id="deluxe"),
    ]
    top = find_most_popular_service(orders)
    assert top.id == "deluxe"
    assert top.count == 2
    assert find_most_popular_service([]) is None


def test_top_worker_ignores_unfinished_orders():
    orders = [
        moved(make_order("a", worker_id="w1"), "completed"),
        make_order("b", worker_id="w2"),
        make_order("c", worker_id="w2"),
        moved(make_order("d", worker_id="w2"), "completed"),
        moved(make_order("e", worker_id="w2"), "completed"),
    ]
    top = find_top_worker(orders)
    assert top.id == "w2"
    assert top.count == 2
    assert top.name == "Sam"
