"""
Order lifecycle state machine and the transition-edge guards the handlers run behind.

Handlers fire on edges (status was not X, now is X), never on state values, so a redelivered
or late change message whose "before" already shows the new state does nothing.
"""
from typing import Literal

from washledger.models import Order, OrderStatus, Rating

PENDING: OrderStatus = "pending"
IN_PROGRESS: OrderStatus = "in_progress"
COMPLETED: OrderStatus = "completed"
CANCELLED: OrderStatus = "cancelled"

ACTIVE_STATES: frozenset[str] = frozenset({PENDING, IN_PROGRESS})
TERMINAL_STATES: frozenset[str] = frozenset({COMPLETED, CANCELLED})

# Current status -> allowed next status
VALID_TRANSITIONS: dict[str, list[str]] = {
    PENDING: [IN_PROGRESS, COMPLETED, CANCELLED],
    IN_PROGRESS: [COMPLETED, CANCELLED],
    COMPLETED: [],  # terminal
    CANCELLED: [],  # terminal
}

Transition = Literal["completed", "cancelled", "rating_added"]


def is_valid_transition(current_status: str | None, new_status: str) -> bool:
    """True if new_status is allowed after current_status. A brand-new order may only start as pending."""
    if current_status is None:
        return new_status == PENDING
    return new_status in VALID_TRANSITIONS.get(current_status, [])


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def entered_completed(before_status: str | None, after_status: str) -> bool:
    return before_status != COMPLETED and after_status == COMPLETED


def entered_cancelled(before_status: str | None, after_status: str) -> bool:
    return before_status != CANCELLED and after_status == CANCELLED


def rating_added(before_rating: Rating | None, after_rating: Rating | None) -> bool:
    return before_rating is None and after_rating is not None


def transitions_for(before: Order | None, after: Order) -> list[Transition]:
    """Edges represented by a (before, after) pair, in handler order."""
    before_status = before.status if before else None
    before_rating = before.rating if before else None
    edges: list[Transition] = []
    if entered_completed(before_status, after.status):
        edges.append("completed")
    if entered_cancelled(before_status, after.status):
        edges.append("cancelled")
    if rating_added(before_rating, after.rating):
        edges.append("rating_added")
    return edges


def is_observed_change_valid(before: Order | None, after: Order) -> bool:
    """Whether a status change seen on the change feed is one the state machine allows."""
    if before is None or before.status == after.status:
        return True
    return is_valid_transition(before.status, after.status)
