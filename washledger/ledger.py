"""
Ledger transaction executor: all-or-nothing mutations of one customer's stats.

A handler describes what it wants as a LedgerMutation, built by a decide callback that runs
inside the atomic unit against the freshly locked stats. Either every delta lands or none does;
a mutation that would drive free_washes_available below zero aborts the whole unit.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from washledger.models import CustomerStats, utcnow
from washledger.store import LedgerStore, RecordNotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

COUNTER_FIELDS = frozenset({"total_orders", "completed_orders", "cancelled_orders", "free_washes_available"})
TIMESTAMP_FIELDS = frozenset({"last_visit"})


class LedgerError(Exception):
    """A ledger mutation did not apply. Nothing was written."""
    retryable = False


class CustomerNotFoundError(LedgerError):
    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} not found")


class InsufficientCreditError(LedgerError):
    def __init__(self, customer_id: str | None, balance: int):
        self.customer_id = customer_id
        self.balance = balance
        super().__init__(f"Mutation would leave free_washes_available at {balance} for customer {customer_id}")


class LedgerTransactionError(LedgerError):
    """The atomic unit failed for a transient reason (conflict, lost connection)."""
    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


@dataclass(frozen=True)
class LedgerMutation:
    """
    increments: counter field -> delta
    touch: timestamp fields set to the commit time
    sets: fields set to a fixed value
    facts: decisions made while building the mutation (e.g. earned_free_wash); not persisted
    """
    increments: dict[str, int] = field(default_factory=dict)
    touch: tuple[str, ...] = ()
    sets: dict[str, Any] = field(default_factory=dict)
    facts: dict[str, Any] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.increments or self.touch or self.sets)


@dataclass(frozen=True)
class LedgerResult:
    customer_id: str
    before: CustomerStats
    after: CustomerStats
    mutation: LedgerMutation

    def fact(self, name: str, default: Any = None) -> Any:
        return self.mutation.facts.get(name, default)


Decide = Callable[[CustomerStats], LedgerMutation]


def apply_mutation(
    stats: CustomerStats,
    mutation: LedgerMutation,
    now: datetime,
    customer_id: str | None = None,
) -> CustomerStats:
    """Pure application of a mutation to a stats value. Raises before producing an invalid balance."""
    data = stats.model_dump()
    for name, delta in mutation.increments.items():
        if name not in COUNTER_FIELDS:
            raise ValueError(f"not a ledger counter: {name}")
        data[name] = (data.get(name) or 0) + delta
    for name in mutation.touch:
        if name not in TIMESTAMP_FIELDS:
            raise ValueError(f"not a ledger timestamp: {name}")
        data[name] = now
    for name, value in mutation.sets.items():
        if name not in COUNTER_FIELDS and name not in TIMESTAMP_FIELDS:
            raise ValueError(f"not a ledger field: {name}")
        data[name] = value
    if data["free_washes_available"] < 0:
        raise InsufficientCreditError(customer_id, data["free_washes_available"])
    return CustomerStats.model_validate(data)


async def execute(store: LedgerStore, customer_id: str, decide: Decide) -> LedgerResult:
    """
    Run decide against the locked stats of customer_id and persist the outcome atomically.
    Concurrent executions for the same customer serialize; each decide sees the previous commit.
    """
    decided: list[LedgerMutation] = []

    def _update(stats: CustomerStats) -> CustomerStats:
        mutation = decide(stats)
        decided.append(mutation)
        return apply_mutation(stats, mutation, utcnow(), customer_id)

    try:
        before, after = await store.update_customer_stats_atomically(customer_id, _update)
    except RecordNotFoundError as e:
        raise CustomerNotFoundError(customer_id) from e
    except StoreUnavailableError as e:
        raise LedgerTransactionError(f"Ledger mutation for customer {customer_id} failed: {e}") from e

    mutation = decided[-1]
    logger.debug("Ledger customer=%s increments=%s facts=%s", customer_id, mutation.increments, mutation.facts)
    return LedgerResult(customer_id=customer_id, before=before, after=after, mutation=mutation)
