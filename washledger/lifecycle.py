"""
Order lifecycle handlers: react to order changes and keep the customer's loyalty ledger in step.

- created:      reject a second active order, deduct the credit of a redemption order (and mark the
                order as holding it), count the visit
- completed:    count paid completions, grant a credit every N paid completions, notify
- cancelled:    count the cancellation, give back the credit a redemption order took, audit
- rating added: recompute the worker's average from scratch, alert on low ratings

Every handler records its failures on the order (processing_error, completion_error, ...) and
returns normally; a change message is considered handled even when its side effects did not
complete. Ledger changes go through washledger.ledger so they are atomic per customer.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

from washledger import ledger
from washledger.actions import ActionOutcome, PostCommitAction, run_post_commit
from washledger.app_settings import AppSettings
from washledger.calculations import calculate_average_rating, should_get_free_wash
from washledger.changes import ChangePublisher, OrderChange, updated_change
from washledger.ledger import LedgerMutation, LedgerResult
from washledger.metrics import (
    events_rejected_invalid_transition_total,
    free_washes_earned_total,
    free_washes_redeemed_total,
    free_washes_restored_total,
    orders_force_cancelled_total,
    transition_errors_total,
    transitions_handled_total,
)
from washledger.models import REDEEMED, CustomerStats, LowRatingAlert, Order, OrderAuditRecord
from washledger.notifications import NotificationDispatcher, notify_free_wash_earned, notify_order_completed
from washledger.order_state import (
    CANCELLED,
    entered_cancelled,
    entered_completed,
    is_observed_change_valid,
    rating_added,
    transitions_for,
)
from washledger.store import InvalidTransitionError, LedgerStore, RecordNotFoundError

logger = logging.getLogger(__name__)

ACTIVE_ORDER_EXISTS = "Customer already has an active order"
NO_FREE_WASHES = "No free washes available"
LOW_RATING_THRESHOLD = 3


@dataclass
class HandlerOutcome:
    transition: str
    order_id: str
    ledger: LedgerResult | None = None
    facts: dict[str, Any] = field(default_factory=dict)
    actions: list[ActionOutcome] = field(default_factory=list)
    error: str | None = None


async def _record_error(store: LedgerStore, outcome: HandlerOutcome, annotation: str, error: Exception) -> None:
    logger.error("Error processing %s for order %s: %s", outcome.transition, outcome.order_id, error, exc_info=error)
    transition_errors_total.labels(transition=outcome.transition).inc()
    outcome.error = str(error)
    try:
        await store.annotate_order(outcome.order_id, annotation, str(error))
    except Exception:
        logger.exception("Failed to record %s on order %s", annotation, outcome.order_id)


async def _force_cancel(store: LedgerStore, order: Order, reason: str, publish: ChangePublisher) -> bool:
    """Cancel the order on the system's behalf. False when someone else already cancelled it."""
    fields: dict[str, Any] = {"cancelled_by": "system", "cancel_reason": reason}
    if order.is_redemption:
        # no credit was taken for this order, so the cancel handler must not give one back
        fields.update(is_redemption=False, payment_method=None)
    try:
        before, after = await store.transition_order(order.id, CANCELLED, fields)
    except InvalidTransitionError:
        current = await store.get_order(order.id)
        if current is None or current.status != CANCELLED:
            raise
        logger.info("Order %s was already cancelled by %s, leaving it as is", order.id, current.cancelled_by)
        return False
    orders_force_cancelled_total.labels(reason=reason).inc()
    logger.info("Order %s cancelled by the system: %s", order.id, reason)
    await publish(updated_change(before, after))
    return True


async def _release_credit_marker(store: LedgerStore, order_id: str) -> bool:
    """Clear the order's credit_deducted marker. True only for the caller that actually cleared it."""
    try:
        before, _ = await store.set_credit_deducted(order_id, False)
    except RecordNotFoundError:
        logger.warning("Order %s not found, no credit held for it", order_id)
        return False
    return before.credit_deducted


async def _restore_credit(store: LedgerStore, customer_id: str) -> LedgerResult:
    result = await ledger.execute(
        store,
        customer_id,
        lambda stats: LedgerMutation(increments={"free_washes_available": 1}, facts={"credit_restored": True}),
    )
    free_washes_restored_total.inc()
    logger.info("Free wash restored for customer %s", customer_id)
    return result


async def handle_order_created(store: LedgerStore, order: Order, publish: ChangePublisher) -> HandlerOutcome:
    logger.info("New order created: %s (customer=%s, redemption=%s)", order.id, order.customer_id, order.is_redemption)
    outcome = HandlerOutcome(transition="created", order_id=order.id)
    transitions_handled_total.labels(transition="created").inc()
    try:
        # the customer may have cancelled since the change was published
        current = await store.get_order(order.id) or order
        active = await store.find_active_order(order.customer_id, exclude_order_id=order.id)
        if active is not None:
            logger.warning("Customer %s already has an active order: %s", order.customer_id, active.id)
            if await _force_cancel(store, current, ACTIVE_ORDER_EXISTS, publish):
                outcome.facts["force_cancelled"] = ACTIVE_ORDER_EXISTS
            return outcome

        # an order cancelled before this point still counts as a visit but takes no credit
        wants_redemption = current.is_redemption and current.status != CANCELLED

        def decide(stats: CustomerStats) -> LedgerMutation:
            increments = {"total_orders": 1}
            facts = {"redeemed": False}
            if wants_redemption and stats.free_washes_available > 0:
                # taken now, given back by the cancel handler if the order never completes
                increments["free_washes_available"] = -1
                facts["redeemed"] = True
            return LedgerMutation(increments=increments, touch=("last_visit",), facts=facts)

        outcome.ledger = await ledger.execute(store, order.customer_id, decide)
        redeemed = outcome.ledger.fact("redeemed")
        outcome.facts["redeemed"] = redeemed

        if wants_redemption and not redeemed:
            logger.warning("Customer %s has no free washes available", order.customer_id)
            if await _force_cancel(store, current, NO_FREE_WASHES, publish):
                outcome.facts["force_cancelled"] = NO_FREE_WASHES
        elif redeemed:
            free_washes_redeemed_total.inc()
            logger.info("Free wash deducted from customer %s", order.customer_id)
            _, marked = await store.set_credit_deducted(order.id, True)
            if marked.status == CANCELLED and await _release_credit_marker(store, order.id):
                # cancelled between the re-read and the marker; the cancel handler saw no marker
                await _restore_credit(store, order.customer_id)
                outcome.facts["credit_restored"] = True

        logger.info("Order %s processed, customer %s stats updated", order.id, order.customer_id)
    except Exception as e:
        await _record_error(store, outcome, "processing_error", e)
    return outcome


async def _update_worker_completed(store: LedgerStore, worker_id: str) -> bool:
    updated = await store.increment_worker_completed(worker_id)
    if updated:
        logger.info("Worker %s stats updated", worker_id)
    else:
        logger.warning("Worker %s not found", worker_id)
    return updated


async def handle_order_completed(
    store: LedgerStore,
    dispatcher: NotificationDispatcher,
    app_settings: AppSettings,
    before: Order | None,
    after: Order,
) -> HandlerOutcome | None:
    if not entered_completed(before.status if before else None, after.status):
        return None
    logger.info("Order completed: %s", after.id)
    outcome = HandlerOutcome(transition="completed", order_id=after.id)
    transitions_handled_total.labels(transition="completed").inc()

    is_redeeming = after.payment_method == REDEEMED
    washes_required = app_settings.washes_required_for_free

    def decide(stats: CustomerStats) -> LedgerMutation:
        if is_redeeming:
            # a redeemed wash does not count toward the next credit
            return LedgerMutation(
                touch=("last_visit",),
                facts={"earned_free_wash": False, "completed_orders": stats.completed_orders},
            )
        new_completed = stats.completed_orders + 1
        earned = should_get_free_wash(new_completed, washes_required)
        increments = {"completed_orders": 1}
        if earned:
            increments["free_washes_available"] = 1
        return LedgerMutation(
            increments=increments,
            touch=("last_visit",),
            facts={"earned_free_wash": earned, "completed_orders": new_completed},
        )

    try:
        outcome.ledger = await ledger.execute(store, after.customer_id, decide)
    except Exception as e:
        await _record_error(store, outcome, "completion_error", e)
    else:
        earned = outcome.ledger.fact("earned_free_wash", False)
        outcome.facts.update(outcome.ledger.mutation.facts)
        logger.info("Customer %s: %d paid washes completed", after.customer_id, outcome.ledger.after.completed_orders)
        if earned:
            free_washes_earned_total.inc()
            logger.info("Customer %s earned a free wash", after.customer_id)

        actions: list[PostCommitAction] = []
        if app_settings.notifications.order_completed:
            actions.append(PostCommitAction("notify_order_completed", lambda: notify_order_completed(dispatcher, after)))
        if earned and app_settings.notifications.free_wash_available:
            actions.append(PostCommitAction(
                "notify_free_wash_earned",
                lambda: notify_free_wash_earned(dispatcher, after.customer_id, washes_required),
            ))
        outcome.actions = await run_post_commit(actions, context=f"for order {after.id}")

    worker_id = after.worker_id
    if worker_id:
        outcome.actions += await run_post_commit(
            [PostCommitAction("update_worker_stats", lambda: _update_worker_completed(store, worker_id))],
            context=f"for order {after.id}",
        )
    return outcome


async def handle_order_cancelled(store: LedgerStore, before: Order | None, after: Order) -> HandlerOutcome | None:
    if not entered_cancelled(before.status if before else None, after.status):
        return None
    logger.info("Order cancelled: %s by %s (reason: %s)", after.id, after.cancelled_by, after.cancel_reason or "not given")
    outcome = HandlerOutcome(transition="cancelled", order_id=after.id)
    transitions_handled_total.labels(transition="cancelled").inc()

    try:
        # only a credit the create handler actually took is given back, whatever the order's flags say
        restore_credit = after.is_redemption and await _release_credit_marker(store, after.id)

        def decide(stats: CustomerStats) -> LedgerMutation:
            increments = {"cancelled_orders": 1}
            if restore_credit:
                increments["free_washes_available"] = 1
            return LedgerMutation(increments=increments, facts={"credit_restored": restore_credit})

        outcome.ledger = await ledger.execute(store, after.customer_id, decide)
        outcome.facts["credit_restored"] = restore_credit
        if restore_credit:
            free_washes_restored_total.inc()
            logger.info("Free wash restored for customer %s", after.customer_id)
    except Exception as e:
        await _record_error(store, outcome, "cancellation_error", e)

    record = OrderAuditRecord(
        order_id=after.id,
        customer_id=after.customer_id,
        cancelled_by=after.cancelled_by or "unknown",
        cancel_reason=after.cancel_reason,
        is_redemption=after.is_redemption,
        service_name=after.service_name,
    )
    outcome.actions = await run_post_commit(
        [PostCommitAction("append_audit", lambda: store.append_audit(record))],
        context=f"for order {after.id}",
    )
    return outcome


async def handle_rating_added(store: LedgerStore, before: Order | None, after: Order) -> HandlerOutcome | None:
    if not rating_added(before.rating if before else None, after.rating):
        return None
    logger.info("Rating added to order %s: %s stars", after.id, after.rating.stars)
    outcome = HandlerOutcome(transition="rating_added", order_id=after.id)
    transitions_handled_total.labels(transition="rating_added").inc()

    worker_id = after.worker_id
    if not worker_id:
        logger.warning("Order %s has no assigned worker", after.id)
        return outcome

    try:
        rated = await store.list_rated_completed_orders(worker_id)
        ratings = [o.rating for o in rated if o.rating is not None and o.rating.stars > 0]
        logger.info("Worker %s: %d ratings found", worker_id, len(ratings))
        if not ratings:
            logger.warning("No ratings found for worker %s, average not updated", worker_id)
            return outcome

        average = calculate_average_rating(ratings)
        if await store.update_worker_rating(worker_id, average, len(ratings)):
            logger.info("Worker %s average rating is now %.1f", worker_id, average)
        else:
            logger.warning("Worker %s not found, average rating not stored", worker_id)
        outcome.facts.update(average_rating=average, total_ratings=len(ratings))

        if after.rating.stars < LOW_RATING_THRESHOLD:
            logger.warning("Low rating on order %s (%d stars)", after.id, after.rating.stars)
            await store.create_alert(LowRatingAlert(
                order_id=after.id,
                worker_id=worker_id,
                worker_name=(after.worker.name if after.worker else None) or "Unknown",
                customer_id=after.customer_id,
                rating=after.rating.stars,
                comment=after.rating.comment,
            ))
            outcome.facts["alert_created"] = True
    except Exception as e:
        await _record_error(store, outcome, "rating_processing_error", e)
    return outcome


async def handle_change(
    change: OrderChange,
    store: LedgerStore,
    dispatcher: NotificationDispatcher,
    app_settings: AppSettings,
    publish: ChangePublisher,
) -> list[HandlerOutcome]:
    """Route one change message to every handler whose edge it represents."""
    if change.kind == "created":
        return [await handle_order_created(store, change.after, publish)]

    before, after = change.before, change.after
    if not is_observed_change_valid(before, after):
        events_rejected_invalid_transition_total.labels(
            current_state=before.status if before else "none",
            attempted_state=after.status,
        ).inc()
        logger.warning("Order %s moved %s -> %s, which the lifecycle does not allow", after.id, before.status, after.status)

    outcomes: list[HandlerOutcome] = []
    for edge in transitions_for(before, after):
        if edge == "completed":
            result = await handle_order_completed(store, dispatcher, app_settings, before, after)
        elif edge == "cancelled":
            result = await handle_order_cancelled(store, before, after)
        else:
            result = await handle_rating_added(store, before, after)
        if result is not None:
            outcomes.append(result)
    if not outcomes:
        logger.debug("Change %s for order %s has no new transition, skipped", change.event_id, change.order_id)
    return outcomes
