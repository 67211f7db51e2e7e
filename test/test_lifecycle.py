import pytest

from _helper import PLATE, RecordingDispatcher, RecordingPublisher, make_customer, make_order, seeded_store
from washledger.app_settings import DEFAULT_APP_SETTINGS, AppSettings, NotificationSettings
from washledger.changes import created_change, updated_change
from washledger.lifecycle import (
    ACTIVE_ORDER_EXISTS,
    NO_FREE_WASHES,
    handle_change,
    handle_order_completed,
    handle_order_created,
)
from washledger.models import Rating


async def _place(store, publish, order):
    order = await store.insert_order(order)
    return await handle_order_created(store, order, publish)


async def _complete(store, dispatcher, order_id, app_settings=DEFAULT_APP_SETTINGS, **fields):
    current = await store.get_order(order_id)
    if not current.is_redemption:
        fields.setdefault("payment_method", "cash")
    before, after = await store.transition_order(order_id, "completed", fields)
    outcomes = await handle_change(updated_change(before, after), store, dispatcher, app_settings, RecordingPublisher())
    return before, after, outcomes


async def _cancel(store, dispatcher, order_id, by="customer"):
    before, after = await store.transition_order(order_id, "cancelled", {"cancelled_by": by})
    return await handle_change(updated_change(before, after), store, dispatcher, DEFAULT_APP_SETTINGS, RecordingPublisher())


@pytest.mark.asyncio
async def test_sixth_paid_completion_earns_a_credit_and_notifies():
    store = await seeded_store(make_customer(completed_orders=5, total_orders=5))
    dispatcher = RecordingDispatcher(store)
    await _place(store, RecordingPublisher(), make_order("o6"))

    _, _, outcomes = await _complete(store, dispatcher, "o6")

    stats = (await store.get_customer(PLATE)).stats
    assert stats.completed_orders == 6
    assert stats.free_washes_available == 1
    assert stats.total_orders == 6
    assert outcomes[0].facts["earned_free_wash"] is True
    assert dispatcher.types() == ["order_completed", "free_wash_earned"]
    assert (await store.get_worker("w1")).stats.total_orders_completed == 1


@pytest.mark.asyncio
async def test_fifth_completion_earns_nothing():
    store = await seeded_store(make_customer(completed_orders=4))
    dispatcher = RecordingDispatcher(store)
    await _place(store, RecordingPublisher(), make_order())

    await _complete(store, dispatcher, "o1")

    stats = (await store.get_customer(PLATE)).stats
    assert stats.completed_orders == 5
    assert stats.free_washes_available == 0
    assert dispatcher.types() == ["order_completed"]


@pytest.mark.asyncio
async def test_redemption_deducts_at_creation_and_does_not_count_on_completion():
    store = await seeded_store(make_customer(completed_orders=6, free_washes_available=1))
    dispatcher = RecordingDispatcher(store)
    publish = RecordingPublisher()

    outcome = await _place(store, publish, make_order(is_redemption=True))
    assert outcome.facts["redeemed"] is True
    assert (await store.get_customer(PLATE)).stats.free_washes_available == 0
    assert (await store.get_order("o1")).credit_deducted is True
    assert publish.changes == []

    await _complete(store, dispatcher, "o1")

    stats = (await store.get_customer(PLATE)).stats
    assert stats.completed_orders == 6
    assert stats.free_washes_available == 0
    assert stats.last_visit is not None
    assert "free_wash_earned" not in dispatcher.types()


@pytest.mark.asyncio
async def test_cancelling_a_redemption_restores_the_credit():
    store = await seeded_store(make_customer(completed_orders=6, free_washes_available=1))
    dispatcher = RecordingDispatcher(store)
    await _place(store, RecordingPublisher(), make_order(is_redemption=True))

    await _cancel(store, dispatcher, "o1")

    stats = (await store.get_customer(PLATE)).stats
    assert stats.free_washes_available == 1
    assert stats.cancelled_orders == 1
    assert (await store.get_order("o1")).credit_deducted is False
    assert len(store.audit_log) == 1
    assert store.audit_log[0].is_redemption is True
    assert store.audit_log[0].cancelled_by == "customer"


@pytest.mark.asyncio
async def test_redemption_cancelled_before_it_was_processed_takes_and_returns_nothing():
    store = await seeded_store(make_customer(free_washes_available=0))
    dispatcher = RecordingDispatcher(store)
    publish = RecordingPublisher()
    order = await store.insert_order(make_order(is_redemption=True))
    before, after = await store.transition_order(order.id, "cancelled", {"cancelled_by": "customer"})

    await handle_change(created_change(order), store, dispatcher, DEFAULT_APP_SETTINGS, publish)
    await handle_change(updated_change(before, after), store, dispatcher, DEFAULT_APP_SETTINGS, publish)

    stats = (await store.get_customer(PLATE)).stats
    assert stats.free_washes_available == 0
    assert stats.total_orders == 1
    assert stats.cancelled_orders == 1
    stored = await store.get_order(order.id)
    assert stored.processing_error is None
    assert stored.cancelled_by == "customer"
    assert publish.changes == []


@pytest.mark.asyncio
async def test_early_cancel_leaves_an_available_credit_untouched():
    store = await seeded_store(make_customer(free_washes_available=1))
    dispatcher = RecordingDispatcher(store)
    order = await store.insert_order(make_order(is_redemption=True))
    before, after = await store.transition_order(order.id, "cancelled", {"cancelled_by": "customer"})

    outcome = (await handle_change(created_change(order), store, dispatcher, DEFAULT_APP_SETTINGS, RecordingPublisher()))[0]
    assert outcome.facts["redeemed"] is False
    assert (await store.get_customer(PLATE)).stats.free_washes_available == 1

    await handle_change(updated_change(before, after), store, dispatcher, DEFAULT_APP_SETTINGS, RecordingPublisher())
    assert (await store.get_customer(PLATE)).stats.free_washes_available == 1


@pytest.mark.asyncio
async def test_cancel_handled_while_the_credit_was_being_taken_returns_it_once():
    store = await seeded_store(make_customer(free_washes_available=1))
    dispatcher = RecordingDispatcher(store)
    mark_credit = store.set_credit_deducted
    interleaved = []

    async def cancel_before_marking(order_id, deducted):
        if deducted and not interleaved:
            interleaved.append(order_id)
            await _cancel(store, dispatcher, order_id)
        return await mark_credit(order_id, deducted)

    store.set_credit_deducted = cancel_before_marking
    outcome = await _place(store, RecordingPublisher(), make_order(is_redemption=True))

    assert interleaved == ["o1"]
    assert outcome.error is None
    assert outcome.facts["credit_restored"] is True
    stats = (await store.get_customer(PLATE)).stats
    assert stats.free_washes_available == 1
    assert stats.cancelled_orders == 1
    assert (await store.get_order("o1")).credit_deducted is False


@pytest.mark.asyncio
async def test_cancel_for_unknown_customer_is_recorded_and_still_audited():
    store = await seeded_store()
    order = await store.insert_order(make_order(customer_id="XYZ999"))

    outcomes = await _cancel(store, RecordingDispatcher(store), order.id)

    assert outcomes[0].error
    stored = await store.get_order(order.id)
    assert stored.cancellation_error
    assert stored.cancellation_error_at is not None
    assert [r.order_id for r in store.audit_log] == [order.id]


@pytest.mark.asyncio
async def test_cancelling_a_paid_order_restores_nothing():
    store = await seeded_store(make_customer(free_washes_available=2))
    await _place(store, RecordingPublisher(), make_order())

    await _cancel(store, RecordingDispatcher(store), "o1", by="worker")

    stats = (await store.get_customer(PLATE)).stats
    assert stats.free_washes_available == 2
    assert stats.cancelled_orders == 1


@pytest.mark.asyncio
async def test_late_observation_of_a_completed_order_changes_nothing():
    store = await seeded_store(make_customer(completed_orders=5))
    dispatcher = RecordingDispatcher(store)
    await _place(store, RecordingPublisher(), make_order())
    _, after, _ = await _complete(store, dispatcher, "o1")
    sent = len(dispatcher.sent)

    outcomes = await handle_change(updated_change(after, after), store, dispatcher, DEFAULT_APP_SETTINGS, RecordingPublisher())

    assert outcomes == []
    stats = (await store.get_customer(PLATE)).stats
    assert stats.completed_orders == 6
    assert stats.free_washes_available == 1
    assert len(dispatcher.sent) == sent


@pytest.mark.asyncio
async def test_redemption_without_credit_is_cancelled_by_the_system():
    store = await seeded_store(make_customer(free_washes_available=0))
    publish = RecordingPublisher()

    outcome = await _place(store, publish, make_order(is_redemption=True))

    assert outcome.facts["force_cancelled"] == NO_FREE_WASHES
    order = await store.get_order("o1")
    assert order.status == "cancelled"
    assert order.cancelled_by == "system"
    assert order.cancel_reason == NO_FREE_WASHES
    assert order.is_redemption is False
    assert (await store.get_customer(PLATE)).stats.total_orders == 1

    # the system cancel flows through the cancel handler without creating a credit
    assert len(publish.changes) == 1
    await handle_change(publish.changes[0], store, RecordingDispatcher(store), DEFAULT_APP_SETTINGS, RecordingPublisher())
    stats = (await store.get_customer(PLATE)).stats
    assert stats.free_washes_available == 0
    assert stats.cancelled_orders == 1


@pytest.mark.asyncio
async def test_second_active_order_is_cancelled_without_touching_the_ledger():
    store = await seeded_store(make_customer(free_washes_available=1))
    publish = RecordingPublisher()
    await _place(store, publish, make_order("first"))

    outcome = await _place(store, publish, make_order("second", is_redemption=True))

    assert outcome.facts["force_cancelled"] == ACTIVE_ORDER_EXISTS
    assert (await store.get_order("second")).cancel_reason == ACTIVE_ORDER_EXISTS
    assert (await store.get_order("first")).status == "pending"
    stats = (await store.get_customer(PLATE)).stats
    assert stats.total_orders == 1
    assert stats.free_washes_available == 1


@pytest.mark.asyncio
async def test_second_order_already_cancelled_by_the_customer_is_left_alone():
    store = await seeded_store(make_customer(free_washes_available=0))
    dispatcher = RecordingDispatcher(store)
    publish = RecordingPublisher()
    await _place(store, publish, make_order("first"))
    second = await store.insert_order(make_order("second", is_redemption=True))
    before, after = await store.transition_order("second", "cancelled", {"cancelled_by": "customer", "cancel_reason": "changed my mind"})

    outcome = await handle_order_created(store, second, publish)

    assert outcome.error is None
    assert "force_cancelled" not in outcome.facts
    stored = await store.get_order("second")
    assert stored.processing_error is None
    assert stored.cancelled_by == "customer"
    assert stored.cancel_reason == "changed my mind"
    assert publish.changes == []

    await handle_change(updated_change(before, after), store, dispatcher, DEFAULT_APP_SETTINGS, publish)
    stats = (await store.get_customer(PLATE)).stats
    assert stats.free_washes_available == 0
    assert stats.cancelled_orders == 1


@pytest.mark.asyncio
async def test_create_failure_is_recorded_and_keeps_the_applied_ledger_change():
    store = await seeded_store(make_customer(free_washes_available=0))

    async def broken_publish(change):
        raise RuntimeError("queue unavailable")

    outcome = await _place(store, broken_publish, make_order(is_redemption=True))

    assert outcome.error == "queue unavailable"
    stored = await store.get_order("o1")
    assert stored.processing_error == "queue unavailable"
    assert stored.processing_error_at is not None
    # the visit was counted and the system cancel written before the publish failed
    assert stored.status == "cancelled"
    assert (await store.get_customer(PLATE)).stats.total_orders == 1


@pytest.mark.asyncio
async def test_created_change_routes_to_the_create_handler():
    store = await seeded_store()
    order = await store.insert_order(make_order())

    outcomes = await handle_change(created_change(order), store, RecordingDispatcher(store), DEFAULT_APP_SETTINGS, RecordingPublisher())

    assert [o.transition for o in outcomes] == ["created"]
    assert (await store.get_customer(PLATE)).stats.total_orders == 1


@pytest.mark.asyncio
async def test_completion_for_unknown_customer_is_recorded_on_the_order():
    store = await seeded_store(workers=("w1",))
    order = await store.insert_order(make_order(customer_id="XYZ999"))
    before, after = await store.transition_order(order.id, "completed", {"payment_method": "card"})

    outcome = await handle_order_completed(store, RecordingDispatcher(store), DEFAULT_APP_SETTINGS, before, after)

    assert outcome.error
    stored = await store.get_order(order.id)
    assert stored.completion_error
    assert stored.completion_error_at is not None
    # worker stats do not depend on the ledger
    assert (await store.get_worker("w1")).stats.total_orders_completed == 1


@pytest.mark.asyncio
async def test_notification_failures_do_not_undo_the_credit():
    store = await seeded_store(make_customer(completed_orders=5))
    dispatcher = RecordingDispatcher(store, fail=True)
    await _place(store, RecordingPublisher(), make_order())

    _, _, outcomes = await _complete(store, dispatcher, "o1")

    assert (await store.get_customer(PLATE)).stats.free_washes_available == 1
    assert outcomes[0].error is None
    assert [a.ok for a in outcomes[0].actions] == [False, False, True]


@pytest.mark.asyncio
async def test_notification_toggles_are_respected():
    store = await seeded_store(make_customer(completed_orders=5))
    dispatcher = RecordingDispatcher(store)
    quiet = AppSettings(notifications=NotificationSettings(order_completed=False, free_wash_available=False))
    await _place(store, RecordingPublisher(), make_order())

    await _complete(store, dispatcher, "o1", app_settings=quiet)

    assert dispatcher.sent == []
    assert (await store.get_customer(PLATE)).stats.free_washes_available == 1


@pytest.mark.asyncio
async def test_custom_threshold():
    store = await seeded_store(make_customer(completed_orders=2))
    await _place(store, RecordingPublisher(), make_order())

    await _complete(store, RecordingDispatcher(store), "o1", app_settings=AppSettings(washes_required_for_free=3))

    assert (await store.get_customer(PLATE)).stats.free_washes_available == 1


@pytest.mark.asyncio
async def test_low_rating_updates_worker_average_and_raises_an_alert():
    store = await seeded_store()
    dispatcher = RecordingDispatcher(store)
    for order_id, stars in (("a", 5), ("b", 2)):
        await store.insert_order(make_order(order_id))
        await store.transition_order(order_id, "completed", {"payment_method": "cash"})
        before, after = await store.add_rating(order_id, Rating(stars=stars, comment="meh" if stars < 3 else None))
        await handle_change(updated_change(before, after), store, dispatcher, DEFAULT_APP_SETTINGS, RecordingPublisher())

    worker = await store.get_worker("w1")
    assert worker.stats.average_rating == 3.5
    assert worker.stats.total_ratings == 2
    assert len(store.alerts) == 1
    assert store.alerts[0].order_id == "b"
    assert store.alerts[0].rating == 2
    assert store.alerts[0].comment == "meh"


@pytest.mark.asyncio
async def test_rating_on_an_order_without_worker_is_ignored():
    store = await seeded_store()
    await store.insert_order(make_order(worker_id=None))
    await store.transition_order("o1", "completed", {"payment_method": "cash"})
    before, after = await store.add_rating("o1", Rating(stars=1))

    outcomes = await handle_change(updated_change(before, after), store, RecordingDispatcher(store), DEFAULT_APP_SETTINGS, RecordingPublisher())

    assert [o.transition for o in outcomes] == ["rating_added"]
    assert store.alerts == []
