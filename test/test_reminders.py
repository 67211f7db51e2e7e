from datetime import timedelta

import pytest

from _helper import T0, RecordingDispatcher, make_customer, seeded_store
from washledger.app_settings import DEFAULT_APP_SETTINGS, AppSettings, NotificationSettings
from washledger.reminders import remind_inactive_customers

NOW = T0 + timedelta(days=100)


@pytest.mark.asyncio
async def test_reminds_inactive_customers_with_a_target():
    store = await seeded_store(
        make_customer("AAA111", completed_orders=3, last_visit=T0),
        make_customer("BBB222", completed_orders=6, free_washes_available=1, last_visit=T0),
        make_customer("CCC333", completed_orders=2, last_visit=T0, push_target=None),
        make_customer("DDD444", completed_orders=2, last_visit=NOW - timedelta(days=3)),
        make_customer("EEE555", completed_orders=0, last_visit=T0),
    )
    dispatcher = RecordingDispatcher(store)

    log = await remind_inactive_customers(store, dispatcher, DEFAULT_APP_SETTINGS, now=NOW, send_interval=0)

    assert log.total_found == 3
    assert log.total_with_target == 2
    assert log.successful == 2
    assert log.failed == 0
    assert sorted(dispatcher.types()) == ["free_wash_reminder", "inactive_reminder", "inactive_reminder"]
    assert "100 days" in dispatcher.sent[0]["body"]
    assert store.reminder_logs == [log]


@pytest.mark.asyncio
async def test_threshold_comes_from_app_settings():
    store = await seeded_store(make_customer(completed_orders=1, last_visit=NOW - timedelta(days=10)))
    dispatcher = RecordingDispatcher(store)
    settings = AppSettings(notifications=NotificationSettings(reminder_after_days=7))

    log = await remind_inactive_customers(store, dispatcher, settings, now=NOW, send_interval=0)

    assert log.reminder_after_days == 7
    assert log.successful == 1


@pytest.mark.asyncio
async def test_failures_are_logged_not_raised():
    store = await seeded_store(make_customer(completed_orders=1, last_visit=T0))
    dispatcher = RecordingDispatcher(store, fail=True)

    log = await remind_inactive_customers(store, dispatcher, DEFAULT_APP_SETTINGS, now=NOW, send_interval=0)

    assert log.failed == 1
    assert log.errors[0]["customer_id"] == "ABC123"
    assert len(store.reminder_logs) == 1


@pytest.mark.asyncio
async def test_store_failure_is_logged_then_raised():
    store = await seeded_store()

    async def broken(cutoff):
        raise RuntimeError("query failed")

    store.find_inactive_customers = broken
    with pytest.raises(RuntimeError):
        await remind_inactive_customers(store, RecordingDispatcher(store), DEFAULT_APP_SETTINGS, now=NOW, send_interval=0)
    assert store.reminder_logs[0].error == "query failed"
