from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event

from conftest import make_reminder
from nudge.reminders import repository as repo
from nudge.reminders.errors import SyncInconsistency
from nudge.reminders.models import QueueItem, QueueStatus, Reminder, ReminderStatus
from nudge.reminders.queue_sync import REMOVE, REMOVE_ROUTINE, SYNC, QueueSync
from nudge.reminders.windows import DAY_AHEAD, EXACT, NEAR

UTC = timezone.utc
NOW = datetime(2023, 1, 1, 12, 0, tzinfo=UTC)


@contextmanager
def capture_writes(engine):
    statements = []

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            statements.append(statement)

    event.listen(engine, "before_cursor_execute", before_cursor_execute)
    try:
        yield statements
    finally:
        event.remove(engine, "before_cursor_execute", before_cursor_execute)


def _items(db, reminder_id):
    db.expire_all()
    return {item.window_type: item for item in repo.list_queue_items(db, reminder_id)}


def test_sync_creates_one_pending_row_per_window(db, reminder_settings):
    trigger = NOW + timedelta(days=2)
    reminder = make_reminder(db, trigger, routine_id="routine-1")

    result = QueueSync(db, settings=reminder_settings).sync(reminder.id, now=NOW)

    assert (result.created, result.updated, result.removed) == (3, 0, 0)
    items = _items(db, reminder.id)
    assert set(items) == {DAY_AHEAD, NEAR, EXACT}
    assert items[DAY_AHEAD].scheduled_at == trigger - timedelta(hours=24)
    assert items[NEAR].scheduled_at == trigger - timedelta(hours=3)
    assert items[EXACT].scheduled_at == trigger
    for item in items.values():
        assert item.status == QueueStatus.PENDING
        assert item.next_attempt_at == item.scheduled_at
        assert item.owner_id == "user-1"
        assert item.routine_id == "routine-1"
    assert items[EXACT].tolerance_seconds == 0
    assert items[NEAR].tolerance_seconds == 180


def test_resync_of_unchanged_reminder_issues_no_writes(engine, db, reminder_settings):
    reminder = make_reminder(db, NOW + timedelta(days=2))
    sync = QueueSync(db, settings=reminder_settings)
    sync.sync(reminder.id, now=NOW)

    with capture_writes(engine) as writes:
        result = sync.sync(reminder.id, now=NOW)

    assert writes == []
    assert result.unchanged == 3
    assert not result.changed


def test_resync_leaves_sent_row_untouched(db, reminder_settings):
    reminder = make_reminder(db, NOW + timedelta(days=2))
    sync = QueueSync(db, settings=reminder_settings)
    sync.sync(reminder.id, now=NOW)

    item = _items(db, reminder.id)[DAY_AHEAD]
    item.status = QueueStatus.SENT
    item.attempts = 1
    item.channel_results = {"push": {"status": "sent", "error": None, "at": NOW.isoformat()}}
    db.commit()

    sync.sync(reminder.id, now=NOW)

    item = _items(db, reminder.id)[DAY_AHEAD]
    assert item.status == QueueStatus.SENT
    assert item.attempts == 1
    assert item.channel_results["push"]["status"] == "sent"


def test_rescheduled_reminder_resets_its_rows(db, reminder_settings):
    reminder = make_reminder(db, NOW + timedelta(days=2))
    sync = QueueSync(db, settings=reminder_settings)
    sync.sync(reminder.id, now=NOW)

    item = _items(db, reminder.id)[DAY_AHEAD]
    item.status = QueueStatus.FAILED_TERMINAL
    item.attempts = 3
    item.last_error = "push: gone"
    db.commit()

    new_trigger = NOW + timedelta(days=5)
    reminder.trigger_at = new_trigger
    db.commit()
    result = sync.sync(reminder.id, now=NOW)

    assert result.updated == 3
    items = _items(db, reminder.id)
    day_ahead = items[DAY_AHEAD]
    assert day_ahead.scheduled_at == new_trigger - timedelta(hours=24)
    assert day_ahead.next_attempt_at == day_ahead.scheduled_at
    assert day_ahead.status == QueueStatus.PENDING
    assert day_ahead.attempts == 0
    assert day_ahead.last_error is None
    assert day_ahead.channel_results == {}
    assert items[EXACT].scheduled_at == new_trigger


def test_completed_reminder_sync_removes_rows(db, reminder_settings):
    reminder = make_reminder(db, NOW + timedelta(days=2))
    sync = QueueSync(db, settings=reminder_settings)
    sync.sync(reminder.id, now=NOW)

    reminder.status = ReminderStatus.COMPLETED
    db.commit()
    result = sync.sync(reminder.id, now=NOW)

    assert result.removed == 3
    assert _items(db, reminder.id) == {}


def test_snoozed_reminder_keeps_its_rows(db, reminder_settings):
    reminder = make_reminder(db, NOW + timedelta(days=2), status=ReminderStatus.SNOOZED)
    result = QueueSync(db, settings=reminder_settings).sync(reminder.id, now=NOW)

    assert result.created == 3


def test_missing_reminder_sync_removes_rows(db, reminder_settings):
    reminder = make_reminder(db, NOW + timedelta(days=2))
    sync = QueueSync(db, settings=reminder_settings)
    sync.sync(reminder.id, now=NOW)
    reminder_id = reminder.id

    db.delete(reminder)
    db.commit()

    assert sync.sync(reminder_id, now=NOW).removed == 3
    assert _items(db, reminder_id) == {}


def test_remove_is_idempotent(db, reminder_settings):
    reminder = make_reminder(db, NOW + timedelta(days=2))
    sync = QueueSync(db, settings=reminder_settings)
    sync.sync(reminder.id, now=NOW)

    assert sync.remove(reminder.id) == 3
    assert sync.remove(reminder.id) == 0


def _routine_fixture(db, sync):
    past = make_reminder(db, NOW - timedelta(hours=2), routine_id="routine-1")
    completed = make_reminder(
        db, NOW + timedelta(days=1), routine_id="routine-1", status=ReminderStatus.COMPLETED
    )
    future = [
        make_reminder(db, NOW + timedelta(days=days), routine_id="routine-1") for days in (1, 2)
    ]
    other = make_reminder(db, NOW + timedelta(days=1), routine_id="routine-2")
    for reminder in [past, *future, other]:
        sync.sync(reminder.id, now=NOW - timedelta(days=2))
    # Completed reminders had rows before they were completed
    db.add(
        QueueItem(
            reminder_id=completed.id,
            owner_id="user-1",
            routine_id="routine-1",
            window_type=EXACT,
            scheduled_at=completed.trigger_at,
            next_attempt_at=completed.trigger_at,
            status=QueueStatus.SENT,
            channel_results={},
        )
    )
    db.commit()
    return past, completed, future, other


def test_remove_routine_with_future_reminders_deleted(db, reminder_settings):
    sync = QueueSync(db, settings=reminder_settings)
    past, completed, future, other = _routine_fixture(db, sync)
    future_ids = [r.id for r in future]

    result = sync.remove_routine("routine-1", delete_future_reminders=True, now=NOW)

    assert result.deleted_reminders == 2
    assert result.removed_queue_items == 9
    db.expire_all()
    for reminder_id in future_ids:
        assert repo.get_reminder(db, reminder_id) is None
        assert _items(db, reminder_id) == {}
    # Past and completed reminders survive; only their unsent rows go
    assert repo.get_reminder(db, past.id) is not None
    assert _items(db, past.id) == {}
    assert repo.get_reminder(db, completed.id).status == ReminderStatus.COMPLETED
    assert len(_items(db, completed.id)) == 1
    assert len(_items(db, other.id)) == 3


def test_remove_routine_with_flag_stops_past_trigger_reminder(db, reminder_settings):
    sync = QueueSync(db, settings=reminder_settings)
    overdue = make_reminder(db, NOW - timedelta(hours=1), routine_id="routine-1")
    sync.sync(overdue.id, now=NOW - timedelta(days=2))
    sent = _items(db, overdue.id)[DAY_AHEAD]
    sent.status = QueueStatus.SENT
    db.commit()

    result = sync.remove_routine("routine-1", delete_future_reminders=True, now=NOW)

    assert (result.removed_queue_items, result.deleted_reminders) == (2, 0)
    assert repo.get_reminder(db, overdue.id) is not None
    assert set(_items(db, overdue.id)) == {DAY_AHEAD}


def test_remove_routine_without_flag_keeps_reminders_and_sent_rows(db, reminder_settings):
    sync = QueueSync(db, settings=reminder_settings)
    past, completed, future, other = _routine_fixture(db, sync)

    sent = _items(db, future[0].id)[DAY_AHEAD]
    sent.status = QueueStatus.SENT
    db.commit()

    result = sync.remove_routine("routine-1", delete_future_reminders=False, now=NOW)

    assert result.deleted_reminders == 0
    assert result.removed_queue_items == 8
    assert repo.get_reminder(db, future[0].id) is not None
    assert set(_items(db, future[0].id)) == {DAY_AHEAD}
    assert _items(db, future[1].id) == {}
    assert _items(db, past.id) == {}
    # Completed reminders and other routines keep their rows
    assert len(_items(db, completed.id)) == 1
    assert len(_items(db, other.id)) == 3


def test_apply_dispatches_actions(db, reminder_settings):
    reminder = make_reminder(db, NOW + timedelta(days=2), routine_id="routine-1")
    sync = QueueSync(db, settings=reminder_settings)

    assert sync.apply(SYNC, reminder_id=reminder.id, now=NOW)["created"] == 3
    assert sync.apply(
        REMOVE_ROUTINE, routine_id="routine-1", delete_future_reminders=True, now=NOW
    ) == {"removed_queue_items": 3, "deleted_reminders": 1}
    assert sync.apply(REMOVE, reminder_id=reminder.id) == {"removed": 0}


@pytest.mark.parametrize(
    "action, kwargs",
    [
        ("explode", {"reminder_id": "r-1"}),
        (SYNC, {}),
        (REMOVE, {"routine_id": "routine-1"}),
        (REMOVE_ROUTINE, {"reminder_id": "r-1"}),
    ],
)
def test_apply_rejects_bad_requests(db, reminder_settings, action, kwargs):
    with pytest.raises(ValueError, match="Invalid action or missing params"):
        QueueSync(db, settings=reminder_settings).apply(action, **kwargs)


def test_resolve_reminder_raises_for_orphan(db, reminder_settings):
    item = QueueItem(
        id="item-1",
        reminder_id="ghost",
        owner_id="user-1",
        window_type=EXACT,
        scheduled_at=NOW,
        next_attempt_at=NOW,
    )
    with pytest.raises(SyncInconsistency) as exc_info:
        QueueSync(db, settings=reminder_settings).resolve_reminder(item)
    assert exc_info.value.reminder_id == "ghost"
    assert exc_info.value.queue_item_id == "item-1"


def test_reconcile_creates_missing_rows_and_skips_old_reminders(db, reminder_settings):
    upcoming = make_reminder(db, NOW + timedelta(days=1))
    recent = make_reminder(db, NOW - timedelta(hours=1))
    ancient = make_reminder(db, NOW - timedelta(days=3))

    result = QueueSync(db, settings=reminder_settings).reconcile(now=NOW)

    assert result.reminders_synced == 2
    assert result.created == 6
    assert len(_items(db, upcoming.id)) == 3
    assert len(_items(db, recent.id)) == 3
    assert _items(db, ancient.id) == {}


def test_reconcile_removes_orphaned_rows(db, reminder_settings):
    sync = QueueSync(db, settings=reminder_settings)
    gone = make_reminder(db, NOW + timedelta(days=1))
    done = make_reminder(db, NOW + timedelta(days=1))
    sync.sync(gone.id, now=NOW)
    sync.sync(done.id, now=NOW)
    gone_id = gone.id

    # Mutations that bypassed the sync trigger
    db.delete(gone)
    done.status = ReminderStatus.COMPLETED
    db.commit()

    result = sync.reconcile(now=NOW)

    assert result.orphans_removed == 6
    assert _items(db, gone_id) == {}
    assert _items(db, done.id) == {}


@pytest.mark.parametrize(
    "attempts, expected_status",
    [(0, QueueStatus.FAILED_RETRYABLE), (2, QueueStatus.FAILED_TERMINAL)],
)
def test_reconcile_releases_stale_claims(db, reminder_settings, attempts, expected_status):
    reminder = make_reminder(db, NOW + timedelta(days=1))
    sync = QueueSync(db, settings=reminder_settings)
    sync.sync(reminder.id, now=NOW)

    items = _items(db, reminder.id)
    stuck = items[DAY_AHEAD]
    stuck.status = QueueStatus.CLAIMED
    stuck.claimed_at = NOW - timedelta(minutes=30)
    stuck.attempts = attempts
    fresh = items[NEAR]
    fresh.status = QueueStatus.CLAIMED
    fresh.claimed_at = NOW - timedelta(minutes=1)
    db.commit()

    result = sync.reconcile(now=NOW)

    assert result.claims_released == 1
    items = _items(db, reminder.id)
    assert items[DAY_AHEAD].status == expected_status
    assert items[DAY_AHEAD].attempts == attempts + 1
    assert items[DAY_AHEAD].last_error == "claim_timeout"
    assert items[DAY_AHEAD].claimed_at is None
    assert items[DAY_AHEAD].next_attempt_at == NOW
    assert items[NEAR].status == QueueStatus.CLAIMED


def test_reminder_model_defaults(db):
    reminder = Reminder(owner_id="user-1", trigger_at=NOW)
    db.add(reminder)
    db.commit()

    assert reminder.id
    assert reminder.status == ReminderStatus.PENDING
    assert reminder.channels == ["push"]
    assert reminder.trigger_at == NOW
