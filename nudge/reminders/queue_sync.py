"""
Keeps notification_queue rows consistent with the reminders they announce.

Every operation is idempotent and safe to run out of order. Callers trigger it
fire-and-forget after a mutation; ``reconcile`` is the periodic backstop that repairs
whatever a missed trigger left behind.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import repository as repo
from .config import settings as default_settings, ReminderSettings
from .errors import SyncInconsistency
from .metrics import queue_items_removed_total, queue_orphans_total, queue_syncs_total
from .models import QueueItem, QueueStatus, Reminder
from .windows import Window, WindowCalculator
from nudge.utils.timezone import to_utc_aware, utcnow

logger = logging.getLogger(__name__)

# Sync trigger actions
SYNC = "sync"
REMOVE = "remove"
REMOVE_ROUTINE = "removeRoutine"
ACTIONS = (SYNC, REMOVE, REMOVE_ROUTINE)


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.removed)


@dataclass
class RoutineRemovalResult:
    removed_queue_items: int = 0
    deleted_reminders: int = 0


@dataclass
class ReconcileResult:
    reminders_synced: int = 0
    created: int = 0
    updated: int = 0
    orphans_removed: int = 0
    claims_released: int = 0
    errors: int = 0


class QueueSync:
    def __init__(
        self,
        db: Session,
        calculator: Optional[WindowCalculator] = None,
        settings: ReminderSettings = default_settings,
    ):
        self.db = db
        self.settings = settings
        self.calculator = calculator or WindowCalculator(settings=settings)

    def sync(self, reminder_id: str, now: Optional[datetime] = None) -> SyncResult:
        """Upsert one queue row per window of the reminder.

        Rows whose scheduled_at already matches are left alone whatever their status, so
        re-syncing a stable reminder issues no writes. A missing or completed reminder is
        treated as a removal.
        """
        reminder = repo.get_reminder(self.db, reminder_id)
        if reminder is None or not reminder.is_active:
            removed = self.remove(reminder_id)
            return SyncResult(removed=removed)

        for attempt in (1, 2):
            try:
                result = self._apply_windows(reminder)
                break
            except IntegrityError:
                # A concurrent sync inserted the same (reminder, window) first
                self.db.rollback()
                if attempt == 2:
                    raise
                logger.info(f"[QueueSync] Insert race on reminder {reminder_id}, re-reading")

        queue_syncs_total.labels(action="sync").inc()
        if result.changed:
            logger.info(
                f"[QueueSync] Synced reminder {reminder_id}: created={result.created} "
                f"updated={result.updated} removed={result.removed}"
            )
        return result

    def _apply_windows(self, reminder: Reminder) -> SyncResult:
        result = SyncResult()
        existing = {item.window_type: item for item in repo.list_queue_items(self.db, reminder.id)}

        for window in self.calculator.calculate(reminder.trigger_at):
            item = existing.pop(window.window_type, None)
            if item is None:
                self.db.add(self._new_item(reminder, window))
                result.created += 1
            elif to_utc_aware(item.scheduled_at) == window.scheduled_at:
                if item.routine_id != reminder.routine_id:
                    item.routine_id = reminder.routine_id
                    result.updated += 1
                else:
                    result.unchanged += 1
            else:
                self._reset_item(item, reminder, window)
                result.updated += 1

        # Window types no longer produced by the policy
        for item in existing.values():
            self.db.delete(item)
            result.removed += 1

        if result.changed:
            self.db.commit()
        return result

    @staticmethod
    def _new_item(reminder: Reminder, window: Window) -> QueueItem:
        return QueueItem(
            reminder_id=reminder.id,
            owner_id=reminder.owner_id,
            routine_id=reminder.routine_id,
            window_type=window.window_type,
            scheduled_at=window.scheduled_at,
            superseded_at=window.superseded_at,
            tolerance_seconds=int(window.tolerance.total_seconds()),
            next_attempt_at=window.scheduled_at,
            status=QueueStatus.PENDING,
            attempts=0,
            channel_results={},
        )

    @staticmethod
    def _reset_item(item: QueueItem, reminder: Reminder, window: Window) -> None:
        item.owner_id = reminder.owner_id
        item.routine_id = reminder.routine_id
        item.scheduled_at = window.scheduled_at
        item.superseded_at = window.superseded_at
        item.tolerance_seconds = int(window.tolerance.total_seconds())
        item.next_attempt_at = window.scheduled_at
        item.status = QueueStatus.PENDING
        item.attempts = 0
        item.last_error = None
        item.channel_results = {}
        item.claimed_at = None

    def remove(self, reminder_id: str) -> int:
        """Delete every queue row of the reminder."""
        removed = repo.delete_queue_items(self.db, [reminder_id])
        self.db.commit()
        queue_syncs_total.labels(action="remove").inc()
        if removed:
            queue_items_removed_total.inc(removed)
            logger.info(f"[QueueSync] Removed {removed} queue items for reminder {reminder_id}")
        return removed

    def remove_routine(
        self,
        routine_id: str,
        delete_future_reminders: bool = False,
        now: Optional[datetime] = None,
    ) -> RoutineRemovalResult:
        """Stop the routine's notifications.

        The unsent rows of every reminder still linked to the routine are deleted, past
        triggers included; sent rows stay so a later re-sync cannot deliver them again.
        ``delete_future_reminders`` additionally deletes the routine's active reminders
        that have not triggered yet, with all of their rows. Past or completed reminders
        are never deleted.
        """
        now = to_utc_aware(now) if now else utcnow()
        result = RoutineRemovalResult()
        for item in repo.list_routine_queue_items(self.db, routine_id):
            if item.status != QueueStatus.SENT:
                self.db.delete(item)
                result.removed_queue_items += 1
        if delete_future_reminders:
            self.db.flush()
            future = repo.list_routine_reminders(self.db, routine_id, active_only=True, after=now)
            future_ids = [reminder.id for reminder in future]
            result.removed_queue_items += repo.delete_queue_items(self.db, future_ids)
            result.deleted_reminders = repo.delete_reminders(self.db, future_ids)
        self.db.commit()

        queue_syncs_total.labels(action="remove_routine").inc()
        queue_items_removed_total.inc(result.removed_queue_items)
        logger.info(
            f"[QueueSync] Removed routine {routine_id}: queue_items={result.removed_queue_items} "
            f"reminders={result.deleted_reminders}"
        )
        return result

    def apply(
        self,
        action: str,
        reminder_id: Optional[str] = None,
        routine_id: Optional[str] = None,
        delete_future_reminders: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Run one sync-trigger action and return its counters.

        Raises ValueError for an unknown action or a missing id.
        """
        if action == SYNC and reminder_id:
            return asdict(self.sync(reminder_id, now=now))
        if action == REMOVE and reminder_id:
            return {"removed": self.remove(reminder_id)}
        if action == REMOVE_ROUTINE and routine_id:
            return asdict(self.remove_routine(routine_id, delete_future_reminders, now=now))
        raise ValueError("Invalid action or missing params")

    def resolve_reminder(self, item: QueueItem) -> Reminder:
        """Return the active reminder behind a queue row or raise SyncInconsistency."""
        reminder = repo.get_reminder(self.db, item.reminder_id)
        if reminder is None or not reminder.is_active:
            raise SyncInconsistency(item.reminder_id, item.id)
        return reminder

    def reconcile(self, now: Optional[datetime] = None) -> ReconcileResult:
        """Full sweep: re-sync active reminders, drop orphans, release stuck claims."""
        now = to_utc_aware(now) if now else utcnow()
        result = ReconcileResult()

        since = now - timedelta(hours=self.settings.RECONCILE_LOOKBACK_HOURS)
        for reminder in repo.list_active_reminders(self.db, since=since):
            reminder_id = reminder.id
            try:
                synced = self.sync(reminder_id, now=now)
            except Exception:
                self.db.rollback()
                result.errors += 1
                logger.exception(f"[QueueSync] Reconcile failed for reminder {reminder_id}")
                continue
            result.reminders_synced += 1
            result.created += synced.created
            result.updated += synced.updated

        for item in repo.list_orphaned_queue_items(self.db):
            try:
                self.resolve_reminder(item)
            except SyncInconsistency as exc:
                logger.warning(f"[QueueSync] {exc}; deleting orphaned row")
                self.db.delete(item)
                result.orphans_removed += 1
        if result.orphans_removed:
            self.db.commit()
            queue_orphans_total.inc(result.orphans_removed)
            queue_items_removed_total.inc(result.orphans_removed)

        result.claims_released = self._release_stale_claims(now)

        logger.info(
            f"[QueueSync] Reconcile done: synced={result.reminders_synced} created={result.created} "
            f"updated={result.updated} orphans={result.orphans_removed} "
            f"released={result.claims_released} errors={result.errors}"
        )
        return result

    def _release_stale_claims(self, now: datetime) -> int:
        cutoff = now - timedelta(minutes=self.settings.CLAIM_TIMEOUT_MINUTES)
        released = 0
        for item in repo.list_stale_claims(self.db, cutoff):
            attempts = (item.attempts or 0) + 1
            exhausted = attempts >= self.settings.MAX_ATTEMPTS
            status = QueueStatus.FAILED_TERMINAL if exhausted else QueueStatus.FAILED_RETRYABLE
            # Conditional on the observed claim so a slow but live run keeps its item
            outcome = self.db.execute(
                update(QueueItem)
                .where(
                    QueueItem.id == item.id,
                    QueueItem.status == QueueStatus.CLAIMED,
                    QueueItem.claimed_at == item.claimed_at,
                )
                .values(
                    status=status,
                    attempts=attempts,
                    last_error="claim_timeout",
                    next_attempt_at=now,
                    claimed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 1:
                released += 1
                logger.warning(f"[QueueSync] Released stale claim on queue item {item.id} -> {status}")
        self.db.commit()
        return released
