"""
Materialises routine occurrences into concrete Reminder rows.

Reminder ids are derived from (routine, occurrence instant), so generating the same
window twice is a no-op. Every created reminder is synced into the queue.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from . import repository as repo
from .config import settings as default_settings, ReminderSettings
from .errors import RecurrenceError
from .metrics import routine_reminders_created_total
from .models import Channel, Reminder, ReminderStatus, Routine
from .queue_sync import QueueSync
from .recurrence import RecurrenceExpander
from nudge.utils.timezone import to_utc_aware, utcnow

logger = logging.getLogger(__name__)

# Sync trigger action handled here rather than by QueueSync
REGENERATE_ROUTINE = "regenerateRoutine"


def occurrence_id(routine_id: str, trigger_at: datetime) -> str:
    key = f"{routine_id}:{to_utc_aware(trigger_at).isoformat()}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


@dataclass
class GenerationResult:
    routines: int = 0
    created: int = 0
    deleted: int = 0
    errors: int = 0


class RoutineGenerator:
    def __init__(
        self,
        db: Session,
        expander: Optional[RecurrenceExpander] = None,
        queue_sync: Optional[QueueSync] = None,
        settings: ReminderSettings = default_settings,
    ):
        self.db = db
        self.settings = settings
        self.expander = expander or RecurrenceExpander(settings.RECURRENCE_MAX_OCCURRENCES)
        self.queue_sync = queue_sync or QueueSync(db, settings=settings)

    @property
    def lookahead(self) -> timedelta:
        return timedelta(hours=self.settings.ROUTINE_LOOKAHEAD_HOURS)

    def generate_for_routine(self, routine: Routine, now: Optional[datetime] = None) -> List[Reminder]:
        """Create the missing reminders of one routine inside the lookahead.

        Raises RecurrenceError before anything is written when the rule is malformed.
        """
        now = to_utc_aware(now) if now else utcnow()
        occurrences = self.expander.expand_routine(routine, now, horizon=self.lookahead)

        created = []
        for trigger_at in occurrences:
            reminder_id = occurrence_id(routine.id, trigger_at)
            if repo.get_reminder(self.db, reminder_id) is not None:
                continue
            reminder = Reminder(
                id=reminder_id,
                owner_id=routine.owner_id,
                title=routine.title,
                notes=routine.notes,
                trigger_at=trigger_at,
                timezone=routine.timezone or "UTC",
                status=ReminderStatus.PENDING,
                routine_id=routine.id,
                channels=list(routine.channels or [Channel.PUSH]),
            )
            self.db.add(reminder)
            created.append(reminder)
        routine.last_generated_at = now
        self.db.commit()

        for reminder in created:
            self.queue_sync.sync(reminder.id, now=now)
        if created:
            routine_reminders_created_total.inc(len(created))
            logger.info(f"[Routines] Generated {len(created)} reminder(s) for routine {routine.id}")
        return created

    def regenerate(self, routine_id: str, now: Optional[datetime] = None) -> GenerationResult:
        """Bring a routine's future reminders in line with its current rule.

        Future active reminders that are no longer occurrences of the rule are deleted
        along with their queue rows; the kept ones pick up the routine's current title,
        notes and channels. A deleted or paused routine loses all future reminders.
        """
        now = to_utc_aware(now) if now else utcnow()
        result = GenerationResult(routines=1)
        routine = repo.get_routine(self.db, routine_id)
        if routine is None or not routine.is_active:
            removal = self.queue_sync.remove_routine(routine_id, delete_future_reminders=True, now=now)
            result.deleted = removal.deleted_reminders
            return result

        future = repo.list_routine_reminders(self.db, routine_id, active_only=True, after=now)
        horizon = self.lookahead
        if future:
            horizon = max(horizon, to_utc_aware(future[-1].trigger_at) - now)
        # Validate and expand before touching anything
        expected = {
            occurrence_id(routine_id, instant)
            for instant in self.expander.expand_routine(routine, now, horizon=horizon)
        }

        stale = []
        for reminder in future:
            if reminder.id in expected:
                reminder.title = routine.title
                reminder.notes = routine.notes
                reminder.channels = list(routine.channels or [Channel.PUSH])
            else:
                stale.append(reminder.id)
        repo.delete_queue_items(self.db, stale)
        result.deleted = repo.delete_reminders(self.db, stale)
        self.db.commit()

        result.created = len(self.generate_for_routine(routine, now=now))
        logger.info(
            f"[Routines] Regenerated routine {routine_id}: created={result.created} deleted={result.deleted}"
        )
        return result

    def generate_all(self, now: Optional[datetime] = None) -> GenerationResult:
        now = to_utc_aware(now) if now else utcnow()
        result = GenerationResult()
        for routine in repo.list_active_routines(self.db):
            routine_id = routine.id
            result.routines += 1
            try:
                result.created += len(self.generate_for_routine(routine, now=now))
            except RecurrenceError as exc:
                self.db.rollback()
                result.errors += 1
                logger.warning(f"[Routines] Routine {routine_id} has an invalid recurrence rule: {exc}")
            except Exception:
                self.db.rollback()
                result.errors += 1
                logger.exception(f"[Routines] Failed to generate reminders for routine {routine_id}")
        logger.info(
            f"[Routines] Generation done: routines={result.routines} created={result.created} errors={result.errors}"
        )
        return result
