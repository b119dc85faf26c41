from typing import Optional

from celery import shared_task
from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from nudge.db.session import SessionLocal
from .channels import ChannelTransports
from .config import settings
from .dispatcher import DeliveryDispatcher
from .queue_sync import QueueSync
from .routine_generator import REGENERATE_ROUTINE, RoutineGenerator

logger = get_task_logger(__name__)


@shared_task(name="reminders.dispatch_due")
def dispatch_due_task() -> dict:
    """Send every queue item whose window has opened. Returns the run counters."""
    db: Session = SessionLocal()
    try:
        dispatcher = DeliveryDispatcher(db, ChannelTransports.from_settings(settings), settings=settings)
        result = dispatcher.run()
        return vars(result)
    finally:
        db.close()


@shared_task(name="reminders.reconcile_queue")
def reconcile_queue_task() -> dict:
    db: Session = SessionLocal()
    try:
        return vars(QueueSync(db, settings=settings).reconcile())
    finally:
        db.close()


@shared_task(name="reminders.generate_routines")
def generate_routines_task() -> dict:
    db: Session = SessionLocal()
    try:
        return vars(RoutineGenerator(db, settings=settings).generate_all())
    finally:
        db.close()


@shared_task(
    name="reminders.sync_queue",
    bind=True,
    acks_late=True,
    max_retries=5,
    default_retry_delay=30,
)
def sync_queue_task(
    self,
    action: str,
    reminder_id: Optional[str] = None,
    routine_id: Optional[str] = None,
    delete_future_reminders: bool = False,
) -> dict:
    """Durable hand-off of a sync-trigger action for in-process callers.

    An invalid action is dropped; any other failure is retried, and the reconcile sweep
    covers whatever still slips through.
    """
    db: Session = SessionLocal()
    try:
        if action == REGENERATE_ROUTINE and routine_id:
            return vars(RoutineGenerator(db, settings=settings).regenerate(routine_id))
        return QueueSync(db, settings=settings).apply(
            action,
            reminder_id=reminder_id,
            routine_id=routine_id,
            delete_future_reminders=delete_future_reminders,
        )
    except ValueError as exc:
        logger.warning(f"[Tasks] Dropping sync action {action!r}: {exc}")
        return {"error": str(exc)}
    except Exception as exc:
        db.rollback()
        logger.warning(f"[Tasks] Sync action {action!r} failed, retrying: {exc}")
        raise self.retry(exc=exc)
    finally:
        db.close()
