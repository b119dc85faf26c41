from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from .models import (
    PushSubscription,
    QueueItem,
    QueueStatus,
    Reminder,
    ReminderStatus,
    Routine,
    UserProfile,
)


# Reminders

def get_reminder(db: Session, reminder_id: str) -> Optional[Reminder]:
    return db.get(Reminder, reminder_id)


def list_active_reminders(
    db: Session,
    since: Optional[datetime] = None,
    owner_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Reminder]:
    stmt = (
        select(Reminder)
        .where(Reminder.status.in_(ReminderStatus.ACTIVE))
        .order_by(Reminder.trigger_at.asc())
    )
    if since is not None:
        stmt = stmt.where(Reminder.trigger_at >= since)
    if owner_id:
        stmt = stmt.where(Reminder.owner_id == owner_id)
    if limit:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars())


def list_routine_reminders(
    db: Session,
    routine_id: str,
    active_only: bool = False,
    after: Optional[datetime] = None,
) -> List[Reminder]:
    stmt = select(Reminder).where(Reminder.routine_id == routine_id).order_by(Reminder.trigger_at.asc())
    if active_only:
        stmt = stmt.where(Reminder.status.in_(ReminderStatus.ACTIVE))
    if after is not None:
        stmt = stmt.where(Reminder.trigger_at > after)
    return list(db.execute(stmt).scalars())


def delete_reminders(db: Session, reminder_ids: Iterable[str]) -> int:
    """Delete reminder rows. Caller commits."""
    ids = list(reminder_ids)
    if not ids:
        return 0
    result = db.execute(delete(Reminder).where(Reminder.id.in_(ids)))
    return result.rowcount or 0


# Routines

def get_routine(db: Session, routine_id: str) -> Optional[Routine]:
    return db.get(Routine, routine_id)


def list_active_routines(db: Session, limit: int = 1000) -> List[Routine]:
    stmt = (
        select(Routine)
        .where(Routine.is_active == True)  # noqa: E712
        .order_by(Routine.created_at.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


# Queue

def list_queue_items(db: Session, reminder_id: str) -> List[QueueItem]:
    stmt = select(QueueItem).where(QueueItem.reminder_id == reminder_id)
    return list(db.execute(stmt).scalars())


def delete_queue_items(db: Session, reminder_ids: Iterable[str]) -> int:
    """Delete every queue row of the given reminders. Caller commits."""
    ids = list(reminder_ids)
    if not ids:
        return 0
    result = db.execute(delete(QueueItem).where(QueueItem.reminder_id.in_(ids)))
    return result.rowcount or 0


def get_due_queue_items(db: Session, until: datetime, limit: int = 200) -> List[QueueItem]:
    """Dispatchable rows whose next attempt falls on or before ``until``."""
    stmt = (
        select(QueueItem)
        .where(QueueItem.status.in_(QueueStatus.DISPATCHABLE))
        .where(QueueItem.next_attempt_at <= until)
        .order_by(QueueItem.next_attempt_at.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def claim_queue_item(
    db: Session,
    item_id: str,
    expected_status: str,
    now: datetime,
    expected_next_attempt_at: Optional[datetime] = None,
) -> bool:
    """Conditionally move a row to claimed.

    Only one caller can match ``status == expected_status`` for a given row, so the
    affected row count decides the owner of the item. Matching the observed
    ``next_attempt_at`` as well rejects a snapshot taken before the row was rescheduled.
    """
    conditions = [QueueItem.id == item_id, QueueItem.status == expected_status]
    if expected_next_attempt_at is not None:
        conditions.append(QueueItem.next_attempt_at == expected_next_attempt_at)
    result = db.execute(
        update(QueueItem)
        .where(*conditions)
        .values(status=QueueStatus.CLAIMED, claimed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def list_stale_claims(db: Session, claimed_before: datetime) -> List[QueueItem]:
    stmt = select(QueueItem).where(
        QueueItem.status == QueueStatus.CLAIMED,
        QueueItem.claimed_at < claimed_before,
    )
    return list(db.execute(stmt).scalars())


def list_orphaned_queue_items(db: Session, limit: int = 1000) -> List[QueueItem]:
    """Rows whose reminder is gone or no longer needs notifications."""
    stmt = (
        select(QueueItem)
        .outerjoin(Reminder, Reminder.id == QueueItem.reminder_id)
        .where(or_(Reminder.id.is_(None), Reminder.status.notin_(ReminderStatus.ACTIVE)))
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def list_routine_queue_items(db: Session, routine_id: str) -> List[QueueItem]:
    stmt = select(QueueItem).where(QueueItem.routine_id == routine_id)
    return list(db.execute(stmt).scalars())


# Recipients

def get_profile(db: Session, owner_id: str) -> Optional[UserProfile]:
    return db.get(UserProfile, owner_id)


def get_push_subscription(db: Session, subscription_id: str) -> Optional[PushSubscription]:
    return db.get(PushSubscription, subscription_id)


def list_push_subscriptions(db: Session, owner_id: str) -> List[PushSubscription]:
    stmt = (
        select(PushSubscription)
        .where(PushSubscription.owner_id == owner_id)
        .order_by(PushSubscription.updated_at.desc())
    )
    return list(db.execute(stmt).scalars())


def find_push_subscriptions_by_endpoint(
    db: Session, endpoint: str, owner_id: Optional[str] = None
) -> List[PushSubscription]:
    stmt = select(PushSubscription).where(PushSubscription.endpoint == endpoint)
    if owner_id:
        stmt = stmt.where(PushSubscription.owner_id == owner_id)
    return list(db.execute(stmt).scalars())
