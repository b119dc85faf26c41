"""
Scheduler data model: reminders, routines, the notification queue and push endpoints
"""
import uuid
from datetime import datetime, timezone as dt_timezone

from sqlalchemy import Boolean, Column, Index, Integer, JSON, String, Text, UniqueConstraint

from nudge.db.base import Base
from nudge.db.types import UTCDateTime


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(dt_timezone.utc)


class ReminderStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    SNOOZED = "snoozed"

    # Statuses that still need notifications
    ACTIVE = (PENDING, SNOOZED)


class QueueStatus:
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"

    # Statuses the dispatcher may claim
    DISPATCHABLE = (PENDING, FAILED_RETRYABLE)


class Channel:
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"

    ALL = (PUSH, EMAIL, SMS)


class Reminder(Base):
    """A single time-bound event, created directly or materialised from a routine"""
    __tablename__ = "reminders"

    id = Column(String(64), primary_key=True, default=_uuid)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="Untitled")
    notes = Column(Text, nullable=True)
    trigger_at = Column(UTCDateTime, nullable=False)
    timezone = Column(String, nullable=True)  # None renders in the owner's profile zone
    status = Column(String, nullable=False, default=ReminderStatus.PENDING)
    routine_id = Column(String(64), nullable=True)  # back-reference, not ownership
    channels = Column(JSON, nullable=False, default=lambda: [Channel.PUSH])

    created_at = Column(UTCDateTime, default=_now, nullable=False)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now, nullable=False)

    __table_args__ = (
        Index("ix_reminders_status_trigger", "status", "trigger_at"),
        Index("ix_reminders_routine_id", "routine_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ReminderStatus.ACTIVE


class Routine(Base):
    """Generator of reminders: a recurrence rule evaluated in the routine's timezone"""
    __tablename__ = "routines"

    id = Column(String(64), primary_key=True, default=_uuid)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="Untitled")
    notes = Column(Text, nullable=True)
    recurrence = Column(JSON, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    channels = Column(JSON, nullable=False, default=lambda: [Channel.PUSH])
    is_active = Column(Boolean, nullable=False, default=True)
    last_generated_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=_now, nullable=False)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now, nullable=False)


class QueueItem(Base):
    """One notification window of one reminder, fanned out to the reminder's channels"""
    __tablename__ = "notification_queue"

    id = Column(String(64), primary_key=True, default=_uuid)
    reminder_id = Column(String(64), nullable=False)
    owner_id = Column(String, nullable=False)
    routine_id = Column(String(64), nullable=True)
    window_type = Column(String, nullable=False)

    # Derived from the reminder's trigger_at; only QueueSync writes these
    scheduled_at = Column(UTCDateTime, nullable=False)
    superseded_at = Column(UTCDateTime, nullable=True)
    tolerance_seconds = Column(Integer, nullable=False, default=0)

    # Dispatcher state
    next_attempt_at = Column(UTCDateTime, nullable=False)
    status = Column(String, nullable=False, default=QueueStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    channel_results = Column(JSON, nullable=False, default=dict)
    claimed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=_now, nullable=False)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("reminder_id", "window_type", name="uq_notification_queue_reminder_window"),
        Index("ix_notification_queue_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_notification_queue_routine_id", "routine_id"),
    )


class PushSubscription(Base):
    """Web push endpoint of one device; id is the SHA-256 of the endpoint URL"""
    __tablename__ = "push_subscriptions"

    id = Column(String(64), primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    endpoint = Column(Text, nullable=False)
    keys = Column(JSON, nullable=False, default=dict)
    user_agent = Column(String, nullable=True)

    created_at = Column(UTCDateTime, default=_now, nullable=False)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now, nullable=False)


class UserProfile(Base):
    """Contact details the dispatcher resolves email/SMS recipients from"""
    __tablename__ = "user_profiles"

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    sms_opt_in = Column(Boolean, nullable=False, default=False)
    timezone = Column(String, nullable=True)

    updated_at = Column(UTCDateTime, default=_now, onupdate=_now, nullable=False)
