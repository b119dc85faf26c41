import threading
from datetime import datetime, timezone
from typing import List, Optional

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nudge.db.base import Base
from nudge.reminders import models  # noqa: F401
from nudge.reminders.channels import ChannelTransports
from nudge.reminders.config import ReminderSettings
from nudge.reminders.models import Channel, QueueItem, Reminder, ReminderStatus, UserProfile
from nudge.reminders.subscriptions import PushSubscriptionRegistry

UTC = timezone.utc


class FakeTransport:
    """Records sends; scripted errors are raised in order, then ``always`` if set."""

    def __init__(self, channel: str, enabled: bool = True):
        self.channel = channel
        self.enabled = enabled
        self.calls: List[tuple] = []
        self.errors: List[Exception] = []
        self.always: Optional[Exception] = None
        self.failing_endpoints = {}
        self._lock = threading.Lock()

    def fail_next(self, *errors: Exception) -> None:
        self.errors.extend(errors)

    def send(self, *args):
        with self._lock:
            self.calls.append(args)
            if self.channel == Channel.PUSH and args[0] in self.failing_endpoints:
                raise self.failing_endpoints[args[0]]
            if self.errors:
                raise self.errors.pop(0)
        if self.always is not None:
            raise self.always


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def reminder_settings():
    return ReminderSettings(
        MAX_ATTEMPTS=3,
        RETRY_BACKOFF_SECONDS=60,
        CLAIM_TIMEOUT_MINUTES=15,
        RECONCILE_LOOKBACK_HOURS=24,
        ROUTINE_LOOKAHEAD_HOURS=48,
        SCHEDULER_BATCH_SIZE=200,
        RUN_TIME_BUDGET_SECONDS=50,
        CHANNEL_SEND_WORKERS=3,
    )


@pytest.fixture
def transports():
    return ChannelTransports(
        push=FakeTransport(Channel.PUSH),
        email=FakeTransport(Channel.EMAIL),
        sms=FakeTransport(Channel.SMS),
    )


def make_reminder(db, trigger_at: datetime, owner_id: str = "user-1", **fields) -> Reminder:
    fields.setdefault("title", "Take pills")
    fields.setdefault("timezone", "UTC")
    fields.setdefault("status", ReminderStatus.PENDING)
    fields.setdefault("channels", [Channel.PUSH])
    reminder = Reminder(owner_id=owner_id, trigger_at=trigger_at, **fields)
    db.add(reminder)
    db.commit()
    return reminder


def make_profile(db, owner_id: str = "user-1", **fields) -> UserProfile:
    profile = UserProfile(user_id=owner_id, **fields)
    db.add(profile)
    db.commit()
    return profile


def subscribe(db, owner_id: str = "user-1", endpoint: str = "https://push.example.com/device-1"):
    return PushSubscriptionRegistry(db).subscribe(
        owner_id, endpoint, {"p256dh": "key", "auth": "secret"}, "pytest-agent"
    )


def queue_item(db, reminder_id: str, window_type: str) -> Optional[QueueItem]:
    stmt = select(QueueItem).where(QueueItem.reminder_id == reminder_id, QueueItem.window_type == window_type)
    return db.execute(stmt).scalars().first()
