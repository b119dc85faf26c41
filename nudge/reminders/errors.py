"""
Error taxonomy for scheduling and delivery.

Only RecurrenceError and NotFound ever reach an HTTP caller. SyncInconsistency and
ClaimConflict are raised and handled inside the service; TransportFailure is turned
into a per-channel result on the queue item.
"""
from typing import Optional


class ReminderServiceError(Exception):
    """Base class for notification service errors"""


class RecurrenceError(ReminderServiceError, ValueError):
    """A routine's recurrence rule or timezone cannot be expanded."""


class SyncInconsistency(ReminderServiceError):
    """A queue row references a reminder that no longer exists or is no longer active."""

    def __init__(self, reminder_id: str, queue_item_id: Optional[str] = None):
        self.reminder_id = reminder_id
        self.queue_item_id = queue_item_id
        super().__init__(f"queue item {queue_item_id} references missing reminder {reminder_id}")


class TransportFailure(ReminderServiceError):
    """A channel transport could not deliver a notification."""

    def __init__(self, channel: str, reason: str, retryable: bool = True):
        self.channel = channel
        self.reason = reason
        self.retryable = retryable
        kind = "retryable" if retryable else "terminal"
        super().__init__(f"{channel} delivery failed ({kind}): {reason}")


class ClaimConflict(ReminderServiceError):
    """Another dispatcher run already owns the queue item."""

    def __init__(self, queue_item_id: str):
        self.queue_item_id = queue_item_id
        super().__init__(f"queue item {queue_item_id} already claimed")


class NotFound(ReminderServiceError, LookupError):
    pass
