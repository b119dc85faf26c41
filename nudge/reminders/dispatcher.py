"""
Delivery dispatcher: claims due queue rows and fans them out to channel transports.

Runs may overlap freely. The conditional claim in ``repository.claim_queue_item`` is what
guarantees a window is sent by at most one run; nothing here relies on mutual exclusion.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import repository as repo
from .channels import ChannelTransports
from .config import settings as default_settings, ReminderSettings
from .errors import ClaimConflict, SyncInconsistency, TransportFailure
from .metrics import (
    channel_failures_total,
    channel_sends_total,
    dispatcher_claim_conflicts_total,
    dispatcher_items_total,
    dispatcher_runs_total,
)
from .models import Channel, QueueItem, QueueStatus, Reminder
from .queue_sync import QueueSync
from .subscriptions import PushSubscriptionRegistry
from .windows import WINDOW_PREFIXES, WindowCalculator
from nudge.utils.timezone import format_local, to_utc_aware, utcnow

logger = logging.getLogger(__name__)

SKIPPED = "skipped"
ORPHANED = "orphaned"
CLAIM_LOST = "claim_lost"
NOTES_MAX_LENGTH = 100


@dataclass
class DispatchResult:
    scanned: int = 0
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0


@dataclass
class ChannelOutcome:
    channel: str
    status: str
    error: Optional[str] = None
    expired_endpoints: List[str] = field(default_factory=list)


def truncate_notes(notes: Optional[str], max_length: int = NOTES_MAX_LENGTH) -> str:
    if not notes:
        return ""
    return notes[:max_length] + "…" if len(notes) > max_length else notes


def build_payload(
    reminder: Reminder, window_type: str, owner_timezone: Optional[str] = None
) -> Dict[str, Any]:
    """Render the notification for one window of a reminder.

    The due time is shown in the reminder's zone, else the owner's, else the default zone.
    """
    prefix = WINDOW_PREFIXES.get(window_type, "Reminder:")
    title = reminder.title or "Untitled"
    due_time = format_local(reminder.trigger_at, reminder.timezone or owner_timezone)
    notes = truncate_notes(reminder.notes)

    body = f"Due at {due_time}"
    if notes:
        body = f"{body} — {notes}"

    return {
        "title": f"{prefix} {title}",
        "body": body,
        "message": f'{prefix} "{title}" is due at {due_time}.',
        "notes": notes,
        "url": "/",
        "reminder_id": reminder.id,
        "window_type": window_type,
        "trigger_at": to_utc_aware(reminder.trigger_at).isoformat(),
    }


class DeliveryDispatcher:
    def __init__(
        self,
        db: Session,
        transports: ChannelTransports,
        settings: ReminderSettings = default_settings,
        calculator: Optional[WindowCalculator] = None,
    ):
        self.db = db
        self.transports = transports
        self.settings = settings
        self.calculator = calculator or WindowCalculator(settings=settings)
        self.queue_sync = QueueSync(db, calculator=self.calculator, settings=settings)
        self.registry = PushSubscriptionRegistry(db)

    def run(self, now: Optional[datetime] = None) -> DispatchResult:
        """One scheduler pass over the due part of the queue."""
        now = to_utc_aware(now) if now else utcnow()
        started = time.monotonic()
        result = DispatchResult()
        dispatcher_runs_total.inc()

        candidates = repo.get_due_queue_items(
            self.db, now + self.calculator.max_tolerance, limit=self.settings.SCHEDULER_BATCH_SIZE
        )
        result.scanned = len(candidates)

        for item in candidates:
            if time.monotonic() - started > self.settings.RUN_TIME_BUDGET_SECONDS:
                logger.info("[Dispatcher] Time budget exhausted, leaving remaining items for the next run")
                break
            if not self.is_due(item, now):
                continue
            item_id = item.id
            try:
                self.claim(item, now)
            except ClaimConflict:
                result.conflicts += 1
                dispatcher_claim_conflicts_total.inc()
                logger.debug(f"[Dispatcher] Queue item {item_id} claimed by another run, skipping")
                continue
            result.claimed += 1

            try:
                status = self.process(item, now)
            except Exception:
                # The row stays claimed; the reconcile sweep releases it after the claim timeout
                self.db.rollback()
                result.errors += 1
                logger.exception(f"[Dispatcher] Failed to process queue item {item_id}")
                continue

            if status == CLAIM_LOST:
                result.conflicts += 1
                continue
            dispatcher_items_total.labels(status=status).inc()
            if status == QueueStatus.SENT:
                result.sent += 1
            elif status == QueueStatus.FAILED_RETRYABLE:
                result.retried += 1
            elif status == QueueStatus.FAILED_TERMINAL:
                result.failed += 1
            else:
                result.skipped += 1

        logger.info(
            f"[Dispatcher] Run done: scanned={result.scanned} claimed={result.claimed} sent={result.sent} "
            f"retried={result.retried} failed={result.failed} skipped={result.skipped} "
            f"conflicts={result.conflicts} errors={result.errors}"
        )
        return result

    @staticmethod
    def is_due(item: QueueItem, now: datetime) -> bool:
        """True once the item's tolerance band has opened; late items stay due.

        The band only widens the first attempt. A retry waits out its full backoff.
        """
        opens_at = to_utc_aware(item.next_attempt_at)
        if not item.attempts:
            opens_at -= timedelta(seconds=item.tolerance_seconds or 0)
        return opens_at <= now

    def claim(self, item: QueueItem, now: datetime) -> None:
        claimed = repo.claim_queue_item(
            self.db,
            item.id,
            expected_status=item.status,
            now=now,
            expected_next_attempt_at=item.next_attempt_at,
        )
        if not claimed:
            raise ClaimConflict(item.id)
        self.db.refresh(item)

    def process(self, item: QueueItem, now: datetime) -> str:
        """Deliver one claimed item and record its outcome.

        Returns the final status, or CLAIM_LOST when the row changed under the claim.
        """
        try:
            reminder = self.queue_sync.resolve_reminder(item)
        except SyncInconsistency as exc:
            logger.warning(f"[Dispatcher] {exc}; deleting orphaned row")
            self.db.delete(item)
            self.db.commit()
            return ORPHANED

        attempts = (item.attempts or 0) + 1
        if item.superseded_at is not None and now >= to_utc_aware(item.superseded_at):
            logger.info(f"[Dispatcher] {item.window_type} window of reminder {reminder.id} superseded, not sending")
            return self._finish(item, now, QueueStatus.FAILED_TERMINAL, attempts, "window_superseded")

        results: Dict[str, Dict[str, Any]] = dict(item.channel_results or {})
        requested = list(dict.fromkeys(c for c in (reminder.channels or [Channel.PUSH]) if c in Channel.ALL))
        done = (QueueStatus.SENT, QueueStatus.FAILED_TERMINAL)
        outstanding = [c for c in requested if (results.get(c) or {}).get("status") not in done]

        targets: Dict[str, Any] = {}
        profile = repo.get_profile(self.db, reminder.owner_id)
        for channel in outstanding:
            target, reason = self._resolve_target(channel, reminder, profile)
            if target is None:
                results[channel] = {"status": SKIPPED, "error": reason, "at": now.isoformat()}
            else:
                targets[channel] = target

        payload = build_payload(reminder, item.window_type, profile.timezone if profile else None)
        outcomes = self._send_all(targets, payload)

        # Merge in this thread; the row is written exactly once below
        expired: List[str] = []
        for outcome in outcomes:
            results[outcome.channel] = {"status": outcome.status, "error": outcome.error, "at": now.isoformat()}
            expired.extend(outcome.expired_endpoints)

        status, last_error = self._decide(requested, results, attempts)
        self._finish(item, now, status, attempts, last_error, results)

        for endpoint in expired:
            self.registry.remove_endpoint(endpoint)
        return status

    def _resolve_target(self, channel: str, reminder: Reminder, profile) -> Tuple[Any, Optional[str]]:
        if self.transports.get(channel) is None:
            return None, "transport_disabled"
        if channel == Channel.PUSH:
            subs = repo.list_push_subscriptions(self.db, reminder.owner_id)
            if not subs:
                return None, "no_push_subscription"
            # Plain values only; worker threads never touch ORM objects
            return [(sub.endpoint, dict(sub.keys or {})) for sub in subs], None
        if channel == Channel.EMAIL:
            if profile is None or not profile.email:
                return None, "no_email_address"
            return profile.email, None
        if channel == Channel.SMS:
            if profile is None or not profile.sms_opt_in or not profile.phone_number:
                return None, "sms_not_enabled"
            return profile.phone_number, None
        return None, "unknown_channel"

    def _send_all(self, targets: Dict[str, Any], payload: Dict[str, Any]) -> List[ChannelOutcome]:
        if not targets:
            return []
        workers = max(1, min(len(targets), self.settings.CHANNEL_SEND_WORKERS))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(self._send_channel, channel, target, payload)
                for channel, target in targets.items()
            ]
            return [future.result() for future in futures]

    def _send_channel(self, channel: str, target: Any, payload: Dict[str, Any]) -> ChannelOutcome:
        transport = self.transports.get(channel)
        if channel == Channel.PUSH:
            return self._send_push(transport, target, payload)
        try:
            if channel == Channel.EMAIL:
                text = f"{payload['message']}\n\n{payload['notes']}" if payload["notes"] else payload["message"]
                transport.send(target, payload["title"], text)
            else:
                text = f"{payload['message']}\n{payload['notes']}" if payload["notes"] else payload["message"]
                transport.send(target, text)
        except TransportFailure as exc:
            return self._failed(channel, exc)
        except Exception as exc:
            logger.exception(f"[Dispatcher] Unexpected {channel} transport error")
            return self._failed(channel, TransportFailure(channel, str(exc), retryable=True))
        channel_sends_total.labels(channel=channel).inc()
        return ChannelOutcome(channel, QueueStatus.SENT)

    def _send_push(self, transport, subscriptions: List[Tuple[str, Dict[str, Any]]], payload) -> ChannelOutcome:
        delivered = 0
        failures: List[TransportFailure] = []
        expired: List[str] = []
        for endpoint, keys in subscriptions:
            try:
                transport.send(endpoint, keys, payload)
                delivered += 1
            except TransportFailure as exc:
                failures.append(exc)
                if not exc.retryable:
                    expired.append(endpoint)
            except Exception as exc:
                logger.exception("[Dispatcher] Unexpected push transport error")
                failures.append(TransportFailure(Channel.PUSH, str(exc), retryable=True))

        if delivered:
            channel_sends_total.labels(channel=Channel.PUSH).inc()
            return ChannelOutcome(Channel.PUSH, QueueStatus.SENT, expired_endpoints=expired)
        retryable = any(f.retryable for f in failures)
        outcome = self._failed(Channel.PUSH, TransportFailure(
            Channel.PUSH, "; ".join(f.reason for f in failures), retryable=retryable
        ))
        outcome.expired_endpoints = expired
        return outcome

    @staticmethod
    def _failed(channel: str, exc: TransportFailure) -> ChannelOutcome:
        channel_failures_total.labels(channel=channel, retryable=str(exc.retryable).lower()).inc()
        logger.warning(f"[Dispatcher] {exc}")
        status = QueueStatus.FAILED_RETRYABLE if exc.retryable else QueueStatus.FAILED_TERMINAL
        return ChannelOutcome(channel, status, error=exc.reason)

    def _decide(self, requested: List[str], results: Dict[str, Dict[str, Any]], attempts: int) -> Tuple[str, Optional[str]]:
        statuses = {c: (results.get(c) or {}).get("status") for c in requested}
        attempted = {c: s for c, s in statuses.items() if s not in (None, SKIPPED)}
        if not attempted:
            return QueueStatus.FAILED_TERMINAL, "no_deliverable_channel"

        failed = {c: s for c, s in attempted.items() if s != QueueStatus.SENT}
        if not failed:
            return QueueStatus.SENT, None

        last_error = "; ".join(
            f"{c}: {(results.get(c) or {}).get('error')}" for c in failed
        )
        if QueueStatus.FAILED_RETRYABLE in failed.values() and attempts < self.settings.MAX_ATTEMPTS:
            return QueueStatus.FAILED_RETRYABLE, last_error
        return QueueStatus.FAILED_TERMINAL, last_error

    def _finish(
        self,
        item: QueueItem,
        now: datetime,
        status: str,
        attempts: int,
        last_error: Optional[str],
        results: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> str:
        """Record the outcome, provided the row is still under this run's claim.

        A re-sync or a released claim may have rewritten the row while channels were
        being sent; the outcome then belongs to a window that no longer exists and is
        dropped.
        """
        item_id, window_type = item.id, item.window_type
        values: Dict[str, Any] = {
            "status": status,
            "attempts": attempts,
            "last_error": last_error,
            "claimed_at": None,
            "updated_at": now,
        }
        if results is not None:
            values["channel_results"] = results
        if status == QueueStatus.FAILED_RETRYABLE:
            backoff = self.settings.RETRY_BACKOFF_SECONDS * 2 ** (attempts - 1)
            values["next_attempt_at"] = now + timedelta(seconds=backoff)

        outcome = self.db.execute(
            update(QueueItem)
            .where(
                QueueItem.id == item_id,
                QueueItem.status == QueueStatus.CLAIMED,
                QueueItem.claimed_at == item.claimed_at,
                QueueItem.scheduled_at == item.scheduled_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire(item)

        if outcome.rowcount != 1:
            dispatcher_claim_conflicts_total.inc()
            logger.warning(
                f"[Dispatcher] Queue item {item_id} ({window_type}) changed while sending, "
                f"dropping {status} outcome"
            )
            return CLAIM_LOST
        if status == QueueStatus.FAILED_TERMINAL:
            logger.warning(
                f"[Dispatcher] Queue item {item_id} ({window_type}) failed terminally "
                f"after {attempts} attempt(s): {last_error}"
            )
        return status
