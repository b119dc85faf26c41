"""
Fire-and-forget client for the queue sync trigger.

CRUD code calls these right after a mutation and never blocks on, or retries, the
outcome: a failed call is logged and left to the reconciliation sweep.
"""
import logging
from typing import Any, Dict, Optional

import requests

from .config import settings

logger = logging.getLogger(__name__)


def _resolve_base_url() -> str:
    """Resolve the notification service base URL from REMINDER_SERVICE_URL.
    Raises RuntimeError if not configured.
    """
    base_url = settings.SERVICE_URL
    if not base_url:
        raise RuntimeError("REMINDER_SERVICE_URL not configured")
    return base_url.rstrip("/")


def _build_headers(token: str) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {token}",
    }


def _call_sync(token: str, body: Dict[str, Any], timeout: float) -> bool:
    try:
        url = f"{_resolve_base_url()}/api/v1/reminders/queue/sync"
        response = requests.post(url, json=body, headers=_build_headers(token), timeout=timeout)
        response.raise_for_status()
        return True
    except (requests.RequestException, RuntimeError) as exc:
        # Non-fatal; the periodic reconcile repairs the queue
        logger.warning(f"[SyncClient] {body.get('action')} call failed: {exc}")
        return False


def sync_reminder(token: str, reminder_id: str, timeout: float = 5) -> bool:
    """Rebuild the queue rows of a created or edited reminder."""
    return _call_sync(token, {"action": "sync", "reminder_id": reminder_id}, timeout)


def remove_reminder(token: str, reminder_id: str, timeout: float = 5) -> bool:
    """Drop the queue rows of a completed or deleted reminder."""
    return _call_sync(token, {"action": "remove", "reminder_id": reminder_id}, timeout)


def remove_routine(
    token: str,
    routine_id: str,
    delete_future_reminders: bool = True,
    timeout: Optional[float] = 5,
) -> bool:
    return _call_sync(
        token,
        {
            "action": "removeRoutine",
            "routine_id": routine_id,
            "delete_future_reminders": delete_future_reminders,
        },
        timeout,
    )


def regenerate_routine(token: str, routine_id: str, timeout: float = 5) -> bool:
    """Re-materialise an edited routine's upcoming reminders."""
    return _call_sync(token, {"action": "regenerateRoutine", "routine_id": routine_id}, timeout)
