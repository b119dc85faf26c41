"""
Per-device web push endpoints.

A subscription's id is the SHA-256 of its endpoint URL, so registering the same device
any number of times leaves exactly one row.
"""
import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import repository as repo
from .errors import NotFound
from .metrics import push_rotations_total
from .models import PushSubscription
from nudge.utils.timezone import to_utc_aware, utcnow

logger = logging.getLogger(__name__)


def subscription_id(endpoint: str) -> str:
    return hashlib.sha256(endpoint.encode("utf-8")).hexdigest()


class PushSubscriptionRegistry:
    def __init__(self, db: Session):
        self.db = db

    def subscribe(
        self,
        owner_id: str,
        endpoint: str,
        keys: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PushSubscription:
        """Upsert the device registration; metadata of an existing row is overwritten."""
        now = to_utc_aware(now) if now else utcnow()
        for attempt in (1, 2):
            try:
                return self._upsert(owner_id, endpoint, keys, user_agent, now)
            except IntegrityError:
                # A concurrent first subscribe of the same endpoint inserted the row first
                self.db.rollback()
                if attempt == 2:
                    raise
                logger.info(f"[Push] Insert race on subscription {subscription_id(endpoint)[:12]}, re-reading")

    def _upsert(
        self,
        owner_id: str,
        endpoint: str,
        keys: Optional[Dict[str, Any]],
        user_agent: Optional[str],
        now: datetime,
    ) -> PushSubscription:
        sub_id = subscription_id(endpoint)
        sub = repo.get_push_subscription(self.db, sub_id)
        if sub is None:
            sub = PushSubscription(id=sub_id, endpoint=endpoint, created_at=now)
            self.db.add(sub)
            logger.info(f"[Push] New subscription {sub_id[:12]} for user {owner_id}")
        elif sub.owner_id != owner_id:
            logger.info(f"[Push] Subscription {sub_id[:12]} moved from user {sub.owner_id} to {owner_id}")
        sub.owner_id = owner_id
        sub.keys = dict(keys or {})
        sub.user_agent = user_agent
        sub.updated_at = now
        self.db.commit()
        return sub

    def rotate(
        self,
        old_endpoint: str,
        new_endpoint: str,
        new_keys: Optional[Dict[str, Any]] = None,
        owner_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Swap every row registered under ``old_endpoint`` to the new endpoint.

        Rows move to the id derived from the new endpoint so the id stays a function of
        the endpoint. Raises NotFound when no row matches.
        """
        now = to_utc_aware(now) if now else utcnow()
        matches = repo.find_push_subscriptions_by_endpoint(self.db, old_endpoint, owner_id=owner_id)
        if not matches:
            raise NotFound(f"no push subscription registered for endpoint {old_endpoint}")

        new_id = subscription_id(new_endpoint)
        survivor = matches[0]
        target = repo.get_push_subscription(self.db, new_id)
        if target is None:
            target = PushSubscription(id=new_id, created_at=survivor.created_at or now)
            self.db.add(target)
        target.owner_id = survivor.owner_id
        target.user_agent = survivor.user_agent
        target.endpoint = new_endpoint
        target.keys = dict(new_keys or {})
        target.updated_at = now

        for sub in matches:
            if sub.id != new_id:
                self.db.delete(sub)
        self.db.commit()

        push_rotations_total.inc()
        logger.info(f"[Push] Rotated {len(matches)} subscription(s) to {new_id[:12]}")
        return len(matches)

    def list_devices(self, owner_id: str) -> List[PushSubscription]:
        return repo.list_push_subscriptions(self.db, owner_id)

    def remove(self, owner_id: str, sub_id: Optional[str] = None) -> int:
        """Remove one device of the owner, or all of them when ``sub_id`` is omitted."""
        stmt = delete(PushSubscription).where(PushSubscription.owner_id == owner_id)
        if sub_id:
            stmt = stmt.where(PushSubscription.id == sub_id)
        removed = self.db.execute(stmt).rowcount or 0
        self.db.commit()
        if removed:
            logger.info(f"[Push] Removed {removed} device(s) for user {owner_id}")
        return removed

    def remove_endpoint(self, endpoint: str) -> int:
        """Forget an endpoint the push service reported as expired."""
        removed = self.db.execute(
            delete(PushSubscription).where(PushSubscription.endpoint == endpoint)
        ).rowcount or 0
        self.db.commit()
        if removed:
            logger.warning(f"[Push] Deleted expired subscription {subscription_id(endpoint)[:12]}")
        return removed
