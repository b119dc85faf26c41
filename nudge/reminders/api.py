from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from nudge.api.deps import get_current_user_id, get_db, verify_api_key_dependency
from nudge.utils.timezone import to_utc_aware, utcnow
from . import repository as repo
from .channels import ChannelTransports
from .config import settings
from .dispatcher import DeliveryDispatcher
from .errors import NotFound, RecurrenceError
from .queue_sync import ACTIONS, REMOVE_ROUTINE, QueueSync
from .recurrence import RecurrenceExpander
from .routine_generator import REGENERATE_ROUTINE, RoutineGenerator
from .schemas import (
    CronRunResponse,
    DeviceRemovalResponse,
    PushDeviceRead,
    PushRotateRequest,
    PushRotateResponse,
    PushSubscribeResponse,
    PushSubscriptionIn,
    QueueSyncRequest,
    QueueSyncResponse,
    RoutinePreviewRequest,
    RoutinePreviewResponse,
)
from .subscriptions import PushSubscriptionRegistry


router = APIRouter()

ROUTINE_ACTIONS = (REMOVE_ROUTINE, REGENERATE_ROUTINE)


@lru_cache()
def get_transports() -> ChannelTransports:
    return ChannelTransports.from_settings(settings)


def _ensure_owner(db: Session, owner_id: str, payload: QueueSyncRequest) -> None:
    """404 unless every record the action would touch belongs to the caller."""
    if payload.action in ROUTINE_ACTIONS:
        routine = repo.get_routine(db, payload.routine_id)
        if routine is not None:
            owners = {routine.owner_id}
        else:
            owners = {r.owner_id for r in repo.list_routine_reminders(db, payload.routine_id)}
        if owners - {owner_id}:
            raise HTTPException(status_code=404, detail="Routine not found")
        return

    reminder = repo.get_reminder(db, payload.reminder_id)
    if reminder is not None:
        owners = {reminder.owner_id}
    else:
        owners = {item.owner_id for item in repo.list_queue_items(db, payload.reminder_id)}
    if owners - {owner_id}:
        raise HTTPException(status_code=404, detail="Reminder not found")


@router.post("/queue/sync", response_model=QueueSyncResponse)
def queue_sync_endpoint(
    payload: QueueSyncRequest,
    owner_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Reconcile the queue after a reminder or routine mutation; work is done before responding."""
    target = payload.routine_id if payload.action in ROUTINE_ACTIONS else payload.reminder_id
    if payload.action not in ACTIONS + (REGENERATE_ROUTINE,) or not target:
        raise HTTPException(status_code=400, detail="Invalid action or missing params")
    _ensure_owner(db, owner_id, payload)

    if payload.action == REGENERATE_ROUTINE:
        try:
            generated = RoutineGenerator(db, settings=settings).regenerate(payload.routine_id)
        except RecurrenceError as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
        return QueueSyncResponse(action=payload.action, result=vars(generated))

    result = QueueSync(db, settings=settings).apply(
        payload.action,
        reminder_id=payload.reminder_id,
        routine_id=payload.routine_id,
        delete_future_reminders=payload.delete_future_reminders,
    )
    return QueueSyncResponse(action=payload.action, result=result)


@router.post("/push/subscribe", response_model=PushSubscribeResponse)
def push_subscribe_endpoint(
    subscription: PushSubscriptionIn,
    owner_id: str = Depends(get_current_user_id),
    user_agent: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    sub = PushSubscriptionRegistry(db).subscribe(owner_id, subscription.endpoint, subscription.keys, user_agent)
    return PushSubscribeResponse(id=sub.id)


@router.post("/push/rotate", response_model=PushRotateResponse)
def push_rotate_endpoint(
    payload: PushRotateRequest,
    owner_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Swap a rotated browser endpoint in place; 404 means the device should re-subscribe."""
    try:
        updated = PushSubscriptionRegistry(db).rotate(
            payload.old_endpoint,
            payload.new_subscription.endpoint,
            payload.new_subscription.keys,
            owner_id=owner_id,
        )
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return PushRotateResponse(updated=updated)


@router.get("/push/devices", response_model=List[PushDeviceRead])
def list_devices_endpoint(
    owner_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return [
        PushDeviceRead(
            id=sub.id,
            endpoint=sub.endpoint,
            user_agent=sub.user_agent,
            created_at=sub.created_at,
            updated_at=sub.updated_at,
        )
        for sub in PushSubscriptionRegistry(db).list_devices(owner_id)
    ]


@router.delete("/push/devices", response_model=DeviceRemovalResponse)
def remove_devices_endpoint(
    id: Optional[str] = None,
    owner_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    removed = PushSubscriptionRegistry(db).remove(owner_id, id)
    if id and not removed:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceRemovalResponse(removed=removed)


@router.post("/routines/preview", response_model=RoutinePreviewResponse)
def routine_preview_endpoint(
    payload: RoutinePreviewRequest,
    owner_id: str = Depends(get_current_user_id),
):
    now = to_utc_aware(payload.now) if payload.now else utcnow()
    try:
        occurrences = RecurrenceExpander(settings.RECURRENCE_MAX_OCCURRENCES).expand(
            payload.recurrence, payload.timezone, now, limit=payload.limit
        )
    except RecurrenceError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return RoutinePreviewResponse(timezone=payload.timezone or "UTC", occurrences=occurrences)


@router.post("/cron/dispatch", response_model=CronRunResponse, dependencies=[Depends(verify_api_key_dependency)])
def cron_dispatch_endpoint(
    db: Session = Depends(get_db),
    transports: ChannelTransports = Depends(get_transports),
):
    now = utcnow()
    result = DeliveryDispatcher(db, transports, settings=settings).run(now)
    return CronRunResponse(timestamp=now, stats=vars(result))


@router.post("/cron/reconcile", response_model=CronRunResponse, dependencies=[Depends(verify_api_key_dependency)])
def cron_reconcile_endpoint(db: Session = Depends(get_db)):
    now = utcnow()
    result = QueueSync(db, settings=settings).reconcile(now)
    return CronRunResponse(timestamp=now, stats=vars(result))


@router.post("/cron/routines", response_model=CronRunResponse, dependencies=[Depends(verify_api_key_dependency)])
def cron_routines_endpoint(db: Session = Depends(get_db)):
    now = utcnow()
    result = RoutineGenerator(db, settings=settings).generate_all(now)
    return CronRunResponse(timestamp=now, stats=vars(result))


@router.get("/health")
def health():
    return {"status": "ok"}
