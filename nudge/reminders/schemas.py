"""
Request and response schemas for the notification service API
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class QueueSyncRequest(BaseModel):
    """Sync trigger sent by reminder/routine CRUD code after a mutation"""
    model_config = ConfigDict(populate_by_name=True)

    action: str
    reminder_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("reminder_id", "reminderId"))
    routine_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("routine_id", "routineId"))
    delete_future_reminders: bool = Field(
        default=False,
        validation_alias=AliasChoices("delete_future_reminders", "deleteFutureReminders"),
    )


class QueueSyncResponse(BaseModel):
    success: bool = True
    action: str
    result: Dict[str, Any] = Field(default_factory=dict)


class PushSubscriptionIn(BaseModel):
    """Browser PushSubscription as serialised by PushSubscription.toJSON()"""
    endpoint: str = Field(..., min_length=1)
    keys: Dict[str, str] = Field(default_factory=dict)


class PushRotateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_endpoint: str = Field(..., min_length=1, validation_alias=AliasChoices("old_endpoint", "oldEndpoint"))
    new_subscription: PushSubscriptionIn = Field(
        ..., validation_alias=AliasChoices("new_subscription", "newSubscription")
    )


class PushDeviceRead(BaseModel):
    id: str
    endpoint: str
    user_agent: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PushSubscribeResponse(BaseModel):
    success: bool = True
    id: str


class PushRotateResponse(BaseModel):
    success: bool = True
    updated: int


class DeviceRemovalResponse(BaseModel):
    success: bool = True
    removed: int


class RoutinePreviewRequest(BaseModel):
    """Expand a recurrence rule without persisting anything"""
    recurrence: Dict[str, Any]
    timezone: Optional[str] = "UTC"
    limit: int = Field(default=10, ge=1, le=100)
    now: Optional[datetime] = None


class RoutinePreviewResponse(BaseModel):
    timezone: str
    occurrences: List[datetime]


class CronRunResponse(BaseModel):
    success: bool = True
    timestamp: datetime
    stats: Dict[str, Any]
