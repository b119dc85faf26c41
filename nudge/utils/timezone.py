from datetime import datetime, timezone as dt_timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from nudge.core.config import settings


def get_zoneinfo(tz_name: Optional[str] = None) -> ZoneInfo:
    """
    Resolve an IANA zone name, falling back to settings.DEFAULT_TIMEZONE and then UTC.
    Unknown names never raise here; callers that must reject them use ZoneInfo directly.
    """
    for name in (tz_name, settings.DEFAULT_TIMEZONE, "UTC"):
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")


def utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_utc_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC) for APIs needing tz-aware values.
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def format_local(dt: datetime, tz_name: Optional[str]) -> str:
    """Render an instant as 12-hour wall-clock time in the given zone, e.g. '9:00 AM'."""
    local = to_utc_aware(dt).astimezone(get_zoneinfo(tz_name))
    return local.strftime("%I:%M %p").lstrip("0")
