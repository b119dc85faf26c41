"""
Recurrence rules and their expansion into concrete trigger instants
"""
import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadDateError, croniter

from .config import settings as default_settings
from .errors import RecurrenceError
from nudge.utils.timezone import to_utc_aware


class RecurrenceType(Enum):
    """Types of recurrence patterns"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class Weekday(Enum):
    """Days of the week"""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


# Upper bound on calendar days walked for one expansion
MAX_SCAN_DAYS = 366 * 25


@dataclass
class RecurrenceRule:
    """Parsed recurrence rule. Times are local wall-clock times in the routine's zone."""
    frequency: RecurrenceType
    interval: int = 1
    anchor_time: Optional[time] = None
    weekdays: List[Weekday] = field(default_factory=list)
    day_of_month: Optional[int] = None  # 1-31, or -1 for last day of month
    cron_expression: Optional[str] = None
    start_date: Optional[date] = None
    until: Optional[date] = None
    count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "interval": self.interval,
            "anchor_time": self.anchor_time.strftime("%H:%M") if self.anchor_time else None,
            "weekdays": [day.value for day in self.weekdays],
            "day_of_month": self.day_of_month,
            "cron_expression": self.cron_expression,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "until": self.until.isoformat() if self.until else None,
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrenceRule":
        """Validate and parse a rule; any defect raises RecurrenceError."""
        if not isinstance(data, dict):
            raise RecurrenceError("recurrence rule must be an object")

        raw_frequency = data.get("frequency", data.get("type"))
        try:
            frequency = RecurrenceType(raw_frequency)
        except ValueError:
            raise RecurrenceError(f"unknown frequency: {raw_frequency!r}")

        interval = data.get("interval", 1)
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
            raise RecurrenceError(f"interval must be a positive integer, got {interval!r}")

        cron_expression = data.get("cron_expression") or data.get("cron")
        anchor_time = None
        if frequency == RecurrenceType.CUSTOM:
            if not cron_expression or len(str(cron_expression).split()) != 5 or not croniter.is_valid(cron_expression):
                raise RecurrenceError(f"invalid cron expression: {cron_expression!r}")
        else:
            anchor_time = _parse_anchor_time(data.get("anchor_time"))

        weekdays = []
        for day in data.get("weekdays") or []:
            try:
                weekdays.append(Weekday(day))
            except ValueError:
                raise RecurrenceError(f"weekday must be 0 (Monday) to 6 (Sunday), got {day!r}")

        day_of_month = data.get("day_of_month")
        if day_of_month is not None:
            if isinstance(day_of_month, bool) or not isinstance(day_of_month, int) or not (
                day_of_month == -1 or 1 <= day_of_month <= 31
            ):
                raise RecurrenceError(f"day_of_month must be 1-31 or -1, got {day_of_month!r}")

        count = data.get("count")
        if count is not None and (isinstance(count, bool) or not isinstance(count, int) or count < 1):
            raise RecurrenceError(f"count must be a positive integer, got {count!r}")

        return cls(
            frequency=frequency,
            interval=interval,
            anchor_time=anchor_time,
            weekdays=weekdays,
            day_of_month=day_of_month,
            cron_expression=cron_expression,
            start_date=_parse_date(data.get("start_date"), "start_date"),
            until=_parse_date(data.get("until"), "until"),
            count=count,
        )


def _parse_anchor_time(value: Any) -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if not isinstance(value, str):
        raise RecurrenceError(f"anchor_time must be 'HH:MM', got {value!r}")
    try:
        hours, minutes = (int(part) for part in value.split(":"))
        return time(hours, minutes)
    except ValueError:
        raise RecurrenceError(f"anchor_time must be 'HH:MM', got {value!r}")


def _parse_date(value: Any, name: str) -> Optional[date]:
    if value is None or isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    try:
        # Accept plain dates as well as full ISO timestamps
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise RecurrenceError(f"{name} must be an ISO date, got {value!r}")


def _resolve_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise RecurrenceError(f"unknown timezone: {tz_name!r}")


def _last_day(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


class RecurrenceExpander:
    """Expands a recurrence rule into future trigger instants.

    Occurrence dates are computed on the local calendar and the anchor time is attached
    as wall-clock time in the routine's zone, so "09:00 daily" stays at 09:00 local on
    both sides of a daylight-saving transition. A local time that does not exist (the
    skipped hour of a spring-forward day) resolves to the same instant as the
    pre-transition offset would give, i.e. one hour later on the wall clock.

    Expansion is all-or-nothing: the rule is fully validated before any instant is
    produced, and RecurrenceError is the only exception it raises.
    """

    def __init__(self, max_occurrences: int = default_settings.RECURRENCE_MAX_OCCURRENCES):
        self.max_occurrences = max_occurrences

    def expand(
        self,
        rule: Any,
        tz_name: Optional[str],
        now: datetime,
        horizon: Optional[timedelta] = None,
        limit: Optional[int] = None,
        default_start: Optional[date] = None,
    ) -> List[datetime]:
        """Return ordered, de-duplicated UTC instants strictly after ``now``.

        ``horizon`` bounds the instants to ``now + horizon``; ``limit`` bounds how many are
        returned. Both are optional, and the result never exceeds ``max_occurrences``.
        """
        if not isinstance(rule, RecurrenceRule):
            rule = RecurrenceRule.from_dict(rule)
        tz = _resolve_zone(tz_name)
        now = to_utc_aware(now)
        horizon_end = now + horizon if horizon is not None else None
        cap = min(limit, self.max_occurrences) if limit is not None else self.max_occurrences
        if cap <= 0:
            return []

        start = rule.start_date or default_start or now.astimezone(tz).date()

        if rule.frequency == RecurrenceType.CUSTOM:
            instants = self._expand_cron(rule, tz, start, now, horizon_end, cap)
        else:
            instants = self._expand_calendar(rule, tz, start, now, horizon_end, cap)
        return sorted(set(instants))[:cap]

    def expand_routine(
        self,
        routine,
        now: datetime,
        horizon: Optional[timedelta] = None,
        limit: Optional[int] = None,
    ) -> List[datetime]:
        tz = _resolve_zone(routine.timezone)
        default_start = None
        if getattr(routine, "created_at", None) is not None:
            default_start = to_utc_aware(routine.created_at).astimezone(tz).date()
        return self.expand(
            routine.recurrence,
            routine.timezone,
            now,
            horizon=horizon,
            limit=limit,
            default_start=default_start,
        )

    def _expand_calendar(self, rule, tz, start, now, horizon_end, cap) -> List[datetime]:
        results: List[datetime] = []
        # Without a count the ordinal of an occurrence is irrelevant, so skip the past
        if rule.count is None:
            scan_day = max(start, now.astimezone(tz).date() - timedelta(days=1))
        else:
            scan_day = start
        last_day = horizon_end.astimezone(tz).date() + timedelta(days=1) if horizon_end else None

        seen = 0
        for _ in range(MAX_SCAN_DAYS):
            if rule.until and scan_day > rule.until:
                break
            if last_day and scan_day > last_day:
                break
            if self._matches(rule, start, scan_day):
                seen += 1
                if rule.count is not None and seen > rule.count:
                    break
                local = datetime.combine(scan_day, rule.anchor_time, tzinfo=tz)
                instant = local.astimezone(dt_timezone.utc)
                if instant > now and (horizon_end is None or instant <= horizon_end):
                    results.append(instant)
                    if len(results) >= cap:
                        break
            scan_day += timedelta(days=1)
        return results

    @staticmethod
    def _matches(rule: RecurrenceRule, start: date, day: date) -> bool:
        if day < start:
            return False
        if rule.frequency == RecurrenceType.DAILY:
            return (day - start).days % rule.interval == 0
        if rule.frequency == RecurrenceType.WEEKLY:
            weekdays = [d.value for d in rule.weekdays] or [start.weekday()]
            start_of_series = start - timedelta(days=start.weekday())
            weeks = (day - start_of_series).days // 7
            return weeks % rule.interval == 0 and day.weekday() in weekdays
        if rule.frequency == RecurrenceType.MONTHLY:
            months = (day.year - start.year) * 12 + day.month - start.month
            if months % rule.interval:
                return False
            wanted = rule.day_of_month or start.day
            last = _last_day(day.year, day.month)
            # Day doesn't exist in month, use last day
            return day.day == (last if wanted == -1 else min(wanted, last))
        if rule.frequency == RecurrenceType.YEARLY:
            if (day.year - start.year) % rule.interval or day.month != start.month:
                return False
            return day.day == min(start.day, _last_day(day.year, day.month))
        return False

    def _expand_cron(self, rule, tz, start, now, horizon_end, cap) -> List[datetime]:
        # Iterate on naive wall-clock time and attach the zone afterwards so each
        # cron hit keeps its local time across DST changes.
        series_start = datetime.combine(start, time(0, 0)) - timedelta(seconds=1)
        if rule.count is None:
            local_now = now.astimezone(tz).replace(tzinfo=None) - timedelta(days=1)
            series_start = max(series_start, local_now)
        try:
            itr = croniter(rule.cron_expression, series_start)
        except (ValueError, KeyError) as exc:
            raise RecurrenceError(f"invalid cron expression: {rule.cron_expression!r}") from exc

        results: List[datetime] = []
        seen = 0
        scan_limit = series_start + timedelta(days=MAX_SCAN_DAYS)
        while True:
            try:
                local_naive = itr.get_next(datetime)
            except CroniterBadDateError as exc:
                raise RecurrenceError(f"cron expression never matches: {rule.cron_expression!r}") from exc
            if local_naive > scan_limit:
                break
            if rule.until and local_naive.date() > rule.until:
                break
            seen += 1
            if rule.count is not None and seen > rule.count:
                break
            instant = local_naive.replace(tzinfo=tz).astimezone(dt_timezone.utc)
            if horizon_end is not None and instant > horizon_end:
                break
            if instant > now:
                results.append(instant)
                if len(results) >= cap:
                    break
        return results
