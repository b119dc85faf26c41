from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from nudge.reminders.errors import RecurrenceError
from nudge.reminders.models import Routine
from nudge.reminders.recurrence import RecurrenceExpander, RecurrenceRule, RecurrenceType

UTC = timezone.utc
NEW_YORK = ZoneInfo("America/New_York")


def _utc(*args):
    return datetime(*args, tzinfo=UTC)


def test_daily_anchor_keeps_local_time_across_spring_forward():
    rule = {"frequency": "daily", "anchor_time": "09:00", "start_date": "2024-03-08"}
    occurrences = RecurrenceExpander().expand(rule, "America/New_York", _utc(2024, 3, 8, 0, 0), limit=5)

    assert [o.astimezone(NEW_YORK).hour for o in occurrences] == [9, 9, 9, 9, 9]
    # EST (UTC-5) before March 10, EDT (UTC-4) from then on
    assert [o.hour for o in occurrences] == [14, 14, 13, 13, 13]
    assert [o.astimezone(NEW_YORK).day for o in occurrences] == [8, 9, 10, 11, 12]


def test_daily_anchor_keeps_local_time_across_fall_back():
    rule = {"frequency": "daily", "anchor_time": "09:00", "start_date": "2024-11-02"}
    occurrences = RecurrenceExpander().expand(rule, "America/New_York", _utc(2024, 11, 2, 0, 0), limit=3)

    assert [o.astimezone(NEW_YORK).hour for o in occurrences] == [9, 9, 9]
    assert [o.hour for o in occurrences] == [13, 14, 14]


def test_nonexistent_local_time_resolves_forward():
    rule = {"frequency": "daily", "anchor_time": "02:30", "start_date": "2024-03-09"}
    occurrences = RecurrenceExpander().expand(rule, "America/New_York", _utc(2024, 3, 9, 0, 0), limit=3)

    assert occurrences[1] == _utc(2024, 3, 10, 7, 30)
    assert occurrences[1].astimezone(NEW_YORK).hour == 3
    assert occurrences == sorted(set(occurrences))


def test_results_are_strictly_after_now():
    rule = {"frequency": "daily", "anchor_time": "09:00", "start_date": "2024-01-01"}
    now = _utc(2024, 1, 2, 9, 0)
    occurrences = RecurrenceExpander().expand(rule, "UTC", now, limit=2)

    assert occurrences == [_utc(2024, 1, 3, 9, 0), _utc(2024, 1, 4, 9, 0)]


def test_horizon_bounds_expansion():
    rule = {"frequency": "daily", "anchor_time": "09:00", "start_date": "2024-01-01"}
    now = _utc(2024, 1, 1, 10, 0)
    occurrences = RecurrenceExpander().expand(rule, "UTC", now, horizon=timedelta(hours=48))

    assert occurrences == [_utc(2024, 1, 2, 9, 0), _utc(2024, 1, 3, 9, 0)]


def test_daily_interval():
    rule = {"frequency": "daily", "interval": 3, "anchor_time": "07:15", "start_date": "2024-01-01"}
    occurrences = RecurrenceExpander().expand(rule, "UTC", _utc(2024, 1, 1, 0, 0), limit=3)

    assert occurrences == [_utc(2024, 1, 1, 7, 15), _utc(2024, 1, 4, 7, 15), _utc(2024, 1, 7, 7, 15)]


def test_weekly_on_selected_weekdays():
    # 2024-01-01 is a Monday
    rule = {"frequency": "weekly", "weekdays": [0, 2, 4], "anchor_time": "08:00", "start_date": "2024-01-01"}
    occurrences = RecurrenceExpander().expand(rule, "UTC", _utc(2024, 1, 1, 0, 0), limit=6)

    assert [o.day for o in occurrences] == [1, 3, 5, 8, 10, 12]


def test_weekly_every_other_week():
    rule = {
        "frequency": "weekly",
        "interval": 2,
        "weekdays": [1],
        "anchor_time": "08:00",
        "start_date": "2024-01-01",
    }
    occurrences = RecurrenceExpander().expand(rule, "UTC", _utc(2024, 1, 1, 0, 0), limit=3)

    assert [o.day for o in occurrences] == [2, 16, 30]


def test_weekly_defaults_to_start_weekday():
    # 2024-01-03 is a Wednesday
    rule = {"frequency": "weekly", "anchor_time": "08:00", "start_date": "2024-01-03"}
    occurrences = RecurrenceExpander().expand(rule, "UTC", _utc(2024, 1, 1, 0, 0), limit=2)

    assert [o.date().isoformat() for o in occurrences] == ["2024-01-03", "2024-01-10"]


def test_monthly_clamps_to_last_day_of_short_months():
    rule = {"frequency": "monthly", "day_of_month": 31, "anchor_time": "12:00", "start_date": "2024-01-31"}
    occurrences = RecurrenceExpander().expand(rule, "UTC", _utc(2024, 1, 1, 0, 0), limit=4)

    assert [o.date().isoformat() for o in occurrences] == [
        "2024-01-31",
        "2024-02-29",
        "2024-03-31",
        "2024-04-30",
    ]


def test_monthly_last_day():
    rule = {"frequency": "monthly", "day_of_month": -1, "anchor_time": "12:00", "start_date": "2023-01-15"}
    occurrences = RecurrenceExpander().expand(rule, "UTC", _utc(2023, 1, 1, 0, 0), limit=3)

    assert [o.date().isoformat() for o in occurrences] == ["2023-01-31", "2023-02-28", "2023-03-31"]


def test_yearly_on_leap_day_falls_back_to_february_28():
    rule = {"frequency": "yearly", "anchor_time": "10:00", "start_date": "2024-02-29"}
    occurrences = RecurrenceExpander().expand(rule, "UTC", _utc(2024, 3, 1, 0, 0), limit=4)

    assert [o.date().isoformat() for o in occurrences] == [
        "2025-02-28",
        "2026-02-28",
        "2027-02-28",
        "2028-02-29",
    ]


def test_count_is_counted_from_start_date():
    rule = {"frequency": "daily", "anchor_time": "09:00", "start_date": "2024-01-01", "count": 3}
    expander = RecurrenceExpander()

    assert expander.expand(rule, "UTC", _utc(2024, 1, 2, 10, 0), limit=10) == [_utc(2024, 1, 3, 9, 0)]
    assert expander.expand(rule, "UTC", _utc(2024, 1, 3, 10, 0), limit=10) == []


def test_until_is_inclusive():
    rule = {"frequency": "daily", "anchor_time": "09:00", "start_date": "2024-01-01", "until": "2024-01-05"}
    occurrences = RecurrenceExpander().expand(rule, "UTC", _utc(2024, 1, 1, 0, 0), limit=10)

    assert [o.day for o in occurrences] == [1, 2, 3, 4, 5]


def test_custom_cron_evaluated_in_local_time():
    rule = {"frequency": "custom", "cron_expression": "0 9 * * 1-5"}
    occurrences = RecurrenceExpander().expand(rule, "America/New_York", _utc(2024, 3, 8, 0, 0), limit=3)

    assert occurrences == [_utc(2024, 3, 8, 14, 0), _utc(2024, 3, 11, 13, 0), _utc(2024, 3, 12, 13, 0)]


def test_max_occurrences_caps_unbounded_expansion():
    rule = {"frequency": "daily", "anchor_time": "09:00", "start_date": "2024-01-01"}
    occurrences = RecurrenceExpander(max_occurrences=5).expand(rule, "UTC", _utc(2024, 1, 1, 0, 0))

    assert len(occurrences) == 5


def test_expand_routine_starts_from_creation_date():
    routine = Routine(
        id="routine-1",
        owner_id="user-1",
        recurrence={"frequency": "daily", "interval": 2, "anchor_time": "09:00"},
        timezone="Europe/Berlin",
        created_at=_utc(2024, 1, 1, 12, 0),
    )
    occurrences = RecurrenceExpander().expand_routine(routine, _utc(2024, 1, 2, 0, 0), limit=2)

    # Every other day counted from Jan 1, 09:00 Berlin (UTC+1)
    assert occurrences == [_utc(2024, 1, 3, 8, 0), _utc(2024, 1, 5, 8, 0)]


def test_rule_round_trips_through_dict():
    rule = RecurrenceRule.from_dict(
        {"type": "weekly", "weekdays": [0, 4], "anchor_time": "07:30", "until": "2024-12-31T23:59:00Z"}
    )

    assert rule.frequency == RecurrenceType.WEEKLY
    assert rule.to_dict()["anchor_time"] == "07:30"
    assert rule.to_dict()["until"] == "2024-12-31"
    assert RecurrenceRule.from_dict(rule.to_dict()) == rule


@pytest.mark.parametrize(
    "rule",
    [
        {"frequency": "hourly", "anchor_time": "09:00"},
        {"anchor_time": "09:00"},
        {"frequency": "daily"},
        {"frequency": "daily", "anchor_time": "25:00"},
        {"frequency": "daily", "anchor_time": "nine"},
        {"frequency": "daily", "anchor_time": "09:00", "interval": 0},
        {"frequency": "daily", "anchor_time": "09:00", "count": 0},
        {"frequency": "daily", "anchor_time": "09:00", "start_date": "someday"},
        {"frequency": "weekly", "anchor_time": "09:00", "weekdays": [7]},
        {"frequency": "monthly", "anchor_time": "09:00", "day_of_month": 0},
        {"frequency": "monthly", "anchor_time": "09:00", "day_of_month": 32},
        {"frequency": "custom", "cron_expression": "not a cron"},
        {"frequency": "custom", "cron_expression": "99 9 * * *"},
        {"frequency": "custom", "cron_expression": "0 9 31 2 *"},
        {"frequency": "custom"},
        "daily at nine",
    ],
)
def test_malformed_rules_raise_recurrence_error(rule):
    with pytest.raises(RecurrenceError):
        RecurrenceExpander().expand(rule, "UTC", _utc(2024, 1, 1, 0, 0), limit=5)


def test_unknown_timezone_raises_recurrence_error():
    rule = {"frequency": "daily", "anchor_time": "09:00"}
    with pytest.raises(RecurrenceError):
        RecurrenceExpander().expand(rule, "Mars/Olympus_Mons", _utc(2024, 1, 1, 0, 0), limit=5)


def test_recurrence_error_is_a_value_error():
    assert issubclass(RecurrenceError, ValueError)
