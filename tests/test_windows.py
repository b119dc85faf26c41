from datetime import datetime, timedelta, timezone

from nudge.reminders.windows import DAY_AHEAD, EXACT, NEAR, WindowCalculator, default_policies

UTC = timezone.utc
NOW = datetime(2023, 1, 1, 12, 0, tzinfo=UTC)


def _window(trigger, window_type):
    return {w.window_type: w for w in WindowCalculator().calculate(trigger)}[window_type]


def test_windows_at_fixed_offsets_from_trigger():
    trigger = datetime(2023, 3, 15, 9, 30, tzinfo=UTC)
    windows = WindowCalculator().calculate(trigger)

    assert [w.window_type for w in windows] == [DAY_AHEAD, NEAR, EXACT]
    assert [w.scheduled_at for w in windows] == [
        trigger - timedelta(hours=24),
        trigger - timedelta(hours=3),
        trigger,
    ]


def test_day_ahead_window_for_reminder_one_day_out():
    trigger = datetime(2023, 1, 2, 12, 0, tzinfo=UTC)
    window = _window(trigger, DAY_AHEAD)

    assert window.scheduled_at == NOW
    assert window.band == (NOW - timedelta(minutes=3), NOW + timedelta(minutes=3))
    assert window.is_due(NOW)

    # Shifted by the lead, the band is the set of triggers announced at NOW
    lead = trigger - window.scheduled_at
    assert (window.opens_at + lead, window.closes_at + lead) == (
        datetime(2023, 1, 2, 11, 57, tzinfo=UTC),
        datetime(2023, 1, 2, 12, 3, tzinfo=UTC),
    )


def test_near_window_for_reminder_three_hours_out():
    trigger = datetime(2023, 1, 1, 15, 0, tzinfo=UTC)
    window = _window(trigger, NEAR)

    assert window.scheduled_at == NOW
    assert window.scheduled_at + timedelta(hours=3) == datetime(2023, 1, 1, 15, 0, tzinfo=UTC)
    assert window.is_due(NOW)
    assert not window.is_superseded(NOW)


def test_band_opens_three_minutes_early():
    trigger = datetime(2023, 1, 2, 12, 0, tzinfo=UTC)
    window = _window(trigger, DAY_AHEAD)

    assert not window.is_due(NOW - timedelta(minutes=4))
    assert window.is_due(NOW - timedelta(minutes=3))


def test_exact_window_never_fires_early():
    trigger = datetime(2023, 1, 1, 15, 0, tzinfo=UTC)
    window = _window(trigger, EXACT)

    assert window.tolerance == timedelta(0)
    assert not window.is_due(trigger - timedelta(seconds=1))
    assert window.is_due(trigger)
    assert window.superseded_at is None
    assert not window.is_superseded(trigger + timedelta(days=3))


def test_lead_windows_superseded_by_the_next_window():
    trigger = datetime(2023, 1, 2, 12, 0, tzinfo=UTC)
    day_ahead, near, exact = WindowCalculator().calculate(trigger)

    assert day_ahead.superseded_at == near.scheduled_at
    assert near.superseded_at == exact.scheduled_at
    assert day_ahead.is_superseded(near.scheduled_at)
    assert not day_ahead.is_superseded(near.scheduled_at - timedelta(seconds=1))


def test_dropping_a_window_leaves_the_others_unchanged():
    trigger = datetime(2023, 6, 1, 8, 0, tzinfo=UTC)
    full = {w.window_type: w.scheduled_at for w in WindowCalculator().calculate(trigger)}

    policies = [p for p in default_policies() if p.window_type != NEAR]
    reduced = WindowCalculator(policies=policies).calculate(trigger)

    assert [w.window_type for w in reduced] == [DAY_AHEAD, EXACT]
    for window in reduced:
        assert window.scheduled_at == full[window.window_type]


def test_past_trigger_yields_elapsed_windows():
    trigger = NOW - timedelta(hours=1)
    day_ahead, near, exact = WindowCalculator().calculate(trigger)

    assert all(w.is_due(NOW) for w in (day_ahead, near, exact))
    assert day_ahead.is_superseded(NOW)
    assert near.is_superseded(NOW)
    assert not exact.is_superseded(NOW)


def test_naive_trigger_is_treated_as_utc():
    naive = datetime(2023, 1, 2, 12, 0)
    aware = naive.replace(tzinfo=UTC)

    assert WindowCalculator().calculate(naive) == WindowCalculator().calculate(aware)
