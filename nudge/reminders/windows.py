"""
Notification windows: the lead-time categories at which a reminder occurrence is announced.

The policy is a pure function of the trigger instant. Every window is computed from the
trigger alone, so dropping or failing one window never moves another.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .config import settings as default_settings, ReminderSettings
from nudge.utils.timezone import to_utc_aware


DAY_AHEAD = "day_ahead"
NEAR = "near"
EXACT = "exact"

WINDOW_TYPES = (DAY_AHEAD, NEAR, EXACT)

# Title prefix used when rendering a notification for each window
WINDOW_PREFIXES = {
    DAY_AHEAD: "Tomorrow:",
    NEAR: "In 3 hours:",
    EXACT: "Now:",
}


@dataclass(frozen=True)
class Window:
    window_type: str
    scheduled_at: datetime
    tolerance: timedelta
    superseded_at: Optional[datetime] = None

    @property
    def opens_at(self) -> datetime:
        return self.scheduled_at - self.tolerance

    @property
    def closes_at(self) -> datetime:
        return self.scheduled_at + self.tolerance

    @property
    def band(self) -> Tuple[datetime, datetime]:
        return self.opens_at, self.closes_at

    def is_due(self, now: datetime) -> bool:
        return self.opens_at <= now

    def is_superseded(self, now: datetime) -> bool:
        return self.superseded_at is not None and now >= self.superseded_at


@dataclass(frozen=True)
class WindowPolicy:
    window_type: str
    lead: timedelta
    tolerance: timedelta


def default_policies(settings: ReminderSettings = default_settings) -> List[WindowPolicy]:
    """Window policies ordered from the longest lead to the trigger itself."""
    lead_tolerance = timedelta(minutes=settings.LEAD_TOLERANCE_MINUTES)
    return [
        WindowPolicy(DAY_AHEAD, timedelta(minutes=settings.DAY_AHEAD_LEAD_MINUTES), lead_tolerance),
        WindowPolicy(NEAR, timedelta(minutes=settings.NEAR_LEAD_MINUTES), lead_tolerance),
        WindowPolicy(EXACT, timedelta(0), timedelta(minutes=settings.EXACT_TOLERANCE_MINUTES)),
    ]


class WindowCalculator:
    """Turns one trigger instant into its ordered notification windows"""

    def __init__(self, policies: Optional[List[WindowPolicy]] = None, settings: ReminderSettings = default_settings):
        policies = list(policies) if policies is not None else default_policies(settings)
        self.policies = sorted(policies, key=lambda p: p.lead, reverse=True)

    @property
    def max_tolerance(self) -> timedelta:
        return max((p.tolerance for p in self.policies), default=timedelta(0))

    def calculate(self, trigger_at: datetime) -> List[Window]:
        trigger_at = to_utc_aware(trigger_at)
        scheduled = [trigger_at - p.lead for p in self.policies]
        windows = []
        for idx, policy in enumerate(self.policies):
            # A lead window is stale once the next, closer window has opened
            superseded_at = scheduled[idx + 1] if idx + 1 < len(self.policies) else None
            windows.append(
                Window(
                    window_type=policy.window_type,
                    scheduled_at=scheduled[idx],
                    tolerance=policy.tolerance,
                    superseded_at=superseded_at,
                )
            )
        return windows
