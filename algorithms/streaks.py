"""Consecutive-day workout streaks.

Dates are calendar dates in the engine's fixed reference timezone. A streak
continues when the next qualifying date is exactly one day after the
previous one; a gap of two or more days breaks it. With forgiveness
enabled a single missed day is bridged, at most once per forgiveness
window. The current streak only counts while the latest qualifying date is
today or yesterday.
"""

import datetime
from dataclasses import dataclass, replace
from typing import Iterable, Optional


@dataclass(frozen=True)
class StreakState:
    current: int = 0
    longest: int = 0
    last_date: Optional[datetime.date] = None
    forgiveness_used_on: Optional[datetime.date] = None


class StreakTracker:
    """Computes current and longest streaks from activity dates."""

    def __init__(self, forgiveness: bool = False, forgiveness_window_days: int = 30) -> None:
        if forgiveness_window_days < 1:
            raise ValueError("forgiveness_window_days must be at least 1")
        self.forgiveness = forgiveness
        self.forgiveness_window_days = forgiveness_window_days

    def _can_forgive(
        self, on: datetime.date, used_on: Optional[datetime.date]
    ) -> bool:
        if not self.forgiveness:
            return False
        return used_on is None or (on - used_on).days >= self.forgiveness_window_days

    def compute(
        self, dates: Iterable[datetime.date], today: datetime.date
    ) -> StreakState:
        """Return the streak state derived from the full activity history."""
        distinct = sorted({d for d in dates if d <= today})
        if not distinct:
            return StreakState()
        state = StreakState(current=1, longest=1, last_date=distinct[0])
        for day in distinct[1:]:
            state = self.advance(state, day)
        return replace(state, current=self.current_as_of(state, today))

    def advance(self, state: StreakState, activity_date: datetime.date) -> StreakState:
        """Fold one qualifying activity date into ``state``.

        Dates on or before ``state.last_date`` leave the state unchanged; a
        back-dated workout is repaired by :meth:`compute` instead.
        """
        last = state.last_date
        if last is None:
            return StreakState(1, max(state.longest, 1), activity_date, state.forgiveness_used_on)
        if activity_date <= last:
            return state
        gap = (activity_date - last).days
        used_on = state.forgiveness_used_on
        if gap == 1:
            current = state.current + 1
        elif gap == 2 and state.current > 0 and self._can_forgive(activity_date, used_on):
            current = state.current + 1
            used_on = activity_date
        else:
            current = 1
        return StreakState(current, max(state.longest, current), activity_date, used_on)

    @staticmethod
    def current_as_of(state: StreakState, today: datetime.date) -> int:
        """Stored streak length, or 0 once the streak has lapsed."""
        if state.last_date is None:
            return 0
        if (today - state.last_date).days > 1:
            return 0
        return state.current
