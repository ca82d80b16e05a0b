import datetime
import logging
from typing import Callable, Optional

from aggregation_service import WeeklyAggregator, utcnow
from algorithms.iso_week import from_db_timestamp, local_date, week_id
from algorithms.levels import DEFAULT_SCALE, LevelResolver
from algorithms.streaks import StreakState, StreakTracker
from db import AccountRepository, ActivityRepository, ProgressionStateRepository
from models import WeeklyProgression
from prestige_service import badge_for

logger = logging.getLogger(__name__)


class ProgressionService:
    """Incremental progression updates triggered by live user actions."""

    def __init__(
        self,
        aggregator: WeeklyAggregator,
        activity: ActivityRepository,
        states: ProgressionStateRepository,
        accounts: AccountRepository | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.aggregator = aggregator
        self.activity = activity
        self.states = states
        self.accounts = accounts
        self._resolvers: dict[str, LevelResolver] = {}
        self.clock = clock
        self.timezone = aggregator.settings.timezone

    def apply_workout(self, session_id: int) -> Optional[WeeklyProgression]:
        """Credit a saved session and refresh its week; errors propagate."""
        session = self.activity.fetch_session(session_id)
        if session is None:
            raise ValueError("session not found")
        _, user_id, started_at = session
        week = week_id(from_db_timestamp(started_at), self.timezone)
        return self.aggregator.aggregate_user(user_id, week)

    def record_workout(self, session_id: int) -> bool:
        """Best-effort variant for the workout save path.

        A failure here never blocks the save; the next weekly aggregation
        repairs the derived state.
        """
        try:
            self.apply_workout(session_id)
        except Exception:
            logger.exception("Progression update failed for session %s", session_id)
            return False
        return True

    def rank_scale(self, user_id: str) -> str:
        """Rank scale of the user's account tier."""
        if self.accounts is None:
            return DEFAULT_SCALE
        return self.accounts.rank_scale(user_id)

    def resolver_for(self, scale: str) -> LevelResolver:
        if scale not in self._resolvers:
            self._resolvers[scale] = LevelResolver.for_scale(scale)
        return self._resolvers[scale]

    def summary(self, user_id: str) -> Optional[dict]:
        state = self.states.fetch(user_id)
        if state is None:
            return None
        scale = self.rank_scale(user_id)
        resolver = self.resolver_for(scale)
        today = local_date(self.clock(), self.timezone)
        streak = StreakState(state.current_streak, state.longest_streak, state.last_activity_date)
        rank = resolver.rank_progress(state.total_xp)
        return {
            "user_id": user_id,
            "total_xp": state.total_xp,
            "level": resolver.level_for_xp(state.total_xp),
            "level_progress": round(resolver.level_progress(state.total_xp), 4),
            "xp_for_next_level": resolver.xp_for_next_level(state.total_xp),
            "rank": rank.rank,
            "next_rank": rank.next_rank,
            "xp_to_next_rank": rank.xp_to_next,
            "rank_progress": round(rank.progress, 4),
            "rank_scale": scale,
            "current_streak": StreakTracker.current_as_of(streak, today),
            "longest_streak": state.longest_streak,
            "last_activity_date": (
                state.last_activity_date.isoformat() if state.last_activity_date else None
            ),
            "prestige_count": state.prestige_count,
            "prestige_badge": badge_for(state.prestige_count),
            "last_prestige_at": (
                state.last_prestige_at.isoformat() if state.last_prestige_at else None
            ),
        }
