"""Weekly progression aggregation.

For one ISO week the aggregator re-derives a row per user with qualifying
activity and upserts it keyed on ``(user_id, iso_week)``. Users are read a
page at a time and each user's rows and XP credit are written
independently, so an interrupted run is resumed by simply running it again.
"""

import datetime
import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from algorithms.iso_week import (
    from_db_timestamp,
    local_date,
    parse_week_id,
    to_db_timestamp,
    week_bounds,
    week_id,
)
from algorithms.streaks import StreakTracker
from algorithms.volume import SetEntry, VolumeCalculator
from algorithms.xp_formula import XPFormula
from db import (
    ActivityRepository,
    GymMembershipRepository,
    PersonalRecordRepository,
    ProgressionStateRepository,
    WeeklyProgressionRepository,
)
from errors import InvalidInput, UpstreamUnavailable
from models import WeeklyProgression
from settings_schema import EngineSettings

logger = logging.getLogger(__name__)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class SessionActivity:
    session_id: int
    user_id: str
    started_at: str
    entries: Tuple[SetEntry, ...]
    ended_at: Optional[str] = None


@dataclass(frozen=True)
class UserWeek:
    """Derived figures for one user in one week."""

    row: WeeklyProgression
    awards: Tuple[Tuple[int, int], ...]
    sessions: Tuple[SessionActivity, ...]


@dataclass(frozen=True)
class AggregationSummary:
    iso_week: int
    users_updated: int
    rows_changed: int = 0
    rows_pruned: int = 0
    flags_raised: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class WeeklyAggregator:
    """Builds and upserts :class:`WeeklyProgression` rows."""

    def __init__(
        self,
        activity: ActivityRepository,
        records: PersonalRecordRepository,
        gyms: GymMembershipRepository,
        weekly: WeeklyProgressionRepository,
        states: ProgressionStateRepository,
        settings: EngineSettings,
        anticheat=None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.activity = activity
        self.records = records
        self.gyms = gyms
        self.weekly = weekly
        self.states = states
        self.settings = settings
        self.anticheat = anticheat
        self.clock = clock
        self.formula = XPFormula(
            base_xp=settings.base_xp,
            xp_per_kg=settings.xp_per_kg,
            first_of_day_bonus=settings.first_of_day_bonus,
        )
        self.streaks = StreakTracker(
            forgiveness=settings.streak_forgiveness,
            forgiveness_window_days=settings.forgiveness_window_days,
        )

    def resolve_week(self, iso_week: int | str | None = None) -> int:
        if iso_week is None:
            return week_id(self.clock(), self.settings.timezone)
        return parse_week_id(iso_week)

    def run(self, iso_week: int | str | None = None) -> AggregationSummary:
        """Aggregate every user with qualifying activity in ``iso_week``."""
        week = self.resolve_week(iso_week)
        start, end = (to_db_timestamp(t) for t in week_bounds(week, self.settings.timezone))
        now = self.clock()
        users = changed = flags = 0
        after = ""
        done: set[str] = set()
        try:
            while True:
                page = self._read("activity store", self.activity.active_user_page, start, end, after, self.settings.page_size)
                if not page:
                    break
                for user_week in self.build(page, week, start, end, now):
                    changed += self._commit(user_week, now)
                    done.add(user_week.row.user_id)
                    users += 1
                    flags += self._check_sessions(week, user_week, now)
                after = page[-1]
            owners = self._read("activity store", self.activity.session_owners, start, end)
            self._revoke_credit(owners, done, now)
            pruned = self.weekly.prune_inactive(week, start, end)
            if self.anticheat is not None:
                rows = self.weekly.fetch_week(week)
                flags += self.anticheat.record(self.anticheat.check_week(week, rows), now)
        except UpstreamUnavailable:
            logger.error("Aborted weekly aggregation for week %s after %d users", week, users)
            raise
        logger.info(
            "Aggregated weekly XP for %d users (week %s, %d changed, %d pruned, %d flags)",
            users,
            week,
            changed,
            pruned,
            flags,
        )
        return AggregationSummary(week, users, changed, pruned, flags)

    def aggregate_user(
        self, user_id: str, iso_week: int | str | None = None
    ) -> Optional[WeeklyProgression]:
        """Re-derive a single user's row for ``iso_week``.

        Returns ``None`` and removes any stale row when the user has no
        qualifying activity that week.
        """
        week = self.resolve_week(iso_week)
        start, end = (to_db_timestamp(t) for t in week_bounds(week, self.settings.timezone))
        now = self.clock()
        built = self.build([user_id], week, start, end, now)
        if not built:
            sessions = self._read("activity store", self.activity.fetch_sessions, [user_id], start, end)
            self._revoke_credit([(s[0], s[1]) for s in sessions], set(), now)
            self.weekly.delete_row(user_id, week)
            return None
        user_week = built[0]
        self._commit(user_week, now)
        self._check_sessions(week, user_week, now)
        return user_week.row

    def build(
        self,
        user_ids: Sequence[str],
        iso_week: int,
        start: str,
        end: str,
        now: datetime.datetime,
    ) -> List[UserWeek]:
        """Pure fold of one page of users' activity into weekly rows."""
        if not user_ids:
            return []
        sessions = self._read("activity store", self.activity.fetch_sessions, user_ids, start, end)
        sets = self._read("activity store", self.activity.fetch_sets, [s[0] for s in sessions])
        prs = self._read("personal-record store", self.records.count_by_user, user_ids, start, end)
        gyms = self._affiliations(user_ids, iso_week)

        by_user: Dict[str, List[SessionActivity]] = {}
        for session_id, user_id, started_at, ended_at in sessions:
            by_user.setdefault(user_id, []).append(
                SessionActivity(
                    session_id, user_id, started_at, tuple(sets.get(session_id, [])), ended_at
                )
            )

        updated_at = to_db_timestamp(now)
        result: List[UserWeek] = []
        for user_id in sorted(by_user):
            user_week = self._fold_user(
                user_id, iso_week, by_user[user_id], prs.get(user_id, 0), gyms.get(user_id), updated_at
            )
            if user_week is not None:
                result.append(user_week)
        return result

    def _fold_user(
        self,
        user_id: str,
        iso_week: int,
        sessions: Sequence[SessionActivity],
        pr_count: int,
        gym_code: Optional[str],
        updated_at: str,
    ) -> Optional[UserWeek]:
        xp = 0
        volume = 0.0
        awards: List[Tuple[int, int]] = []
        seen_days: set[datetime.date] = set()
        for session in sessions:
            if not VolumeCalculator.is_qualifying(session.entries):
                continue
            try:
                session_volume = VolumeCalculator.training_volume(session.entries)
            except InvalidInput as e:
                logger.warning("Skipping session %s of user %s: %s", session.session_id, user_id, e)
                continue
            day = local_date(from_db_timestamp(session.started_at), self.settings.timezone)
            award = self.formula.award(session_volume, first_of_day=day not in seen_days)
            seen_days.add(day)
            xp += award
            volume += session_volume
            awards.append((session.session_id, award))
        if not awards:
            return None
        row = WeeklyProgression(
            user_id=user_id,
            iso_week=iso_week,
            xp=xp,
            workouts=len(awards),
            volume_kg=round(volume, 2),
            pr_count=pr_count,
            gym_code=gym_code,
            updated_at=updated_at,
        )
        return UserWeek(row, tuple(awards), tuple(sessions))

    def _commit(self, user_week: UserWeek, now: datetime.datetime) -> int:
        """Upsert the weekly row and repair lifetime XP and streak state."""
        row = user_week.row
        changed = self.weekly.upsert(row)
        now_text = to_db_timestamp(now)
        awarded = {sid for sid, _ in user_week.awards}
        revoke = [s.session_id for s in user_week.sessions if s.session_id not in awarded]
        self.states.credit_sessions(row.user_id, user_week.awards, now_text, revoke)
        times = self._read("activity store", self.activity.qualifying_session_times, row.user_id)
        dates = [local_date(from_db_timestamp(t), self.settings.timezone) for t in times]
        today = local_date(now, self.settings.timezone)
        self.states.set_streak(row.user_id, self.streaks.compute(dates, today), now_text)
        return 1 if changed else 0

    def _check_sessions(self, iso_week: int, user_week: UserWeek, now: datetime.datetime) -> int:
        if self.anticheat is None:
            return 0
        findings = self.anticheat.check_sessions(iso_week, user_week.sessions, dict(user_week.awards))
        return self.anticheat.record(findings, now)

    def _revoke_credit(
        self, owners: Sequence[Tuple[int, str]], skip: set[str], now: datetime.datetime
    ) -> None:
        """Withdraw lifetime XP of sessions that stopped qualifying."""
        candidates = [sid for sid, user_id in owners if user_id not in skip]
        if not candidates:
            return
        now_text = to_db_timestamp(now)
        for user_id, session_ids in self.states.credited_sessions(candidates).items():
            delta = self.states.credit_sessions(user_id, [], now_text, session_ids)
            logger.info("Withdrew %d XP from user %s for %d sessions", -delta, user_id, len(session_ids))

    def _affiliations(self, user_ids: Sequence[str], iso_week: int) -> Dict[str, Optional[str]]:
        try:
            return dict(self.gyms.affiliations(user_ids))
        except sqlite3.Error as e:
            # Affiliation is optional enrichment; keep what was stored before.
            logger.warning("Gym directory unavailable, keeping stored affiliation: %s", e)
            previous: Dict[str, Optional[str]] = {}
            for user_id in user_ids:
                row = self.weekly.fetch(user_id, iso_week)
                previous[user_id] = row.gym_code if row else None
            return previous

    @staticmethod
    def _read(source: str, func, *args):
        try:
            return func(*args)
        except sqlite3.Error as e:
            raise UpstreamUnavailable(source, str(e)) from e
