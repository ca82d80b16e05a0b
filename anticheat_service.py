"""Statistical anomaly detection feeding the human review queue.

Findings are informational only. They are stored as pending flags and
never alter a user's progression; an existing flag for the same finding is
left untouched so that re-running detection cannot reset a review.
"""

import datetime
import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence

from algorithms.iso_week import from_db_timestamp, previous_weeks, to_db_timestamp, week_bounds
from algorithms.stats import linear_recency_weights, percentile_cutoff, trailing_average
from algorithms.volume import VolumeCalculator
from db import AccountRepository, AntiCheatFlagRepository, WeeklyProgressionRepository
from errors import InvalidInput
from models import FlagType, Severity, WeeklyProgression
from settings_schema import EngineSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Finding:
    user_id: str
    flag_type: FlagType
    severity: Severity
    iso_week: int
    reference: str = ""
    details: str = ""


class AntiCheatHeuristics:
    """Policy-owned rules over weekly deltas and raw set parameters."""

    def __init__(
        self,
        weekly: WeeklyProgressionRepository,
        flags: AntiCheatFlagRepository,
        accounts: AccountRepository,
        settings: EngineSettings,
    ) -> None:
        self.weekly = weekly
        self.flags = flags
        self.accounts = accounts
        self.settings = settings

    def check_sessions(
        self,
        iso_week: int,
        sessions: Iterable,
        awards: Optional[Mapping[int, int]] = None,
    ) -> List[Finding]:
        """Impossible sets, scripted-looking sessions and implausible output.

        ``awards`` maps session ids to the XP they earned; the XP rate rule
        only runs for sessions listed there.
        """
        s = self.settings
        awards = awards or {}
        findings: List[Finding] = []
        for session in sessions:
            entries = session.entries
            volume = 0.0
            for index, entry in enumerate(entries, start=1):
                try:
                    VolumeCalculator.validate(entry)
                except InvalidInput:
                    continue
                weight_kg = entry.weight_kg()
                if not entry.is_warmup:
                    volume += entry.reps * weight_kg
                if weight_kg > s.max_set_weight_kg or entry.reps > s.max_set_reps:
                    findings.append(
                        Finding(
                            session.user_id,
                            FlagType.IMPOSSIBLE_SET,
                            Severity.MEDIUM,
                            iso_week,
                            f"set:{session.session_id}:{index}",
                            f"{entry.reps} reps at {weight_kg:.1f}kg exceeds ceiling "
                            f"({s.max_set_reps} reps, {s.max_set_weight_kg:g}kg)",
                        )
                    )
            if len(entries) > s.max_sets_per_session:
                findings.append(
                    Finding(
                        session.user_id,
                        FlagType.SCRIPTED_PATTERN,
                        Severity.HIGH,
                        iso_week,
                        f"session:{session.session_id}:sets",
                        f"{len(entries)} sets (max {s.max_sets_per_session})",
                    )
                )
            fast = self._fast_intervals(entries)
            if fast:
                findings.append(
                    Finding(
                        session.user_id,
                        FlagType.SCRIPTED_PATTERN,
                        Severity.MEDIUM,
                        iso_week,
                        f"session:{session.session_id}:interval",
                        f"{fast} sets logged less than {s.min_set_interval_seconds:g}s apart",
                    )
                )
            if volume > s.max_session_volume_kg:
                findings.append(
                    Finding(
                        session.user_id,
                        FlagType.EXCESSIVE_VOLUME,
                        Severity.HIGH,
                        iso_week,
                        f"session:{session.session_id}:volume",
                        f"{volume:.0f}kg in one session (max {s.max_session_volume_kg:g}kg)",
                    )
                )
            if session.session_id in awards:
                rate = self._xp_rate(session, awards[session.session_id])
                if rate is not None and rate > s.max_xp_per_hour:
                    findings.append(
                        Finding(
                            session.user_id,
                            FlagType.XP_RATE,
                            Severity.MEDIUM,
                            iso_week,
                            f"session:{session.session_id}:rate",
                            f"{rate:.0f} XP/hour (max {s.max_xp_per_hour:g})",
                        )
                    )
        return findings

    def _xp_rate(self, session, xp: int) -> Optional[float]:
        ends = [e.logged_at for e in session.entries if e.logged_at]
        if session.ended_at:
            ends.append(session.ended_at)
        if not ends:
            return None
        start = from_db_timestamp(session.started_at)
        end = max(from_db_timestamp(t) for t in ends)
        if end <= start:
            return None
        minutes = max((end - start).total_seconds() / 60, self.settings.min_rate_minutes)
        return xp * 60 / minutes

    def _fast_intervals(self, entries: Sequence) -> int:
        times = [from_db_timestamp(e.logged_at) for e in entries if e.logged_at]
        times.sort()
        limit = self.settings.min_set_interval_seconds
        return sum(
            1 for a, b in zip(times, times[1:]) if (b - a).total_seconds() < limit
        )

    def check_week(
        self, iso_week: int, rows: Sequence[WeeklyProgression]
    ) -> List[Finding]:
        """Spikes against the trailing average and new-account outliers."""
        if not rows:
            return []
        s = self.settings
        weeks = previous_weeks(iso_week, s.trailing_weeks)
        user_ids = [r.user_id for r in rows]
        history = self.weekly.fetch_history(user_ids, weeks)
        weights = linear_recency_weights(len(weeks)) if s.weighted_trailing_average else None

        findings: List[Finding] = []
        for row in rows:
            past = history.get(row.user_id, {})
            if len(past) < s.min_trailing_weeks:
                continue
            xp_hist = [past[w].xp if w in past else 0 for w in weeks]
            vol_hist = [past[w].volume_kg if w in past else 0.0 for w in weeks]
            finding = self._spike(
                row, FlagType.XP_SPIKE, row.xp, trailing_average(xp_hist, weights), s.xp_spike_multiplier
            )
            if finding:
                findings.append(finding)
            finding = self._spike(
                row,
                FlagType.VOLUME_SPIKE,
                row.volume_kg,
                trailing_average(vol_hist, weights),
                s.volume_spike_multiplier,
            )
            if finding:
                findings.append(finding)

        findings.extend(self._new_account_risk(iso_week, rows))
        return findings

    @staticmethod
    def _spike(
        row: WeeklyProgression,
        flag_type: FlagType,
        value: float,
        average: float,
        multiplier: float,
    ) -> Optional[Finding]:
        if average <= 0 or value <= multiplier * average:
            return None
        severity = Severity.HIGH if value > 2 * multiplier * average else Severity.MEDIUM
        return Finding(
            row.user_id,
            flag_type,
            severity,
            row.iso_week,
            "",
            f"{value:g} this week vs trailing average {average:.1f} (x{multiplier:g})",
        )

    def _new_account_risk(
        self, iso_week: int, rows: Sequence[WeeklyProgression]
    ) -> List[Finding]:
        s = self.settings
        if len(rows) < s.new_account_min_participants:
            return []
        cutoff = percentile_cutoff([r.xp for r in rows], s.new_account_percentile)
        top = [r for r in rows if r.xp >= cutoff]
        if not top:
            return []
        created = self.accounts.created_at_many([r.user_id for r in top])
        _, week_end = week_bounds(iso_week, s.timezone)
        window = datetime.timedelta(days=s.new_account_days)
        findings = []
        for row in top:
            if row.user_id not in created:
                continue
            age = week_end - from_db_timestamp(created[row.user_id])
            if age < window:
                findings.append(
                    Finding(
                        row.user_id,
                        FlagType.NEW_ACCOUNT_RISK,
                        Severity.MEDIUM,
                        iso_week,
                        "",
                        f"account {age.days}d old with {row.xp} XP (top {100 - s.new_account_percentile:g}%)",
                    )
                )
        return findings

    def record(self, findings: Iterable[Finding], now: datetime.datetime) -> int:
        """Store findings as pending flags; returns how many were new."""
        flagged_at = to_db_timestamp(now)
        created = 0
        for f in findings:
            if self.flags.add(
                f.user_id,
                f.flag_type,
                f.severity,
                flagged_at,
                iso_week=f.iso_week,
                reference=f.reference,
                details=f.details,
            ):
                created += 1
                logger.info("Flagged %s for %s (%s)", f.user_id, f.flag_type.value, f.details)
        return created
