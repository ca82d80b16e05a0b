import datetime
import math
from dataclasses import dataclass
from typing import Callable, List, Optional

from algorithms.iso_week import to_db_timestamp
from db import PrestigeHistoryRepository, ProgressionStateRepository
from models import PrestigeHistoryEntry, ProgressionState
from settings_schema import EngineSettings

PRESTIGE_BADGES = (
    "Bronze Prestige",
    "Silver Prestige",
    "Gold Prestige",
    "Platinum Prestige",
    "Diamond Prestige",
    "Master Prestige",
    "Grandmaster Prestige",
)

REASON_BELOW_THRESHOLD = "below_threshold"
REASON_COOLDOWN = "cooldown"


def badge_for(prestige_count: int) -> Optional[str]:
    """Badge shown for a prestige count; counts past the table keep the top badge."""
    if prestige_count <= 0:
        return None
    if prestige_count <= len(PRESTIGE_BADGES):
        return PRESTIGE_BADGES[prestige_count - 1]
    return f"{PRESTIGE_BADGES[-1]} {prestige_count}"


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class PrestigeEligibility:
    eligible: bool
    reason: Optional[str]
    prestige_count: int
    current_xp: int
    required_xp: int
    last_prestige_at: Optional[datetime.datetime] = None
    next_eligible_at: Optional[datetime.datetime] = None
    days_remaining: int = 0

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "prestige_count": self.prestige_count,
            "current_xp": self.current_xp,
            "required_xp": self.required_xp,
            "last_prestige_at": _iso(self.last_prestige_at),
            "next_eligible_at": _iso(self.next_eligible_at),
            "days_remaining": self.days_remaining,
            "next_badge": badge_for(self.prestige_count + 1),
        }


@dataclass(frozen=True)
class PrestigeOutcome:
    success: bool
    eligibility: PrestigeEligibility
    entry: Optional[PrestigeHistoryEntry] = None

    @property
    def prestige_count(self) -> int:
        if self.entry is not None:
            return self.entry.prestige_number
        return self.eligibility.prestige_count

    def to_dict(self, cooldown: datetime.timedelta) -> dict:
        if not self.success:
            return {"success": False, **self.eligibility.to_dict()}
        created = datetime.datetime.fromisoformat(self.entry.created_at).replace(
            tzinfo=datetime.timezone.utc
        )
        return {
            "success": True,
            "prestige_count": self.prestige_count,
            "badge_name": badge_for(self.prestige_count),
            "next_eligible_at": _iso(created + cooldown),
            "history": self.entry.to_dict(),
        }


class PrestigeEngine:
    """Eligibility gate and atomic XP reset."""

    def __init__(
        self,
        states: ProgressionStateRepository,
        history: PrestigeHistoryRepository,
        settings: EngineSettings,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self.states = states
        self.history_repo = history
        self.min_xp = settings.prestige_min_xp
        self.cooldown = datetime.timedelta(days=settings.prestige_cooldown_days)
        self.clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))

    def evaluate(
        self, state: Optional[ProgressionState], now: datetime.datetime
    ) -> PrestigeEligibility:
        """Pure eligibility decision over a state snapshot."""
        if state is None:
            return PrestigeEligibility(False, REASON_BELOW_THRESHOLD, 0, 0, self.min_xp)
        if state.last_prestige_at is not None:
            resumes = state.last_prestige_at + self.cooldown
            if now < resumes:
                remaining = math.ceil((resumes - now).total_seconds() / 86400)
                return PrestigeEligibility(
                    False,
                    REASON_COOLDOWN,
                    state.prestige_count,
                    state.total_xp,
                    self.min_xp,
                    state.last_prestige_at,
                    resumes,
                    remaining,
                )
        if state.total_xp < self.min_xp:
            return PrestigeEligibility(
                False,
                REASON_BELOW_THRESHOLD,
                state.prestige_count,
                state.total_xp,
                self.min_xp,
                state.last_prestige_at,
            )
        return PrestigeEligibility(
            True,
            None,
            state.prestige_count,
            state.total_xp,
            self.min_xp,
            state.last_prestige_at,
        )

    def check_eligibility(
        self, user_id: str, now: Optional[datetime.datetime] = None
    ) -> PrestigeEligibility:
        return self.evaluate(self.states.fetch(user_id), now or self.clock())

    def enter(self, user_id: str, now: Optional[datetime.datetime] = None) -> PrestigeOutcome:
        """Check and reset in one transaction.

        Ineligibility is a normal outcome; a lost race raises
        :class:`errors.ConcurrencyConflict`.
        """
        now = now or self.clock()
        # Stored timestamps have second precision.
        now = now.replace(microsecond=0)
        eligibility, entry = self.states.prestige_transition(
            user_id, lambda state: self.evaluate(state, now), to_db_timestamp(now)
        )
        return PrestigeOutcome(entry is not None, eligibility, entry)

    def history(self, user_id: str) -> List[PrestigeHistoryEntry]:
        return self.history_repo.fetch_for_user(user_id)
