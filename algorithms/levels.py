import bisect
import math
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

# (minimum cumulative XP, rank name), sorted ascending by threshold.
DEFAULT_RANKS: Tuple[Tuple[int, str], ...] = (
    (0, "Rookie"),
    (1_000, "Novice"),
    (5_000, "Apprentice"),
    (15_000, "Intermediate"),
    (40_000, "Advanced"),
    (75_000, "Elite"),
    (100_000, "Legend"),
)

# Premium accounts climb a finer ladder to the same ceiling and one tier past it.
PREMIUM_RANKS: Tuple[Tuple[int, str], ...] = (
    (0, "Rookie"),
    (500, "Beginner"),
    (1_000, "Novice"),
    (2_500, "Trainee"),
    (5_000, "Apprentice"),
    (10_000, "Athlete"),
    (15_000, "Intermediate"),
    (25_000, "Competitor"),
    (40_000, "Advanced"),
    (60_000, "Expert"),
    (75_000, "Elite"),
    (100_000, "Legend"),
    (150_000, "Mythic"),
)

DEFAULT_SCALE = "free"
RANK_SCALES: Dict[str, Tuple[Tuple[int, str], ...]] = {
    "free": DEFAULT_RANKS,
    "premium": PREMIUM_RANKS,
}


@dataclass(frozen=True)
class RankProgress:
    rank: str
    next_rank: Optional[str]
    xp_to_next: int
    progress: float


class LevelResolver:
    """Maps cumulative XP to a level and a named rank.

    The level curve is ``level = floor(0.1 * sqrt(xp))``; it is evaluated
    with integer square roots so that :meth:`level_for_xp` and
    :meth:`xp_for_level` are exact inverses.
    """

    XP_ROOT_DIVISOR: int = 10

    def __init__(self, ranks: Sequence[Tuple[int, str]] = DEFAULT_RANKS) -> None:
        if not ranks:
            raise ValueError("rank table must not be empty")
        ordered = sorted(ranks, key=lambda r: r[0])
        self._thresholds = [int(t) for t, _ in ordered]
        self._names = [n for _, n in ordered]

    @classmethod
    def for_scale(cls, scale: Optional[str] = None) -> "LevelResolver":
        """Resolver over the named rank scale; ``None`` means the free scale."""
        code = scale or DEFAULT_SCALE
        if code not in RANK_SCALES:
            raise ValueError(f"unknown rank scale: {code}")
        return cls(RANK_SCALES[code])

    @classmethod
    def level_for_xp(cls, xp: int) -> int:
        if xp < 0:
            raise ValueError("xp must be non-negative")
        return math.isqrt(int(xp)) // cls.XP_ROOT_DIVISOR

    @classmethod
    def xp_for_level(cls, level: int) -> int:
        """Minimum cumulative XP at which ``level`` is reached."""
        if level < 0:
            raise ValueError("level must be non-negative")
        return (cls.XP_ROOT_DIVISOR * level) ** 2

    @classmethod
    def xp_for_next_level(cls, xp: int) -> int:
        return cls.xp_for_level(cls.level_for_xp(xp) + 1)

    @classmethod
    def level_progress(cls, xp: int) -> float:
        """Fraction of the way from the current level threshold to the next."""
        level = cls.level_for_xp(xp)
        floor_xp = cls.xp_for_level(level)
        ceiling_xp = cls.xp_for_level(level + 1)
        return (xp - floor_xp) / (ceiling_xp - floor_xp)

    def rank_for_xp(self, xp: int) -> str:
        # Below every threshold falls back to the lowest tier.
        idx = bisect.bisect_right(self._thresholds, xp) - 1
        return self._names[max(idx, 0)]

    def rank_progress(self, xp: int) -> RankProgress:
        idx = max(bisect.bisect_right(self._thresholds, xp) - 1, 0)
        if idx + 1 >= len(self._thresholds):
            return RankProgress(self._names[idx], None, 0, 1.0)
        current_min = self._thresholds[idx]
        next_min = self._thresholds[idx + 1]
        span = next_min - current_min
        progress = (xp - current_min) / span if span > 0 else 1.0
        return RankProgress(
            self._names[idx],
            self._names[idx + 1],
            max(0, next_min - xp),
            min(1.0, max(0.0, progress)),
        )

    def resolve(self, xp: int) -> tuple[int, str]:
        return self.level_for_xp(xp), self.rank_for_xp(xp)
