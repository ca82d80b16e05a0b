import math
from dataclasses import dataclass


@dataclass(frozen=True)
class XPFormula:
    """Policy constants for awarding XP per qualifying workout.

    ``award`` is non-decreasing in volume, never below ``base_xp`` for a
    qualifying workout and always an integer.
    """

    base_xp: int = 100
    xp_per_kg: float = 1.0
    first_of_day_bonus: int = 0

    def __post_init__(self) -> None:
        if self.base_xp <= 0:
            raise ValueError("base_xp must be positive")
        if self.xp_per_kg < 0:
            raise ValueError("xp_per_kg must be non-negative")
        if self.first_of_day_bonus < 0:
            raise ValueError("first_of_day_bonus must be non-negative")

    def award(self, volume_kg: float, *, first_of_day: bool = False, qualifying: bool = True) -> int:
        if not qualifying:
            return 0
        if volume_kg < 0:
            raise ValueError("volume_kg must be non-negative")
        xp = self.base_xp + math.floor(volume_kg * self.xp_per_kg)
        if first_of_day:
            xp += self.first_of_day_bonus
        return int(xp)
