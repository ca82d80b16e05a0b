from .weight_converter import WeightConverter, WeightUnit
from .volume import SetEntry, VolumeCalculator
from .xp_formula import XPFormula
from .levels import DEFAULT_RANKS, PREMIUM_RANKS, RANK_SCALES, LevelResolver, RankProgress
from .streaks import StreakState, StreakTracker

__all__ = [
    "WeightConverter",
    "WeightUnit",
    "SetEntry",
    "VolumeCalculator",
    "XPFormula",
    "DEFAULT_RANKS",
    "PREMIUM_RANKS",
    "RANK_SCALES",
    "LevelResolver",
    "RankProgress",
    "StreakState",
    "StreakTracker",
]
