import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from algorithms import DEFAULT_RANKS, RANK_SCALES, LevelResolver, XPFormula


def test_award_is_base_plus_floored_volume():
    formula = XPFormula()
    assert formula.award(1800) == 1900
    assert formula.award(1800.99) == 1900
    assert formula.award(0) == 100
    assert formula.award(0.4) == 100


def test_award_bonus_and_non_qualifying():
    formula = XPFormula(base_xp=50, xp_per_kg=0.5, first_of_day_bonus=25)
    assert formula.award(101, first_of_day=True) == 50 + 50 + 25
    assert formula.award(101) == 100
    assert formula.award(5000, qualifying=False) == 0


def test_award_is_monotonic():
    formula = XPFormula()
    awards = [formula.award(v / 3) for v in range(0, 3000)]
    assert awards == sorted(awards)
    assert all(isinstance(a, int) for a in awards)


def test_award_rejects_bad_input():
    with pytest.raises(ValueError):
        XPFormula().award(-1)
    with pytest.raises(ValueError):
        XPFormula(base_xp=0)
    with pytest.raises(ValueError):
        XPFormula(xp_per_kg=-1)


def test_level_thresholds():
    assert LevelResolver.level_for_xp(0) == 0
    assert LevelResolver.level_for_xp(99) == 0
    assert LevelResolver.level_for_xp(100) == 1
    assert LevelResolver.level_for_xp(399) == 1
    assert LevelResolver.level_for_xp(400) == 2
    assert LevelResolver.level_for_xp(3800) == 6
    assert LevelResolver.level_for_xp(100_000) == 31


def test_level_and_threshold_are_inverse():
    for xp in range(0, 250_000, 97):
        level = LevelResolver.level_for_xp(xp)
        assert LevelResolver.xp_for_level(level) <= xp < LevelResolver.xp_for_level(level + 1)
    for level in range(0, 200):
        assert LevelResolver.level_for_xp(LevelResolver.xp_for_level(level)) == level


def test_level_progress():
    assert LevelResolver.xp_for_next_level(150) == 400
    assert LevelResolver.level_progress(100) == 0.0
    assert LevelResolver.level_progress(250) == pytest.approx(0.5)
    with pytest.raises(ValueError):
        LevelResolver.level_for_xp(-1)


def test_rank_lookup():
    resolver = LevelResolver()
    assert resolver.rank_for_xp(0) == "Rookie"
    assert resolver.rank_for_xp(999) == "Rookie"
    assert resolver.rank_for_xp(1_000) == "Novice"
    assert resolver.rank_for_xp(99_999) == "Elite"
    assert resolver.rank_for_xp(10**9) == "Legend"
    assert resolver.resolve(3_800) == (6, "Novice")


def test_rank_falls_back_to_lowest_tier():
    resolver = LevelResolver([(1_000, "Silver"), (500, "Bronze")])
    assert resolver.rank_for_xp(10) == "Bronze"
    assert resolver.rank_for_xp(700) == "Bronze"
    assert resolver.rank_for_xp(1_000) == "Silver"


def test_rank_progress():
    resolver = LevelResolver(DEFAULT_RANKS)
    progress = resolver.rank_progress(500)
    assert progress.rank == "Rookie"
    assert progress.next_rank == "Novice"
    assert progress.xp_to_next == 500
    assert progress.progress == pytest.approx(0.5)
    top = resolver.rank_progress(150_000)
    assert top.rank == "Legend"
    assert top.next_rank is None
    assert top.progress == 1.0


def test_rank_scales():
    free = LevelResolver.for_scale(None)
    premium = LevelResolver.for_scale("premium")
    assert free.rank_for_xp(3_000) == "Novice"
    assert premium.rank_for_xp(3_000) == "Trainee"
    assert free.rank_for_xp(200_000) == "Legend"
    assert premium.rank_for_xp(200_000) == "Mythic"
    assert set(RANK_SCALES) == {"free", "premium"}
    with pytest.raises(ValueError):
        LevelResolver.for_scale("gold")


def test_empty_rank_table():
    with pytest.raises(ValueError):
        LevelResolver([])
