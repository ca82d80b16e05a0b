import os
import sys
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from algorithms import SetEntry, VolumeCalculator, WeightConverter, WeightUnit
from errors import InvalidInput


class VolumeCalculatorTest(unittest.TestCase):
    def test_working_sets_only(self) -> None:
        entries = [
            SetEntry(10, 60.0, is_warmup=True),
            SetEntry(6, 100.0),
            SetEntry(6, 100.0),
            SetEntry(6, 100.0),
        ]
        self.assertAlmostEqual(VolumeCalculator.training_volume(entries), 1800.0)
        self.assertAlmostEqual(VolumeCalculator.raw_volume(entries), 2400.0)

    def test_pounds_are_converted(self) -> None:
        vol = VolumeCalculator.volume([SetEntry(10, 100.0, WeightUnit.LB)])
        self.assertAlmostEqual(vol, 453.592)
        self.assertAlmostEqual(
            VolumeCalculator.volume([SetEntry(10, 100.0, "lb")]), vol
        )

    def test_empty_and_zero(self) -> None:
        self.assertEqual(VolumeCalculator.volume([]), 0.0)
        self.assertEqual(VolumeCalculator.volume([SetEntry(0, 100.0), SetEntry(5, 0.0)]), 0.0)

    def test_rejects_malformed_sets(self) -> None:
        for entry in (
            SetEntry(-1, 50.0),
            SetEntry(5, -2.5),
            SetEntry(5, float("nan")),
            SetEntry(5, 50.0, "stone"),
            SetEntry(True, 50.0),
            SetEntry(5.5, 50.0),
        ):
            with self.assertRaises(InvalidInput):
                VolumeCalculator.volume([entry])

    def test_invalid_warmup_is_not_ignored(self) -> None:
        with self.assertRaises(ValueError):
            VolumeCalculator.volume([SetEntry(-3, 20.0, is_warmup=True)])

    def test_adding_a_set_never_decreases_volume(self) -> None:
        entries = [SetEntry(5, 80.0)]
        before = VolumeCalculator.volume(entries)
        for extra in (SetEntry(0, 0.0), SetEntry(1, 1.0), SetEntry(3, 40.0, WeightUnit.LB)):
            entries.append(extra)
            after = VolumeCalculator.volume(entries)
            self.assertGreaterEqual(after, before)
            before = after

    def test_raising_reps_or_weight_strictly_increases_volume(self) -> None:
        other = SetEntry(6, 100.0)
        for unit in (WeightUnit.KG, WeightUnit.LB):
            base = VolumeCalculator.volume([other, SetEntry(5, 80.0, unit)])
            more_reps = VolumeCalculator.volume([other, SetEntry(6, 80.0, unit)])
            heavier = VolumeCalculator.volume([other, SetEntry(6, 82.5, unit)])
            self.assertGreater(more_reps, base)
            self.assertGreater(heavier, more_reps)

    def test_is_qualifying(self) -> None:
        self.assertFalse(VolumeCalculator.is_qualifying([]))
        self.assertFalse(VolumeCalculator.is_qualifying([SetEntry(10, 20.0, is_warmup=True)]))
        self.assertTrue(
            VolumeCalculator.is_qualifying([SetEntry(10, 20.0, is_warmup=True), SetEntry(1, 0.0)])
        )


class WeightConverterTest(unittest.TestCase):
    def test_rounded_conversions(self) -> None:
        self.assertEqual(WeightConverter.kg_to_lb(100), 220.46)
        self.assertEqual(WeightConverter.lb_to_kg(100), 45.36)

    def test_to_kg(self) -> None:
        self.assertEqual(WeightConverter.to_kg(80, WeightUnit.KG), 80.0)
        self.assertAlmostEqual(WeightConverter.to_kg(1, "lb"), 0.453592)
        with self.assertRaises(ValueError):
            WeightConverter.to_kg(1, "oz")


if __name__ == "__main__":
    unittest.main()
