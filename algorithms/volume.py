import math
from dataclasses import dataclass
from typing import Iterable, Optional

from errors import InvalidInput
from .weight_converter import WeightConverter, WeightUnit


@dataclass(frozen=True)
class SetEntry:
    """A single logged set as read from the activity store."""

    reps: int
    weight: float
    unit: WeightUnit = WeightUnit.KG
    is_warmup: bool = False
    logged_at: Optional[str] = None

    def weight_kg(self) -> float:
        return WeightConverter.to_kg(self.weight, self.unit)


class VolumeCalculator:
    """Computes lifted volume in kilograms."""

    @staticmethod
    def validate(entry: SetEntry) -> None:
        if isinstance(entry.reps, bool) or not isinstance(entry.reps, int):
            raise InvalidInput(f"reps must be an integer, got {entry.reps!r}")
        if entry.reps < 0:
            raise InvalidInput("reps must be non-negative")
        try:
            weight = float(entry.weight)
        except (TypeError, ValueError):
            raise InvalidInput(f"weight must be numeric, got {entry.weight!r}")
        if not math.isfinite(weight):
            raise InvalidInput("weight must be finite")
        if weight < 0:
            raise InvalidInput("weight must be non-negative")
        try:
            WeightUnit(entry.unit)
        except ValueError:
            raise InvalidInput(f"unknown weight unit {entry.unit!r}")

    @classmethod
    def volume(cls, entries: Iterable[SetEntry], *, include_warmups: bool = False) -> float:
        """Return the summed ``reps * weight`` of ``entries`` in kg.

        Every entry is validated, including warm-ups that are excluded from
        the total, so malformed data is never silently dropped.
        """
        total = 0.0
        for entry in entries:
            cls.validate(entry)
            if entry.is_warmup and not include_warmups:
                continue
            total += entry.reps * entry.weight_kg()
        return total

    @classmethod
    def training_volume(cls, entries: Iterable[SetEntry]) -> float:
        """Volume of working sets only."""
        return cls.volume(entries, include_warmups=False)

    @classmethod
    def raw_volume(cls, entries: Iterable[SetEntry]) -> float:
        """Volume including warm-up sets."""
        return cls.volume(entries, include_warmups=True)

    @staticmethod
    def is_qualifying(entries: Iterable[SetEntry]) -> bool:
        """A session qualifies when it holds at least one working set."""
        return any(not e.is_warmup for e in entries)
