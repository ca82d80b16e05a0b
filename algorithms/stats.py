from typing import Optional, Sequence

import numpy as np


def trailing_average(
    values: Sequence[float], weights: Optional[Sequence[float]] = None
) -> float:
    """Mean of ``values``, weighted when ``weights`` is given.

    Returns 0.0 for an empty history.
    """
    if len(values) == 0:
        return 0.0
    arr = np.asarray(values, dtype=float)
    if weights is None:
        return float(arr.mean())
    w = np.asarray(weights, dtype=float)
    if w.shape != arr.shape:
        raise ValueError("weights must match values")
    if w.sum() <= 0:
        raise ValueError("weights must sum to a positive value")
    return float(np.average(arr, weights=w))


def linear_recency_weights(count: int) -> list[float]:
    """Weights ``count, count-1, ..., 1`` for a most-recent-first history."""
    return [float(count - i) for i in range(count)]


def percentile_cutoff(values: Sequence[float], percentile: float) -> float:
    if not 0 <= percentile <= 100:
        raise ValueError("percentile must be within [0, 100]")
    if len(values) == 0:
        return float("inf")
    return float(np.percentile(np.asarray(values, dtype=float), percentile))
