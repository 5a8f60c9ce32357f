"""
Margin-call probability curves.

For each simulated year Y:

    annual(Y)     = #{iterations whose first margin call is in year Y} / N
    cumulative(Y) = running max over years of Σ_{y ≤ Y} annual(y)

The running max guarantees the cumulative curve never decreases, even if
floating-point summation would wobble.
"""

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
from numpy.typing import ArrayLike


@dataclass(frozen=True)
class MarginCallPoint:
    """Margin-call probabilities for one simulated year (1-indexed)."""

    year: int
    probability: float
    cumulative_probability: float


def margin_call_probabilities(
    first_call_years: ArrayLike,
    time_horizon: int,
) -> List[MarginCallPoint]:
    """
    Annual and cumulative first-margin-call probabilities.

    Parameters
    ----------
    first_call_years : array_like of int
        Year (1..T) of each iteration's first margin call; 0 for none.
    time_horizon : int
        Number of simulated years T.

    Returns
    -------
    List[MarginCallPoint]
        One entry per year 1..T.
    """
    years = np.asarray(first_call_years, dtype=np.int64)
    n = years.size
    if n == 0:
        return [MarginCallPoint(y, 0.0, 0.0) for y in range(1, time_horizon + 1)]

    counts = np.bincount(years[(years >= 1) & (years <= time_horizon)], minlength=time_horizon + 1)
    points = []
    running = 0
    cumulative = 0.0
    for year in range(1, time_horizon + 1):
        running += int(counts[year])
        cumulative = max(cumulative, running / n)
        points.append(MarginCallPoint(year, float(counts[year]) / n, cumulative))
    return points


def is_monotonic(points: Sequence[MarginCallPoint]) -> bool:
    """True when the cumulative curve never decreases."""
    cumulative = [p.cumulative_probability for p in points]
    return all(b >= a for a, b in zip(cumulative, cumulative[1:]))


def margin_call_curve(points: Sequence[MarginCallPoint]) -> List[MarginCallPoint]:
    """
    Re-expose margin-call statistics with the monotonicity guarantee enforced.

    The cumulative probability of year Y is never below that of year Y-1
    and never above 1.
    """
    curve = []
    cumulative = 0.0
    for p in points:
        cumulative = min(1.0, max(cumulative, p.cumulative_probability))
        curve.append(MarginCallPoint(p.year, p.probability, cumulative))
    return curve
