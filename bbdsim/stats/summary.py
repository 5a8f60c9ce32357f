"""
Numerically stable summary statistics.

Moments accumulate with compensated (Kahan-Babuška) summation, since run
sizes reach tens of thousands of terms. Percentiles are always on the
0-100 scale and carried as ``Percentile`` values. Ranks outside [0, 100]
raise ``ValueError``; a 0-1 fraction is inside that range and is read as a
low percentile rank, so callers convert fractions before passing them.
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, Sequence, Union

import numpy as np
from numpy.typing import ArrayLike, NDArray


class Percentile(float):
    """
    A percentile rank on the 0-100 scale.

    Raises
    ------
    ValueError
        If the value is not a finite number in [0, 100].
    """

    def __new__(cls, value: float) -> "Percentile":
        value = float(value)
        if not math.isfinite(value) or not (0.0 <= value <= 100.0):
            raise ValueError(
                f"Percentile must be on the 0-100 scale. Got {value}"
            )
        return super().__new__(cls, value)

    @property
    def label(self) -> str:
        """Short key such as ``"p50"``."""
        return f"p{self:g}"

    def __repr__(self) -> str:
        return f"Percentile({float(self):g})"


P10 = Percentile(10)
P25 = Percentile(25)
P50 = Percentile(50)
P75 = Percentile(75)
P90 = Percentile(90)

BAND_PERCENTILES = (P10, P25, P50, P75, P90)


def kahan_sum(values: Iterable[float]) -> float:
    """
    Compensated sum (Neumaier's variant of Kahan summation).

    Parameters
    ----------
    values : iterable of float

    Returns
    -------
    float
        Sum with rounding error bounded independently of the term count.
    """
    total = 0.0
    compensation = 0.0
    for v in values:
        v = float(v)
        t = total + v
        if abs(total) >= abs(v):
            compensation += (total - t) + v
        else:
            compensation += (v - t) + total
        total = t
    return total + compensation


def mean(values: ArrayLike) -> float:
    """Arithmetic mean; 0.0 for an empty input."""
    arr = np.asarray(values, dtype=np.float64).ravel()
    if arr.size == 0:
        return 0.0
    return kahan_sum(arr.tolist()) / arr.size


def variance(values: ArrayLike) -> float:
    """Sample variance (n - 1 denominator); 0.0 for fewer than two values."""
    arr = np.asarray(values, dtype=np.float64).ravel()
    n = arr.size
    if n < 2:
        return 0.0
    mu = mean(arr)
    return kahan_sum(((arr - mu) ** 2).tolist()) / (n - 1)


def stddev(values: ArrayLike) -> float:
    """Sample standard deviation; 0.0 for fewer than two values."""
    return math.sqrt(variance(values))


def percentile(values: ArrayLike, p: Union[Percentile, float]) -> float:
    """
    Linear-interpolation percentile.

    The rank is ``(p / 100) * (n - 1)`` into the sorted values, interpolated
    between neighbours. Inputs need not be sorted.

    Parameters
    ----------
    values : array_like
        Sample values.
    p : Percentile or float
        Rank on the 0-100 scale.

    Returns
    -------
    float
        0.0 for an empty input; the single value when n == 1.

    Raises
    ------
    ValueError
        If ``p`` is outside [0, 100].
    """
    p = Percentile(p)
    arr = np.asarray(values, dtype=np.float64).ravel()
    if arr.size == 0:
        return 0.0
    if arr.size == 1:
        return float(arr[0])
    return float(np.percentile(arr, float(p)))


def percentiles(
    values: ArrayLike,
    ranks: Sequence[Union[Percentile, float]] = BAND_PERCENTILES,
) -> Dict[str, float]:
    """Several percentiles at once, keyed by label (``"p10"``, ...)."""
    arr = np.asarray(values, dtype=np.float64).ravel()
    return {Percentile(p).label: percentile(arr, p) for p in ranks}


@dataclass(frozen=True, eq=False)
class PercentileBands:
    """
    Yearly percentile bands of a simulated quantity.

    Attributes
    ----------
    years : NDArray[np.int64]
        Year index 0..T.
    p10, p25, p50, p75, p90 : NDArray[np.float64]
        Band values per year, shape (T + 1,).
    """

    years: NDArray[np.int64]
    p10: NDArray[np.float64]
    p25: NDArray[np.float64]
    p50: NDArray[np.float64]
    p75: NDArray[np.float64]
    p90: NDArray[np.float64]

    def band(self, p: Union[Percentile, float]) -> NDArray[np.float64]:
        """Band for one of the five standard percentiles."""
        return getattr(self, Percentile(p).label)

    def by_year(self) -> Dict[int, Dict[str, float]]:
        """``{year: {"p10": ..., ..., "p90": ...}}``."""
        return {
            int(y): {p.label: float(self.band(p)[i]) for p in BAND_PERCENTILES}
            for i, y in enumerate(self.years)
        }


def percentile_bands(matrix: NDArray[np.float64]) -> PercentileBands:
    """
    Standard bands of each column of a (n_iterations, T + 1) matrix.

    Non-finite entries are ignored column by column.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    n_years = matrix.shape[1]
    values = np.zeros((len(BAND_PERCENTILES), n_years))
    for j in range(n_years):
        column = matrix[:, j]
        column = column[np.isfinite(column)]
        values[:, j] = [percentile(column, p) for p in BAND_PERCENTILES]
    return PercentileBands(np.arange(n_years), *values)
