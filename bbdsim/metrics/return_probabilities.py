"""
Return-target probabilities and percentile return tables.

Each iteration's terminal value implies one CAGR over the full horizon.
Shorter horizons reuse that rate: the engine keeps no per-year target
checks, and a path that compounded at 8% over 30 years is taken to have
done so at year 10 too. Expected returns at shorter horizons widen the
spread around the median by sqrt(T / h).
"""

import math
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from bbdsim.metrics.growth import cagr_distribution, calculate_cagr
from bbdsim.stats.summary import BAND_PERCENTILES, P50, Percentile, percentile

DEFAULT_THRESHOLDS = (0.0, 0.025, 0.05, 0.075, 0.10, 0.125)
DEFAULT_TIME_HORIZONS = (1, 3, 5, 10, 15)
DEFAULT_INFLATION_RATE = 0.025


@dataclass(frozen=True)
class ReturnProbabilities:
    """
    Chance of reaching each CAGR target at each horizon.

    Attributes
    ----------
    thresholds : Tuple[float, ...]
        Minimum CAGR targets as decimals.
    horizons : Tuple[int, ...]
        Horizons in years, limited to the simulated length.
    probabilities : NDArray[np.float64]
        Shape (len(thresholds), len(horizons)); percent (0-100) of
        iterations at or above each target.
    """

    thresholds: Tuple[float, ...]
    horizons: Tuple[int, ...]
    probabilities: NDArray[np.float64]

    def probability(self, threshold: float, horizon: int) -> float:
        """Entry for one target and horizon; ``KeyError`` if absent."""
        try:
            i = self.thresholds.index(threshold)
            j = self.horizons.index(horizon)
        except ValueError:
            raise KeyError((threshold, horizon)) from None
        return float(self.probabilities[i, j])


@dataclass(frozen=True)
class ExpectedReturns:
    """
    CAGR at each band percentile across horizons.

    Attributes
    ----------
    percentiles : Tuple[Percentile, ...]
    horizons : Tuple[int, ...]
    values : NDArray[np.float64]
        Shape (len(percentiles), len(horizons)); CAGR as decimals.
    """

    percentiles: Tuple[Percentile, ...]
    horizons: Tuple[int, ...]
    values: NDArray[np.float64]

    def by_label(self) -> Dict[str, NDArray[np.float64]]:
        return {p.label: self.values[i] for i, p in enumerate(self.percentiles)}


@dataclass(frozen=True)
class PerformanceRow:
    """One metric across the band percentiles."""

    label: str
    p10: float
    p25: float
    p50: float
    p75: float
    p90: float
    format: str


@dataclass(frozen=True)
class PerformanceSummary:
    """Rows of the performance table."""

    twrr_nominal: PerformanceRow
    twrr_real: PerformanceRow
    portfolio_nominal: PerformanceRow
    portfolio_real: PerformanceRow
    mean_return: PerformanceRow
    volatility: PerformanceRow

    @property
    def rows(self) -> Tuple[PerformanceRow, ...]:
        return (
            self.twrr_nominal,
            self.twrr_real,
            self.portfolio_nominal,
            self.portfolio_real,
            self.mean_return,
            self.volatility,
        )


def _valid_horizons(horizons: Sequence[int], time_horizon: int) -> Tuple[int, ...]:
    return tuple(int(h) for h in horizons if 0 < h <= time_horizon)


def calculate_return_probabilities(
    terminal_values: ArrayLike,
    initial_value: float,
    time_horizon: int,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
    horizons: Sequence[int] = DEFAULT_TIME_HORIZONS,
) -> ReturnProbabilities:
    """
    Probability matrix of reaching CAGR targets.

    Parameters
    ----------
    terminal_values : array_like
        Terminal value per iteration.
    initial_value : float
    time_horizon : int
        Simulated years; horizons beyond it, or below one year, are dropped.
    thresholds : Sequence[float]
        CAGR targets as decimals.
    horizons : Sequence[int]
        Horizons in years.

    Returns
    -------
    ReturnProbabilities
        All zeros for an empty run or a non-positive start.
    """
    terminal = np.asarray(terminal_values, dtype=np.float64).ravel()
    thresholds = tuple(float(t) for t in thresholds)
    valid = _valid_horizons(horizons, time_horizon)
    probabilities = np.zeros((len(thresholds), len(valid)))
    if terminal.size == 0 or not (initial_value > 0):
        return ReturnProbabilities(thresholds, valid, probabilities)

    rates = cagr_distribution(terminal, initial_value, time_horizon)
    for i, threshold in enumerate(thresholds):
        probabilities[i, :] = np.count_nonzero(rates >= threshold) / terminal.size * 100.0
    return ReturnProbabilities(thresholds, valid, probabilities)


def calculate_expected_returns(
    terminal_values: ArrayLike,
    initial_value: float,
    time_horizon: int,
    horizons: Sequence[int] = DEFAULT_TIME_HORIZONS,
) -> ExpectedReturns:
    """
    CAGR at P10..P90 of the terminal distribution, per horizon.

    At the full horizon each entry is the CAGR of that percentile's
    terminal value. For a shorter horizon h the distance from the median
    CAGR is scaled by sqrt(time_horizon / h).
    """
    terminal = np.asarray(terminal_values, dtype=np.float64).ravel()
    valid = _valid_horizons(horizons, time_horizon)
    values = np.zeros((len(BAND_PERCENTILES), len(valid)))
    if terminal.size == 0 or not (initial_value > 0):
        return ExpectedReturns(BAND_PERCENTILES, valid, values)

    center = calculate_cagr(initial_value, percentile(terminal, P50), time_horizon)
    for i, p in enumerate(BAND_PERCENTILES):
        full = calculate_cagr(initial_value, percentile(terminal, p), time_horizon)
        for j, h in enumerate(valid):
            if h >= time_horizon:
                values[i, j] = full
            else:
                values[i, j] = center + (full - center) * math.sqrt(time_horizon / h)
    return ExpectedReturns(BAND_PERCENTILES, valid, values)


def _row(label: str, values: NDArray[np.float64], fmt: str) -> PerformanceRow:
    return PerformanceRow(label, *(percentile(values, p) for p in BAND_PERCENTILES), fmt)


def calculate_performance_summary(
    terminal_values: ArrayLike,
    initial_value: float,
    time_horizon: int,
    inflation_rate: float = DEFAULT_INFLATION_RATE,
) -> PerformanceSummary:
    """
    Percentile table of return, balance and dispersion metrics.

    Parameters
    ----------
    terminal_values : array_like
        Nominal terminal value per iteration.
    initial_value : float
    time_horizon : int
    inflation_rate : float
        Deflates the real rows by ``(1 + inflation_rate)^time_horizon``.

    Returns
    -------
    PerformanceSummary
        Rates are decimals; a non-positive terminal value counts as -1.
        Volatility is each iteration's distance from the median CAGR,
        scaled by sqrt(time_horizon).
    """
    terminal = np.asarray(terminal_values, dtype=np.float64).ravel()
    deflator = (1.0 + inflation_rate) ** time_horizon
    real = terminal / deflator

    twrr_nominal = cagr_distribution(terminal, initial_value, time_horizon)
    twrr_real = cagr_distribution(real, initial_value, time_horizon)
    if initial_value > 0 and time_horizon > 0:
        mean_return = np.where(
            terminal > 0, (terminal - initial_value) / initial_value / time_horizon, -1.0
        )
    else:
        mean_return = np.full(terminal.shape, np.nan)
    median_twrr = percentile(twrr_nominal, P50)
    volatility = np.abs(twrr_nominal - median_twrr) * math.sqrt(max(time_horizon, 0))

    return PerformanceSummary(
        twrr_nominal=_row("Time Weighted Rate of Return (nominal)", twrr_nominal, "percent"),
        twrr_real=_row("Time Weighted Rate of Return (real)", twrr_real, "percent"),
        portfolio_nominal=_row("Portfolio End Balance (nominal)", terminal, "currency"),
        portfolio_real=_row("Portfolio End Balance (real)", real, "currency"),
        mean_return=_row("Annual Mean Return (nominal)", mean_return, "percent"),
        volatility=_row("Annualized Volatility", volatility, "percent"),
    )
