"""
Growth-rate metrics.

CAGR is reported two ways: from the median terminal value (one number for
the headline) and per iteration (a distribution, whose median generally
differs from the CAGR of the median). TWRR geometrically links the period
returns of a single path.

Conventions shared by all functions:
- non-positive horizon or starting value -> NaN (undefined)
- non-positive ending value -> exactly -1 (total loss)
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from numpy.typing import ArrayLike, NDArray

from bbdsim.metrics.success import success_rate
from bbdsim.stats.summary import P50, mean, percentile, percentiles, stddev


def calculate_cagr(initial_value: float, terminal_value: float, years: float) -> float:
    """
    Compound annual growth rate, (terminal / initial)^(1 / years) - 1.

    Returns
    -------
    float
        NaN if ``years`` ≤ 0 or ``initial_value`` ≤ 0; -1.0 if
        ``terminal_value`` ≤ 0.
    """
    if not (years > 0) or not (initial_value > 0):
        return math.nan
    if terminal_value <= 0:
        return -1.0
    return (terminal_value / initial_value) ** (1.0 / years) - 1.0


def median_cagr(terminal_values: ArrayLike, initial_value: float, years: float) -> float:
    """CAGR of the median terminal value."""
    return calculate_cagr(initial_value, percentile(terminal_values, P50), years)


def cagr_distribution(
    terminal_values: ArrayLike,
    initial_value: float,
    years: float,
) -> NDArray[np.float64]:
    """
    Per-iteration CAGR.

    Returns
    -------
    NDArray[np.float64]
        Same shape as ``terminal_values``; -1 where the terminal value is
        non-positive, all NaN when the horizon or start is non-positive.
    """
    terminal = np.asarray(terminal_values, dtype=np.float64)
    if not (years > 0) or not (initial_value > 0):
        return np.full(terminal.shape, np.nan)
    ratio = np.where(terminal > 0, terminal / initial_value, 1.0)
    return np.where(terminal > 0, ratio ** (1.0 / years) - 1.0, -1.0)


def calculate_twrr(path: ArrayLike) -> float:
    """
    Annualized time-weighted return of one value path.

    Period returns ``v_t / v_{t-1} - 1`` are linked geometrically and
    annualized over ``len(path) - 1`` periods.

    Parameters
    ----------
    path : array_like
        Values at years 0..T.

    Returns
    -------
    float
        NaN for fewer than two points or a non-positive start; -1.0 once
        the path reaches zero (linking stops at a total loss).
    """
    values = np.asarray(path, dtype=np.float64)
    n_periods = values.size - 1
    if n_periods <= 0 or not (values[0] > 0):
        return math.nan

    growth = 1.0
    for prev, curr in zip(values[:-1], values[1:]):
        if curr <= 0:
            return -1.0
        growth *= curr / prev
    if growth <= 0:
        return -1.0
    return growth ** (1.0 / n_periods) - 1.0


def annualized_volatility(
    terminal_values: ArrayLike,
    initial_value: float,
    years: float,
) -> float:
    """Standard deviation of per-iteration CAGR."""
    rates = cagr_distribution(terminal_values, initial_value, years)
    rates = rates[np.isfinite(rates)]
    return stddev(rates)


@dataclass(frozen=True)
class MetricsSummary:
    """Headline metrics of a run."""

    median_cagr: float
    mean_cagr: float
    cagr_percentiles: Dict[str, float]
    annualized_volatility: float
    twrr: float
    success_rate: float
    terminal_percentiles: Dict[str, float]


def calculate_metrics_summary(
    terminal_values: ArrayLike,
    initial_value: float,
    years: float,
    median_path: Optional[ArrayLike] = None,
) -> MetricsSummary:
    """
    Summarise a run's terminal distribution.

    Parameters
    ----------
    terminal_values : array_like
        Terminal net worth per iteration.
    initial_value : float
    years : float
    median_path : array_like, optional
        Median path used for TWRR; NaN TWRR when omitted.
    """
    terminal = np.asarray(terminal_values, dtype=np.float64)
    rates = cagr_distribution(terminal, initial_value, years)
    finite_rates = rates[np.isfinite(rates)]
    return MetricsSummary(
        median_cagr=median_cagr(terminal, initial_value, years),
        mean_cagr=mean(finite_rates) if finite_rates.size else math.nan,
        cagr_percentiles=percentiles(finite_rates),
        annualized_volatility=annualized_volatility(terminal, initial_value, years),
        twrr=calculate_twrr(median_path) if median_path is not None else math.nan,
        success_rate=success_rate(terminal, initial_value),
        terminal_percentiles=percentiles(terminal),
    )
