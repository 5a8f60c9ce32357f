"""
Aggregated output of a Monte Carlo run.

Per-iteration trajectories are reduced here into yearly percentile bands,
path-coherent percentile paths, summary statistics and diagnostics. The
resulting ``SimulationOutput`` is created once per run and never modified.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from bbdsim.metrics.estate import EstateAnalysis
from bbdsim.metrics.margin_call import MarginCallPoint
from bbdsim.metrics.sell_strategy import SellStrategyResult
from bbdsim.metrics.success import success_rate
from bbdsim.returns.history import DataQualityReport
from bbdsim.returns.student_t import FatTailParameters
from bbdsim.stats.summary import (
    BAND_PERCENTILES,
    P50,
    Percentile,
    PercentileBands,
    mean,
    percentile,
    percentiles,
    stddev,
)


@dataclass(frozen=True)
class SummaryStatistics:
    """
    Terminal net-worth statistics.

    Attributes
    ----------
    median, mean, stddev : float
        Mean and standard deviation use compensated summation.
    success_rate : float
        Fraction of iterations ending strictly above the initial value.
    minimum, maximum : float
    percentiles : Dict[str, float]
        p10/p25/p50/p75/p90 of the terminal values.
    """

    median: float
    mean: float
    stddev: float
    success_rate: float
    minimum: float
    maximum: float
    percentiles: Dict[str, float]


def summarize_terminal_values(terminal_values: ArrayLike, initial_value: float) -> SummaryStatistics:
    """Summary statistics of the finite terminal values."""
    values = np.asarray(terminal_values, dtype=np.float64)
    finite = values[np.isfinite(values)]
    return SummaryStatistics(
        median=percentile(finite, P50),
        mean=mean(finite),
        stddev=stddev(finite),
        success_rate=success_rate(values, initial_value),
        minimum=float(finite.min()) if finite.size else math.nan,
        maximum=float(finite.max()) if finite.size else math.nan,
        percentiles=percentiles(finite),
    )


@dataclass(frozen=True, eq=False)
class PathPercentile:
    """
    A whole simulated path chosen by its terminal rank.

    Unlike the yearly bands, whose p50 at year 10 and year 20 generally come
    from different iterations, every value here belongs to one iteration.
    """

    percentile: Percentile
    iteration: int
    net_worth: NDArray[np.float64]
    portfolio: NDArray[np.float64]
    loan: NDArray[np.float64]


def path_coherent_percentiles(
    terminal_values: NDArray[np.float64],
    net_worth: NDArray[np.float64],
    portfolio: NDArray[np.float64],
    loan: NDArray[np.float64],
    ranks: Sequence[Percentile] = BAND_PERCENTILES,
) -> Tuple[PathPercentile, ...]:
    """
    Select iterations at terminal-value ranks.

    Finite terminal values are ranked ascending; percentile p takes the
    iteration at position ``min(floor(p / 100 × n), n - 1)``.
    """
    finite_idx = np.flatnonzero(np.isfinite(terminal_values))
    n = finite_idx.size
    if n == 0:
        return ()
    order = finite_idx[np.argsort(terminal_values[finite_idx], kind="stable")]
    paths = []
    for p in ranks:
        p = Percentile(p)
        position = min(int(math.floor(p / 100.0 * n)), n - 1)
        i = int(order[position])
        paths.append(PathPercentile(p, i, net_worth[i].copy(), portfolio[i].copy(), loan[i].copy()))
    return tuple(paths)


@dataclass(frozen=True)
class SBLOCDiagnostics:
    """
    Line-of-credit behaviour across iterations.

    Attributes
    ----------
    margin_call_distribution : Dict[str, int]
        Iterations with 0, 1, 2 and 3+ margin calls.
    max_margin_calls : int
    haircut_median, haircut_mean, haircut_max : float
        Lifetime value lost to forced-sale haircuts.
    interest_median, interest_mean : float
        Lifetime interest charged.
    dividend_tax_median, dividend_tax_mean, dividend_tax_max : float
        Lifetime dividend taxes borrowed.
    final_portfolio_median, final_portfolio_mean : float
        Terminal gross portfolio value.
    failed_iterations : int
    failure_year_median, failure_year_mean : float
        Year of failure among failed iterations; NaN if none failed.
    """

    margin_call_distribution: Dict[str, int]
    max_margin_calls: int
    haircut_median: float
    haircut_mean: float
    haircut_max: float
    interest_median: float
    interest_mean: float
    dividend_tax_median: float
    dividend_tax_mean: float
    dividend_tax_max: float
    final_portfolio_median: float
    final_portfolio_mean: float
    failed_iterations: int
    failure_year_median: float
    failure_year_mean: float


def summarize_sbloc_diagnostics(
    margin_call_counts: NDArray[np.int64],
    haircuts: NDArray[np.float64],
    interest: NDArray[np.float64],
    dividend_taxes: NDArray[np.float64],
    final_portfolio: NDArray[np.float64],
    failure_years: NDArray[np.int64],
) -> SBLOCDiagnostics:
    """Reduce per-iteration SBLOC totals to ``SBLOCDiagnostics``."""
    failed = failure_years[failure_years > 0]
    return SBLOCDiagnostics(
        margin_call_distribution={
            "0": int(np.count_nonzero(margin_call_counts == 0)),
            "1": int(np.count_nonzero(margin_call_counts == 1)),
            "2": int(np.count_nonzero(margin_call_counts == 2)),
            "3+": int(np.count_nonzero(margin_call_counts >= 3)),
        },
        max_margin_calls=int(margin_call_counts.max()) if margin_call_counts.size else 0,
        haircut_median=percentile(haircuts, P50),
        haircut_mean=mean(haircuts),
        haircut_max=float(haircuts.max()) if haircuts.size else 0.0,
        interest_median=percentile(interest, P50),
        interest_mean=mean(interest),
        dividend_tax_median=percentile(dividend_taxes, P50),
        dividend_tax_mean=mean(dividend_taxes),
        dividend_tax_max=float(dividend_taxes.max()) if dividend_taxes.size else 0.0,
        final_portfolio_median=percentile(final_portfolio, P50),
        final_portfolio_mean=mean(final_portfolio),
        failed_iterations=int(failed.size),
        failure_year_median=percentile(failed, P50) if failed.size else math.nan,
        failure_year_mean=mean(failed) if failed.size else math.nan,
    )


@dataclass(frozen=True)
class RunDiagnostics:
    """
    Every fallback and degenerate case seen during a run.

    Attributes
    ----------
    invalid_iterations : int
        Iterations recovered from a NaN or negative state.
    failed_iterations : int
        Iterations whose net worth reached zero or below.
    correlation_fallback : bool
        Assets were sampled independently.
    data_quality : DataQualityReport
        Measured/estimated status per asset.
    calibration_fallbacks : Tuple[str, ...]
        Assets whose regime parameters fell back to defaults.
    multiplier_fallback : bool
        The liquidation target multiplier was out of range and replaced.
    block_length : int, optional
        Block length of the block bootstrap.
    fat_tail_parameters : Dict[str, FatTailParameters]
        Student-t shape used per symbol (fat-tail model only).
    sbloc : SBLOCDiagnostics, optional
        Present for SBLOC runs.
    """

    invalid_iterations: int
    failed_iterations: int
    correlation_fallback: bool
    data_quality: DataQualityReport
    calibration_fallbacks: Tuple[str, ...] = ()
    multiplier_fallback: bool = False
    block_length: Optional[int] = None
    sbloc: Optional[SBLOCDiagnostics] = None
    fat_tail_parameters: Dict[str, FatTailParameters] = field(default_factory=dict)

    @property
    def estimated_assets(self) -> Tuple[str, ...]:
        return self.data_quality.estimated_symbols

    @property
    def degraded(self) -> bool:
        """True when any result rests on a fallback or a recovered state."""
        return bool(
            self.invalid_iterations
            or self.correlation_fallback
            or self.estimated_assets
            or self.calibration_fallbacks
            or self.multiplier_fallback
        )


@dataclass(frozen=True, eq=False)
class SimulationOutput:
    """
    Result of a Monte Carlo run.

    Attributes
    ----------
    terminal_values : NDArray[np.float64]
        Terminal net worth per iteration, shape (iterations,). Negative
        values are genuine (loan exceeds portfolio).
    portfolio_bands, net_worth_bands, loan_bands : PercentileBands
        Yearly bands for years 0..T.
    market_bands : PercentileBands
        Bands of the initial value grown at the market return alone
        (no withdrawals, no loan).
    margin_call_stats : Tuple[MarginCallPoint, ...]
        One entry per year 1..T.
    summary : SummaryStatistics
    path_percentiles : Tuple[PathPercentile, ...]
    estate : EstateAnalysis, optional
        BBD vs sell estate comparison (SBLOC runs).
    sell_strategy : SellStrategyResult, optional
        Sell counterfactual on the percentile growth paths.
    sell_iterations : SellStrategyResult, optional
        Sell counterfactual on each iteration's own returns.
    cumulative_withdrawals : NDArray[np.float64]
        Running total of scheduled withdrawals, years 1..T.
    diagnostics : RunDiagnostics
    """

    terminal_values: NDArray[np.float64]
    portfolio_bands: PercentileBands
    net_worth_bands: PercentileBands
    loan_bands: PercentileBands
    market_bands: PercentileBands
    margin_call_stats: Tuple[MarginCallPoint, ...]
    summary: SummaryStatistics
    path_percentiles: Tuple[PathPercentile, ...]
    diagnostics: RunDiagnostics
    initial_value: float
    time_horizon: int
    iterations: int
    strategy_mode: str
    cumulative_withdrawals: NDArray[np.float64] = field(default_factory=lambda: np.zeros(0))
    estate: Optional[EstateAnalysis] = None
    sell_strategy: Optional[SellStrategyResult] = None
    sell_iterations: Optional[SellStrategyResult] = None

    @property
    def success_rate(self) -> float:
        return self.summary.success_rate

    def path_percentile(self, p: float) -> PathPercentile:
        """Path-coherent percentile path for one of the standard ranks."""
        wanted = Percentile(p)
        for path in self.path_percentiles:
            if path.percentile == wanted:
                return path
        raise KeyError(f"No path-coherent path for {wanted.label}")

    @property
    def median_path(self) -> NDArray[np.float64]:
        """Net-worth path of the median iteration."""
        return self.path_percentile(P50).net_worth
