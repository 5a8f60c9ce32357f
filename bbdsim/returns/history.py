"""
Per-asset statistics from historical returns, with data-quality tracking.

An asset whose history is missing or too short is never zero-filled: its
statistics fall back to fixed estimates and it is flagged *estimated* so
downstream consumers can tell measured from assumed inputs.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from bbdsim.config import AssetConfig
from bbdsim.errors import InsufficientDataError
from bbdsim.stats.summary import mean, stddev

logger = logging.getLogger(__name__)

MIN_HISTORY_OBSERVATIONS = 3
FALLBACK_MEAN = 0.10
FALLBACK_STDDEV = 0.20


@dataclass(frozen=True)
class AssetStatistics:
    """
    Mean and volatility of one asset's annual returns.

    Attributes
    ----------
    symbol : str
    mean, stddev : float
    n_observations : int
        Number of valid historical returns.
    estimated : bool
        True when the values are fallback estimates, not measurements.
    reason : str, optional
        Why the fallback was used.
    """

    symbol: str
    mean: float
    stddev: float
    n_observations: int
    estimated: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class DataQualityReport:
    """Measured/estimated status of every asset in a run."""

    assets: Tuple[AssetStatistics, ...]

    @property
    def estimated_symbols(self) -> Tuple[str, ...]:
        return tuple(a.symbol for a in self.assets if a.estimated)

    @property
    def any_estimated(self) -> bool:
        return any(a.estimated for a in self.assets)

    @property
    def estimated_mask(self) -> NDArray[np.bool_]:
        return np.array([a.estimated for a in self.assets], dtype=bool)


def require_history(values: NDArray[np.float64], required: int = MIN_HISTORY_OBSERVATIONS) -> None:
    """
    Raises
    ------
    InsufficientDataError
        If fewer than ``required`` finite values are present.
    """
    n = int(np.sum(np.isfinite(values)))
    if n < required:
        raise InsufficientDataError(
            f"{n} valid observations, need at least {required}",
            n_observations=n,
            required=required,
        )


def estimate_statistics(asset: AssetConfig) -> AssetStatistics:
    """
    Measure an asset's mean and standard deviation, or fall back.

    Returns
    -------
    AssetStatistics
        ``estimated=True`` with the fallback 10% / 20% when the history
        is shorter than ``MIN_HISTORY_OBSERVATIONS``.
    """
    values = asset.history.array
    try:
        require_history(values)
    except InsufficientDataError as exc:
        logger.warning(
            "Asset %s: %s; using estimated mean=%.2f stddev=%.2f",
            asset.symbol, exc, FALLBACK_MEAN, FALLBACK_STDDEV,
        )
        return AssetStatistics(
            symbol=asset.symbol,
            mean=FALLBACK_MEAN,
            stddev=FALLBACK_STDDEV,
            n_observations=exc.n_observations,
            estimated=True,
            reason=str(exc),
        )

    return AssetStatistics(
        symbol=asset.symbol,
        mean=mean(values),
        stddev=stddev(values),
        n_observations=int(values.size),
    )


def assess_data_quality(assets: Sequence[AssetConfig]) -> DataQualityReport:
    """Statistics and measured/estimated status for each asset."""
    return DataQualityReport(assets=tuple(estimate_statistics(a) for a in assets))


def aligned_history(
    assets: Sequence[AssetConfig],
    report: DataQualityReport,
) -> NDArray[np.float64]:
    """
    Historical returns of the measured assets, aligned on their most recent
    common window.

    Returns
    -------
    NDArray[np.float64]
        Shape (n_obs, n_assets). Columns of estimated assets are NaN and
        must be replaced by the caller.
    """
    measured = [a.history.array for a, s in zip(assets, report.assets) if not s.estimated]
    if not measured:
        return np.full((0, len(assets)), np.nan)

    n_obs = min(len(v) for v in measured)
    table = np.full((n_obs, len(assets)), np.nan)
    for j, (asset, stats) in enumerate(zip(assets, report.assets)):
        if not stats.estimated:
            table[:, j] = asset.history.array[-n_obs:]
    return table
