"""
Historical bootstrap resampling.

Simple bootstrap draws historical years independently with replacement.
The block bootstrap draws contiguous runs of years (wrapping circularly at
the end of the sample) so that serial dependence within a block survives.
All assets share the same drawn indices, which preserves the historical
cross-asset co-movement.

Block length follows Politis & White (2004), corrected by Patton, Politis
& White (2009), for the circular block bootstrap:

    b_opt = (2 G² / D_CB)^(1/3) · n^(1/3)
    G     = Σ_{|k|≤M} λ(k/M) |k| γ(k)
    D_CB  = (4/3) · (Σ_{|k|≤M} λ(k/M) γ(k))²

with λ the flat-top lag window and M chosen from the first run of
insignificant autocorrelations.
"""

import logging
import math
from typing import Optional

import numpy as np
from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_LENGTH = 5
MIN_BLOCK_LENGTH = 3
MIN_SERIES_FOR_AUTO_BLOCK = 12


def _flat_top(t: NDArray[np.float64]) -> NDArray[np.float64]:
    """Flat-top lag window: 1 on |t| ≤ 1/2, linear to 0 at |t| = 1."""
    a = np.abs(t)
    return np.where(a <= 0.5, 1.0, np.where(a <= 1.0, 2.0 * (1.0 - a), 0.0))


def _autocovariances(x: NDArray[np.float64], max_lag: int) -> NDArray[np.float64]:
    n = x.size
    centered = x - x.mean()
    return np.array([
        np.dot(centered[: n - k], centered[k:]) / n for k in range(max_lag + 1)
    ])


def politis_white_block_length(series: ArrayLike) -> int:
    """
    Optimal block length for the circular block bootstrap.

    Parameters
    ----------
    series : array_like
        Historical returns of one asset (or the portfolio).

    Returns
    -------
    int
        Block length clamped to [3, n/4]. ``DEFAULT_BLOCK_LENGTH`` is
        returned for series shorter than 12, constant series, lag-1
        autocorrelation of magnitude ≥ 1, or any non-finite intermediate.
    """
    x = np.asarray(series, dtype=np.float64)
    x = x[np.isfinite(x)]
    n = x.size
    if n < MIN_SERIES_FOR_AUTO_BLOCK:
        return DEFAULT_BLOCK_LENGTH

    k_n = max(5, int(math.ceil(math.log10(n))))
    max_lag = min(int(math.ceil(math.sqrt(n))) + k_n, n - 1)
    gamma = _autocovariances(x, max_lag)
    if gamma[0] <= 0:
        return DEFAULT_BLOCK_LENGTH

    rho = gamma / gamma[0]
    if abs(rho[1]) >= 1.0:
        return DEFAULT_BLOCK_LENGTH

    # Smallest lag after which k_n consecutive autocorrelations are insignificant
    threshold = 2.0 * math.sqrt(math.log10(n) / n)
    insignificant = np.abs(rho[1:]) < threshold
    m_hat = max_lag
    for m in range(0, max_lag - k_n + 1):
        if np.all(insignificant[m:m + k_n]):
            m_hat = m
            break
    big_m = min(2 * max(m_hat, 1), max_lag)

    lags = np.arange(-big_m, big_m + 1)
    weights = _flat_top(lags / big_m)
    gamma_lags = gamma[np.abs(lags)]
    g = float(np.sum(weights * np.abs(lags) * gamma_lags))
    spectral = float(np.sum(weights * gamma_lags))
    d_cb = (4.0 / 3.0) * spectral ** 2

    if d_cb <= 0 or g == 0:
        return DEFAULT_BLOCK_LENGTH
    b_opt = (2.0 * g ** 2 / d_cb) ** (1.0 / 3.0) * n ** (1.0 / 3.0)
    if not math.isfinite(b_opt):
        return DEFAULT_BLOCK_LENGTH

    upper = max(MIN_BLOCK_LENGTH, n // 4)
    return int(min(max(round(b_opt), MIN_BLOCK_LENGTH), upper))


def simple_bootstrap_indices(
    rng: np.random.Generator,
    n_obs: int,
    n_periods: int,
) -> NDArray[np.int64]:
    """Independent uniform draws of historical rows, shape (n_periods,)."""
    return rng.integers(0, n_obs, size=n_periods)


def block_bootstrap_indices(
    rng: np.random.Generator,
    n_obs: int,
    n_periods: int,
    block_length: int,
) -> NDArray[np.int64]:
    """
    Circular block bootstrap row indices.

    Parameters
    ----------
    rng : np.random.Generator
    n_obs : int
        Number of historical observations.
    n_periods : int
        Number of simulated periods.
    block_length : int
        Length of each block; capped at ``n_obs``.

    Returns
    -------
    NDArray[np.int64]
        Row indices, shape (n_periods,).
    """
    block_length = max(1, min(block_length, n_obs))
    n_blocks = -(-n_periods // block_length)
    starts = rng.integers(0, n_obs, size=n_blocks)
    offsets = np.arange(block_length)
    indices = (starts[:, np.newaxis] + offsets[np.newaxis, :]) % n_obs
    return indices.ravel()[:n_periods]


def resolve_block_length(
    history: NDArray[np.float64],
    weights: NDArray[np.float64],
    block_size: Optional[int] = None,
) -> int:
    """
    Block length for a portfolio history table.

    An explicit ``block_size`` wins; otherwise the Politis-White rule is
    applied to the weighted portfolio return series.
    """
    if block_size is not None:
        return block_size
    if history.size == 0:
        return DEFAULT_BLOCK_LENGTH
    measured = np.all(np.isfinite(history), axis=0)
    if not np.any(measured):
        return DEFAULT_BLOCK_LENGTH
    w = weights[measured] / weights[measured].sum() if weights[measured].sum() > 0 else None
    if w is None:
        return DEFAULT_BLOCK_LENGTH
    portfolio = history[:, measured] @ w
    block = politis_white_block_length(portfolio)
    logger.debug("Auto block length %d from %d observations", block, portfolio.size)
    return block
