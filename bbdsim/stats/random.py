"""
Seeded random streams and correlated normal sampling.

Every stochastic component draws from an explicit ``numpy.random.Generator``
so that a run is reproducible given its seed; nothing touches the global
``np.random`` state.

Normals are produced with the Box-Muller transform:
    z = sqrt(-2 ln u1) cos(2π u2),   u1 ∈ (0, 1], u2 ∈ [0, 1)

Correlated draws use the Cholesky factor L of the correlation matrix Ω:
    x = μ + σ ⊙ (L z),   Ω = L Lᵀ
"""

import hashlib
import logging
from typing import Optional, Tuple, Union

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.linalg import LinAlgError, cholesky, eigh

logger = logging.getLogger(__name__)

Seed = Union[int, str, None]

# Pivots at or below this are treated as a failed factorisation.
PIVOT_TOLERANCE = 1e-10
# Eigenvalues down to -PSD_TOLERANCE count as numerically zero.
PSD_TOLERANCE = 1e-8


def seeded_rng(seed: Seed = None) -> np.random.Generator:
    """
    Create a deterministic random stream.

    Parameters
    ----------
    seed : int, str or None
        Integer seeds are used directly; strings are hashed with SHA-256
        so that named scenarios ("baseline-2024") are stable across runs.
        None draws fresh OS entropy.

    Returns
    -------
    np.random.Generator
        PCG64 generator; the same seed yields an identical sequence.
    """
    if isinstance(seed, str):
        digest = hashlib.sha256(seed.encode("utf-8")).digest()
        seed = int.from_bytes(digest[:8], "little")
    return np.random.default_rng(seed)


def normal_random(
    rng: np.random.Generator,
    mean: Union[float, NDArray[np.float64]] = 0.0,
    stddev: Union[float, NDArray[np.float64]] = 1.0,
    size: Union[int, Tuple[int, ...], None] = None,
) -> Union[float, NDArray[np.float64]]:
    """
    Normal draw(s) via the Box-Muller transform.

    A scalar ``stddev`` of 0 returns ``mean`` without consuming the stream.

    Parameters
    ----------
    rng : np.random.Generator
        Random stream.
    mean, stddev : float or array
        Distribution parameters, broadcast against ``size``.
    size : int or tuple, optional
        Output shape. None returns a Python float.

    Returns
    -------
    float or NDArray[np.float64]
    """
    if np.isscalar(stddev) and stddev == 0:
        if size is None:
            return float(mean)
        return np.broadcast_to(np.asarray(mean, dtype=np.float64), size).copy()

    u1 = 1.0 - rng.random(size)  # (0, 1], keeps log finite
    u2 = rng.random(size)
    z = np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)
    value = mean + stddev * z
    if size is None:
        return float(value)
    return np.asarray(value, dtype=np.float64)


def cholesky_factor(matrix: ArrayLike) -> Optional[NDArray[np.float64]]:
    """
    Lower Cholesky factor of a correlation matrix.

    Positive-definite matrices are factored directly. Positive-semi-definite
    matrices that are singular (e.g. two perfectly correlated assets) are
    clamped: negative rounding in the eigenvalues is lifted to a small floor,
    the diagonal is rescaled back to 1, and the result is factored.

    Parameters
    ----------
    matrix : array_like
        Symmetric matrix of shape (B, B).

    Returns
    -------
    NDArray[np.float64] or None
        Lower-triangular L with ``L @ L.T ≈ matrix``, or None if the matrix
        is not positive-semi-definite. Callers fall back to independent
        sampling on None.
    """
    m = np.asarray(matrix, dtype=np.float64)
    if m.ndim != 2 or m.shape[0] != m.shape[1] or not np.all(np.isfinite(m)):
        return None

    try:
        L = cholesky(m, lower=True)
        if np.min(np.diag(L)) > PIVOT_TOLERANCE:
            return L
    except LinAlgError:
        pass

    eigenvalues, eigenvectors = eigh(m)
    if eigenvalues.min() < -PSD_TOLERANCE:
        return None

    clamped = np.maximum(eigenvalues, PIVOT_TOLERANCE * 10)
    repaired = eigenvectors @ np.diag(clamped) @ eigenvectors.T
    scale = np.sqrt(np.diag(repaired))
    repaired = repaired / np.outer(scale, scale)
    try:
        return cholesky(repaired, lower=True)
    except LinAlgError:
        return None


def correlated_samples(
    rng: np.random.Generator,
    means: ArrayLike,
    stddevs: ArrayLike,
    correlation_matrix: ArrayLike,
    size: Optional[int] = None,
) -> Optional[NDArray[np.float64]]:
    """
    Correlated normal draws across assets.

    Parameters
    ----------
    rng : np.random.Generator
        Random stream.
    means, stddevs : array_like
        Per-asset parameters, shape (B,).
    correlation_matrix : array_like
        Correlation matrix, shape (B, B).
    size : int, optional
        Number of draws. None returns a single vector of shape (B,);
        otherwise shape (size, B).

    Returns
    -------
    NDArray[np.float64] or None
        None when the correlation matrix is not positive-semi-definite.
    """
    L = cholesky_factor(correlation_matrix)
    if L is None:
        return None
    return sample_with_factor(rng, means, stddevs, L, size)


def sample_with_factor(
    rng: np.random.Generator,
    means: ArrayLike,
    stddevs: ArrayLike,
    factor: NDArray[np.float64],
    size: Optional[int] = None,
) -> NDArray[np.float64]:
    """Correlated normals given a precomputed Cholesky factor."""
    mu = np.asarray(means, dtype=np.float64)
    sigma = np.asarray(stddevs, dtype=np.float64)
    n_assets = factor.shape[0]
    shape = (n_assets,) if size is None else (size, n_assets)
    z = normal_random(rng, 0.0, 1.0, shape)
    return mu + sigma * (z @ factor.T)
