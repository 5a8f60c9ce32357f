"""
Asset correlation handling.

Correlated draws are built from the Cholesky factor of the correlation
matrix Ω:

    Ω = L Lᵀ,    x = μ + σ ⊙ (L z),    z ~ N(0, I)

Singular but positive-semi-definite matrices are repaired before factoring.
A matrix that is not positive-semi-definite at all cannot be factored; the
model then samples assets independently (L = I) and records the fallback so
it can be surfaced in run diagnostics.
"""

import logging
from typing import Optional

import numpy as np
from numpy.typing import ArrayLike, NDArray

from bbdsim.stats.random import cholesky_factor, sample_with_factor

logger = logging.getLogger(__name__)


class CorrelationModel:
    """
    Correlation structure of a portfolio.

    Attributes
    ----------
    correlation_matrix : NDArray[np.float64]
        Correlation matrix Ω, shape (B, B), as supplied.
    n_assets : int
        Number of assets (B).
    used_identity_fallback : bool
        True when Ω could not be factored and assets are sampled
        independently.
    """

    def __init__(self, correlation_matrix: ArrayLike) -> None:
        """
        Initialize and factor the correlation matrix.

        Parameters
        ----------
        correlation_matrix : array_like
            Symmetric unit-diagonal matrix, shape (B, B). Shape, symmetry
            and diagonal are validated with the configuration; only
            positive-semi-definiteness is checked here.
        """
        self.correlation_matrix = np.asarray(correlation_matrix, dtype=np.float64)
        self.n_assets = self.correlation_matrix.shape[0]

        factor = cholesky_factor(self.correlation_matrix)
        self.used_identity_fallback = factor is None
        if factor is None:
            logger.warning(
                "Correlation matrix is not positive-semi-definite; "
                "sampling %d assets independently", self.n_assets,
            )
            factor = np.eye(self.n_assets)
        self._cholesky: NDArray[np.float64] = factor

    @property
    def cholesky(self) -> NDArray[np.float64]:
        """
        Lower Cholesky factor L (identity after a fallback).

        Returns
        -------
        NDArray[np.float64]
            Shape (B, B).
        """
        return self._cholesky

    @property
    def effective_correlation(self) -> NDArray[np.float64]:
        """Correlation actually simulated, L Lᵀ."""
        return self._cholesky @ self._cholesky.T

    def standard_normals(
        self,
        rng: np.random.Generator,
        n_samples: int,
    ) -> NDArray[np.float64]:
        """
        Correlated standard normals.

        Returns
        -------
        NDArray[np.float64]
            Shape (n_samples, B), unit variance per column.
        """
        return sample_with_factor(
            rng, np.zeros(self.n_assets), np.ones(self.n_assets), self._cholesky, n_samples
        )

    def sample(
        self,
        rng: np.random.Generator,
        means: ArrayLike,
        stddevs: ArrayLike,
        n_samples: int,
    ) -> NDArray[np.float64]:
        """Correlated normal draws, shape (n_samples, B)."""
        return sample_with_factor(rng, means, stddevs, self._cholesky, n_samples)

    def __repr__(self) -> str:
        return (
            f"CorrelationModel(n_assets={self.n_assets}, "
            f"identity_fallback={self.used_identity_fallback})"
        )


def create_identity_correlation(n_assets: int) -> CorrelationModel:
    """Correlation model with independent assets."""
    return CorrelationModel(np.eye(n_assets))


def create_compound_symmetric_correlation(
    n_assets: int,
    correlation: float = 0.5,
) -> CorrelationModel:
    """
    Correlation model where every pair shares the same correlation.

    Raises
    ------
    ValueError
        If the common correlation is outside (-1/(B-1), 1].
    """
    corr = np.full((n_assets, n_assets), correlation)
    np.fill_diagonal(corr, 1.0)

    lower = -1.0 / (n_assets - 1) if n_assets > 1 else -1.0
    if not (lower <= correlation <= 1.0):
        raise ValueError(
            f"Correlation {correlation} not valid for {n_assets} assets. "
            f"Must be in [{lower:.3f}, 1]"
        )
    return CorrelationModel(corr)


def portfolio_volatility(
    weights: ArrayLike,
    stddevs: ArrayLike,
    model: Optional[CorrelationModel] = None,
) -> float:
    """
    Volatility of a weighted portfolio, sqrt(wᵀ Σ w).

    Parameters
    ----------
    weights, stddevs : array_like
        Shape (B,).
    model : CorrelationModel, optional
        Correlations; independent assets when omitted.
    """
    w = np.asarray(weights, dtype=np.float64)
    sigma = np.asarray(stddevs, dtype=np.float64)
    corr = np.eye(len(w)) if model is None else model.effective_correlation
    covariance = corr * np.outer(sigma, sigma)
    return float(np.sqrt(max(w @ covariance @ w, 0.0)))
