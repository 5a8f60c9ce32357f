"""
Three-state Markov chain for market regimes.

Market regimes (bull, bear, crash) evolve as a discrete-time Markov chain;
each regime carries its own annual return distribution.

Mathematical formulation:
    s_t ∈ {bull, bear, crash}            # Regime state in year t
    P(s_t = j | s_{t-1} = i) = P_{ij}    # Transition probability
    r_t | s_t = k ~ N(μ_k, σ_k²)         # Regime-conditional return

The next regime is drawn by inverse-CDF sampling: a uniform draw is
compared against the cumulative row P_{i,·}.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

import numpy as np
from numpy.typing import NDArray


class Regime(str, Enum):
    """Market regime labels, in transition-matrix order."""

    BULL = "bull"
    BEAR = "bear"
    CRASH = "crash"

    @property
    def position(self) -> int:
        return REGIME_ORDER.index(self)


REGIME_ORDER = (Regime.BULL, Regime.BEAR, Regime.CRASH)


@dataclass(frozen=True)
class RegimeParameters:
    """Annual return distribution of one regime."""

    mean: float
    stddev: float

    def __post_init__(self) -> None:
        if not np.isfinite(self.mean) or not np.isfinite(self.stddev):
            raise ValueError(
                f"Regime parameters must be finite. Got mean={self.mean}, stddev={self.stddev}"
            )
        if self.stddev < 0:
            raise ValueError(f"Regime stddev must be non-negative. Got {self.stddev}")


# Rows: from-regime, columns: to-regime (bull, bear, crash).
DEFAULT_TRANSITION_MATRIX = np.array([
    [0.97, 0.025, 0.005],
    [0.03, 0.95, 0.02],
    [0.10, 0.30, 0.60],
])

DEFAULT_REGIME_PARAMETERS: Mapping[Regime, RegimeParameters] = {
    Regime.BULL: RegimeParameters(mean=0.12, stddev=0.12),
    Regime.BEAR: RegimeParameters(mean=-0.08, stddev=0.20),
    Regime.CRASH: RegimeParameters(mean=-0.30, stddev=0.35),
}


class MarkovChain:
    """
    Discrete-time Markov chain over market regimes.

    Attributes
    ----------
    n_regimes : int
        Number of regimes (K)
    transition_matrix : NDArray[np.float64]
        Transition probability matrix P of shape (K, K); each row sums to 1.
    stationary_dist : NDArray[np.float64]
        Long-run regime probabilities, the left eigenvector of P for
        eigenvalue 1.
    """

    def __init__(
        self,
        transition_matrix: NDArray[np.float64],
        validate: bool = True
    ) -> None:
        """
        Initialize Markov chain.

        Parameters
        ----------
        transition_matrix : NDArray[np.float64]
            Row-stochastic matrix of shape (K, K).
        validate : bool, optional
            If True, validate that transition_matrix is row-stochastic.
            Default is True.

        Raises
        ------
        ValueError
            If transition_matrix is not row-stochastic.
        """
        self.transition_matrix = np.asarray(transition_matrix, dtype=np.float64)
        self.n_regimes: int = self.transition_matrix.shape[0]

        if validate:
            self._validate_transition_matrix()

        self._cumulative = np.cumsum(self.transition_matrix, axis=1)
        self.stationary_dist = self._compute_stationary_distribution()

    def _validate_transition_matrix(self) -> None:
        """
        Validate that the transition matrix is row-stochastic.

        Raises
        ------
        ValueError
            If the matrix is not square, has entries outside [0, 1], or has
            rows that do not sum to 1.
        """
        P = self.transition_matrix
        if P.ndim != 2 or P.shape[0] != P.shape[1]:
            raise ValueError(
                f"Transition matrix must be square. Got shape {P.shape}"
            )

        if not np.all((P >= 0) & (P <= 1)):
            raise ValueError("All transition probabilities must be in [0, 1]")

        row_sums = P.sum(axis=1)
        if not np.allclose(row_sums, 1.0, atol=1e-10):
            raise ValueError(f"Each row must sum to 1. Got row sums: {row_sums}")

    def _compute_stationary_distribution(self) -> NDArray[np.float64]:
        """
        Stationary distribution π with π P = π and Σ π_i = 1.

        Returns
        -------
        NDArray[np.float64]
            Stationary distribution of shape (K,).
        """
        eigenvalues, eigenvectors = np.linalg.eig(self.transition_matrix.T)
        idx = np.argmin(np.abs(eigenvalues - 1.0))
        stationary = np.real(eigenvectors[:, idx])
        return (stationary / stationary.sum()).astype(np.float64)

    def next_regime(self, current: int, u: float) -> int:
        """
        Regime following ``current`` for a uniform draw ``u`` in [0, 1).

        Walks the cumulative transition row; rounding slack in the last
        column falls through to the final regime.
        """
        idx = int(np.searchsorted(self._cumulative[current], u, side="right"))
        return min(idx, self.n_regimes - 1)

    def simulate_path(
        self,
        n_steps: int,
        rng: np.random.Generator,
        initial_regime: Optional[int] = Regime.BULL.position,
    ) -> NDArray[np.int64]:
        """
        Simulate a path of regime states.

        Parameters
        ----------
        n_steps : int
            Length of path.
        rng : np.random.Generator
            Random stream; advanced by one uniform per transition.
        initial_regime : int, optional
            Starting regime (0-indexed). Defaults to bull. If None, the
            start is drawn from the stationary distribution.

        Returns
        -------
        NDArray[np.int64]
            Regime path of shape (n_steps,) with values in {0, …, K-1}.
        """
        if n_steps <= 0:
            return np.zeros(0, dtype=np.int64)

        if initial_regime is None:
            current = int(np.searchsorted(np.cumsum(self.stationary_dist), rng.random(), side="right"))
            current = min(current, self.n_regimes - 1)
        else:
            if not (0 <= initial_regime < self.n_regimes):
                raise ValueError(
                    f"initial_regime must be in {{0, …, {self.n_regimes - 1}}}"
                )
            current = initial_regime

        path = np.zeros(n_steps, dtype=np.int64)
        path[0] = current
        draws = rng.random(n_steps - 1)
        for t in range(1, n_steps):
            current = self.next_regime(current, draws[t - 1])
            path[t] = current

        return path

    def expected_duration(self, regime: int) -> float:
        """
        Expected number of consecutive years spent in a regime, 1 / (1 - P_ii).

        Raises
        ------
        ValueError
            If regime index is out of bounds or the regime is absorbing.
        """
        if not (0 <= regime < self.n_regimes):
            raise ValueError(f"regime must be in {{0, …, {self.n_regimes - 1}}}")

        self_prob = self.transition_matrix[regime, regime]
        if self_prob >= 1.0:
            raise ValueError(
                f"Regime {regime} is absorbing (P_{{{regime},{regime}}} = 1). "
                "Expected duration is infinite."
            )
        return 1.0 / (1.0 - self_prob)

    def __repr__(self) -> str:
        return (
            f"MarkovChain(n_regimes={self.n_regimes}, "
            f"stationary_dist={self.stationary_dist})"
        )


def default_markov_chain() -> MarkovChain:
    """Markov chain with the default bull/bear/crash transition matrix."""
    return MarkovChain(DEFAULT_TRANSITION_MATRIX)


def regime_parameter_table(
    params: Mapping[Regime, RegimeParameters]
) -> NDArray[np.float64]:
    """
    Pack regime parameters into an array indexed by regime.

    Returns
    -------
    NDArray[np.float64]
        Shape (K, 2); column 0 is the mean, column 1 the stddev.
    """
    missing = [r.value for r in REGIME_ORDER if r not in params]
    if missing:
        raise ValueError(f"Missing parameters for regimes: {missing}")
    return np.array([[params[r].mean, params[r].stddev] for r in REGIME_ORDER])
