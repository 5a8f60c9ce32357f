"""
Fat-tailed multivariate Student-t returns.

Annual returns are drawn from a multivariate Student-t distribution so that
extreme years occur more often than a Gaussian would predict.

Mathematical formulation (Gaussian scale mixture):
    u ~ U(0, 1)                                # shared across assets
    g_i = F⁻¹_Gamma(u; ν_i/2, scale=2/ν_i)
    z ~ N(0, Ω)                                # correlated normals
    t_i = z_i / sqrt(g_i) · sqrt((ν_i - 2) / ν_i)
    s_i = t_i + κ_i (t_i² - 1)                 # skew, mean preserving
    r_i = μ_i + σ_i λ_i s_i + b_i

The shared uniform makes large moves coincide across assets, the tail
dependence a Gaussian copula lacks. With a common ν it is the usual
shared-mixing multivariate t; as ν → ∞ with κ = 0, λ = 1 and b = 0 the
model tends to the i.i.d. normal model.

Each asset class carries its own tail parameters (ν, κ, λ, b), see
``FAT_TAIL_PARAMETERS``.
"""

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import stats

from bbdsim.config import AssetClass, AssetConfig
from bbdsim.returns.covariance import CorrelationModel

MIN_RETURN = -1.0
MAX_RETURN = 10.0


@dataclass(frozen=True)
class FatTailParameters:
    """
    Student-t shape of one asset class.

    Attributes
    ----------
    degrees_of_freedom : float
        Tail parameter ν > 2; lower is fatter.
    skew_multiplier : float
        κ in ``t + κ(t² - 1)``; negative makes crashes likelier than rallies.
    volatility_scaling : float
        λ applied to the historical volatility.
    survivorship_bias : float
        Additive adjustment b to every annual return.
    """

    degrees_of_freedom: float
    skew_multiplier: float = 0.0
    volatility_scaling: float = 1.0
    survivorship_bias: float = 0.0


FAT_TAIL_PARAMETERS: Mapping[AssetClass, FatTailParameters] = {
    AssetClass.EQUITY_STOCK: FatTailParameters(4.0, -0.05, 1.10, 0.005),
    AssetClass.EQUITY_INDEX: FatTailParameters(5.0, -0.02, 1.00, 0.002),
    AssetClass.BOND: FatTailParameters(8.0, -0.01, 1.00, 0.0),
    AssetClass.COMMODITY: FatTailParameters(4.0, 0.0, 1.05, 0.0),
}


def resolve_fat_tail_parameters(
    assets: Sequence[AssetConfig],
    degrees_of_freedom: Optional[float] = None,
) -> Tuple[FatTailParameters, ...]:
    """
    Fat-tail parameters per asset from its class.

    Parameters
    ----------
    assets : Sequence[AssetConfig]
    degrees_of_freedom : float, optional
        When given, replaces every class's ν.
    """
    resolved = []
    for asset in assets:
        params = FAT_TAIL_PARAMETERS[asset.asset_class]
        if degrees_of_freedom is not None:
            params = FatTailParameters(
                degrees_of_freedom,
                params.skew_multiplier,
                params.volatility_scaling,
                params.survivorship_bias,
            )
        resolved.append(params)
    return tuple(resolved)


class StudentTReturnModel:
    """
    Multivariate Student-t annual return distribution.

    Attributes
    ----------
    n_assets : int
        Number of assets (B)
    means : NDArray[np.float64]
        Mean annual return per asset, shape (B,)
    stddevs : NDArray[np.float64]
        Annual volatility per asset, shape (B,)
    degrees_of_freedom : NDArray[np.float64]
        Tail parameter ν > 2 per asset, shape (B,).
    skew_multipliers, volatility_scaling, survivorship_bias : NDArray[np.float64]
        Per-asset shape adjustments, shape (B,).
    """

    def __init__(
        self,
        means: ArrayLike,
        stddevs: ArrayLike,
        degrees_of_freedom: ArrayLike,
        correlation: Optional[CorrelationModel] = None,
        skew_multipliers: ArrayLike = 0.0,
        volatility_scaling: ArrayLike = 1.0,
        survivorship_bias: ArrayLike = 0.0,
    ) -> None:
        """
        Initialize Student-t return model.

        Parameters
        ----------
        means, stddevs : array_like
            Per-asset moments, shape (B,).
        degrees_of_freedom : float or array_like
            Must exceed 2 so the variance is finite. A scalar applies to
            every asset.
        correlation : CorrelationModel, optional
            Asset correlations; independent when omitted.
        skew_multipliers, volatility_scaling, survivorship_bias : float or array_like
            Scalars broadcast to every asset.

        Raises
        ------
        ValueError
            If shapes don't match, volatilities are negative or ν ≤ 2.
        """
        self.means = np.asarray(means, dtype=np.float64)
        self.stddevs = np.asarray(stddevs, dtype=np.float64)
        self.n_assets = self.means.size

        if self.stddevs.shape != self.means.shape:
            raise ValueError(
                f"stddevs shape {self.stddevs.shape} doesn't match means shape {self.means.shape}"
            )
        if np.any(self.stddevs < 0):
            raise ValueError(f"All stddevs must be non-negative. Got {self.stddevs}")

        self.degrees_of_freedom = self._per_asset(degrees_of_freedom, "degrees_of_freedom")
        self.skew_multipliers = self._per_asset(skew_multipliers, "skew_multipliers")
        self.volatility_scaling = self._per_asset(volatility_scaling, "volatility_scaling")
        self.survivorship_bias = self._per_asset(survivorship_bias, "survivorship_bias")
        if np.any(self.degrees_of_freedom <= 2):
            raise ValueError(
                f"degrees_of_freedom must be > 2. Got {self.degrees_of_freedom}"
            )
        if np.any(self.volatility_scaling < 0):
            raise ValueError(
                f"volatility_scaling must be non-negative. Got {self.volatility_scaling}"
            )

        if correlation is None:
            correlation = CorrelationModel(np.eye(self.n_assets))
        elif correlation.n_assets != self.n_assets:
            raise ValueError(
                f"Correlation model has {correlation.n_assets} assets, expected {self.n_assets}"
            )
        self.correlation = correlation

    @classmethod
    def from_parameters(
        cls,
        means: ArrayLike,
        stddevs: ArrayLike,
        parameters: Sequence[FatTailParameters],
        correlation: Optional[CorrelationModel] = None,
    ) -> "StudentTReturnModel":
        """Build a model from one ``FatTailParameters`` per asset."""
        return cls(
            means,
            stddevs,
            [p.degrees_of_freedom for p in parameters],
            correlation,
            skew_multipliers=[p.skew_multiplier for p in parameters],
            volatility_scaling=[p.volatility_scaling for p in parameters],
            survivorship_bias=[p.survivorship_bias for p in parameters],
        )

    def _per_asset(self, values: ArrayLike, name: str) -> NDArray[np.float64]:
        arr = np.asarray(values, dtype=np.float64)
        if arr.ndim == 0:
            return np.full(self.n_assets, float(arr))
        if arr.shape != self.means.shape:
            raise ValueError(
                f"{name} shape {arr.shape} doesn't match means shape {self.means.shape}"
            )
        return arr

    def standardized_sample(
        self,
        rng: np.random.Generator,
        n_samples: int,
    ) -> NDArray[np.float64]:
        """
        Unit-variance correlated Student-t draws, before skew.

        Returns
        -------
        NDArray[np.float64]
            Shape (n_samples, B).
        """
        nu = self.degrees_of_freedom
        z = self.correlation.standard_normals(rng, n_samples)
        # u in (0, 1]; u = 1 gives g = inf and a zero draw
        u = 1.0 - rng.random(n_samples)
        g = stats.gamma.ppf(u[:, np.newaxis], nu / 2.0, scale=2.0 / nu)
        return z / np.sqrt(g) * np.sqrt((nu - 2.0) / nu)

    def skewed_sample(
        self,
        rng: np.random.Generator,
        n_samples: int,
    ) -> NDArray[np.float64]:
        """Standardized draws after ``t + κ(t² - 1)``."""
        t = self.standardized_sample(rng, n_samples)
        return t + self.skew_multipliers * (t * t - 1.0)

    def sample(
        self,
        rng: np.random.Generator,
        n_samples: int,
    ) -> NDArray[np.float64]:
        """
        Annual returns, clamped to [-100%, +1000%].

        Returns
        -------
        NDArray[np.float64]
            Shape (n_samples, B).
        """
        s = self.skewed_sample(rng, n_samples)
        returns = self.means + self.stddevs * self.volatility_scaling * s + self.survivorship_bias
        return np.clip(returns, MIN_RETURN, MAX_RETURN)

    def tail_index(self) -> float:
        """Tail index of the heaviest-tailed asset; P(|t| > x) decays like x^(-ν)."""
        return float(self.degrees_of_freedom.min())

    def __repr__(self) -> str:
        return (
            f"StudentTReturnModel(n_assets={self.n_assets}, "
            f"degrees_of_freedom={self.degrees_of_freedom.tolist()})"
        )
