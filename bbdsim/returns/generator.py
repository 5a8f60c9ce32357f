"""
Annual return generators.

Each generator produces, per Monte Carlo iteration, a matrix of annual
returns of shape (n_periods, n_assets) under one statistical model:

- ``BootstrapReturnGenerator``: historical years resampled singly (simple)
  or in circular blocks (block).
- ``NormalReturnGenerator``: i.i.d. correlated normals.
- ``FatTailReturnGenerator``: correlated multivariate Student-t.
- ``RegimeSwitchingReturnGenerator``: bull/bear/crash Markov regimes shared
  by all assets, correlated normals within a regime.

Every generator floors individual returns at -100%. Assets flagged as
estimated (missing or short history) are drawn from the normal model with
their fallback statistics inside the bootstrap and Student-t models.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from bbdsim.config import ResamplingMethod, SimulationConfig
from bbdsim.errors import ConfigError
from bbdsim.regimes.calibration import CalibrationResult, calibrate_regime_parameters
from bbdsim.regimes.markov import MarkovChain, regime_parameter_table
from bbdsim.returns.bootstrap import (
    block_bootstrap_indices,
    resolve_block_length,
    simple_bootstrap_indices,
)
from bbdsim.returns.covariance import CorrelationModel
from bbdsim.returns.history import (
    AssetStatistics,
    DataQualityReport,
    aligned_history,
    assess_data_quality,
)
from bbdsim.returns.student_t import (
    FatTailParameters,
    StudentTReturnModel,
    resolve_fat_tail_parameters,
)

logger = logging.getLogger(__name__)

MIN_RETURN = -1.0


@dataclass(frozen=True)
class GeneratorDiagnostics:
    """
    Fallbacks taken while building a generator.

    Attributes
    ----------
    data_quality : DataQualityReport
        Measured/estimated status per asset.
    correlation_fallback : bool
        True when assets are sampled independently because the correlation
        matrix could not be factored.
    block_length : int, optional
        Block length used by the block bootstrap.
    calibrations : Tuple[CalibrationResult, ...]
        Per-asset regime calibration (regime model only).
    fat_tail_parameters : Dict[str, FatTailParameters]
        Tail shape per symbol (fat-tail model only).
    """

    data_quality: DataQualityReport
    correlation_fallback: bool = False
    block_length: Optional[int] = None
    calibrations: Tuple[CalibrationResult, ...] = ()
    fat_tail_parameters: Dict[str, FatTailParameters] = field(default_factory=dict)

    @property
    def calibration_fallbacks(self) -> Tuple[str, ...]:
        """Symbols whose regime parameters fell back to defaults."""
        return tuple(
            s.symbol
            for s, c in zip(self.data_quality.assets, self.calibrations)
            if c.used_fallback
        )


class ReturnGenerator(ABC):
    """
    Base class for annual return models.

    Attributes
    ----------
    n_assets : int
    means, stddevs : NDArray[np.float64]
        Per-asset statistics (fallback values for estimated assets).
    correlation : CorrelationModel
    """

    substitutes_estimated = True

    def __init__(
        self,
        statistics: Sequence[AssetStatistics],
        correlation: CorrelationModel,
    ) -> None:
        self.statistics = tuple(statistics)
        self.n_assets = len(self.statistics)
        self.means = np.array([s.mean for s in self.statistics], dtype=np.float64)
        self.stddevs = np.array([s.stddev for s in self.statistics], dtype=np.float64)
        self.estimated = np.array([s.estimated for s in self.statistics], dtype=bool)
        if correlation.n_assets != self.n_assets:
            raise ValueError(
                f"Correlation model has {correlation.n_assets} assets, expected {self.n_assets}"
            )
        self.correlation = correlation

    @abstractmethod
    def _draw(self, rng: np.random.Generator, n_periods: int) -> NDArray[np.float64]:
        """Raw model draws, shape (n_periods, n_assets)."""

    def generate(self, rng: np.random.Generator, n_periods: int) -> NDArray[np.float64]:
        """
        Annual returns for one iteration.

        Parameters
        ----------
        rng : np.random.Generator
            Run stream; advanced deterministically.
        n_periods : int
            Number of simulated years.

        Returns
        -------
        NDArray[np.float64]
            Shape (n_periods, n_assets), every entry ≥ -1.
        """
        returns = np.array(self._draw(rng, n_periods), dtype=np.float64)
        if self.substitutes_estimated and self.estimated.any():
            normals = self.correlation.sample(rng, self.means, self.stddevs, n_periods)
            returns[:, self.estimated] = normals[:, self.estimated]
        return np.maximum(returns, MIN_RETURN)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n_assets={self.n_assets})"


class BootstrapReturnGenerator(ReturnGenerator):
    """
    Historical bootstrap; every asset uses the same resampled years.

    Parameters
    ----------
    history : NDArray[np.float64]
        Aligned history, shape (n_obs, n_assets); estimated columns are NaN.
    block_length : int, optional
        Circular block length. None gives the simple (i.i.d.) bootstrap.
    """

    def __init__(
        self,
        statistics: Sequence[AssetStatistics],
        correlation: CorrelationModel,
        history: NDArray[np.float64],
        block_length: Optional[int] = None,
    ) -> None:
        super().__init__(statistics, correlation)
        self.history = np.asarray(history, dtype=np.float64)
        self.block_length = block_length

    def _draw(self, rng: np.random.Generator, n_periods: int) -> NDArray[np.float64]:
        n_obs = self.history.shape[0]
        if n_obs == 0:
            return np.full((n_periods, self.n_assets), np.nan)
        if self.block_length is None:
            idx = simple_bootstrap_indices(rng, n_obs, n_periods)
        else:
            idx = block_bootstrap_indices(rng, n_obs, n_periods, self.block_length)
        return self.history[idx]


class NormalReturnGenerator(ReturnGenerator):
    """Independent years of correlated normal returns."""

    def _draw(self, rng: np.random.Generator, n_periods: int) -> NDArray[np.float64]:
        return self.correlation.sample(rng, self.means, self.stddevs, n_periods)


class FatTailReturnGenerator(ReturnGenerator):
    """
    Independent years of correlated Student-t returns.

    Parameters
    ----------
    parameters : Sequence[FatTailParameters]
        Tail shape per asset, usually from its asset class.
    """

    def __init__(
        self,
        statistics: Sequence[AssetStatistics],
        correlation: CorrelationModel,
        parameters: Sequence[FatTailParameters],
    ) -> None:
        super().__init__(statistics, correlation)
        self.parameters = tuple(parameters)
        if len(self.parameters) != self.n_assets:
            raise ValueError(
                f"Got {len(self.parameters)} fat-tail parameter sets for {self.n_assets} assets"
            )
        self.model = StudentTReturnModel.from_parameters(
            self.means, self.stddevs, self.parameters, correlation
        )

    def _draw(self, rng: np.random.Generator, n_periods: int) -> NDArray[np.float64]:
        return self.model.sample(rng, n_periods)


class RegimeSwitchingReturnGenerator(ReturnGenerator):
    """
    Regime-switching returns.

    One regime path is drawn per iteration and shared by all assets; each
    asset then draws ``mean[regime] + stddev[regime] × z`` with z correlated
    across assets. Estimated assets are already covered by the calibration
    fallback, so no substitution is applied.

    Parameters
    ----------
    chain : MarkovChain
        Regime dynamics; paths start in bull.
    parameters : NDArray[np.float64]
        Shape (n_assets, K, 2): per asset and regime, mean and stddev.
    """

    substitutes_estimated = False

    def __init__(
        self,
        statistics: Sequence[AssetStatistics],
        correlation: CorrelationModel,
        chain: MarkovChain,
        parameters: NDArray[np.float64],
    ) -> None:
        super().__init__(statistics, correlation)
        self.chain = chain
        self.parameters = np.asarray(parameters, dtype=np.float64)
        expected = (self.n_assets, chain.n_regimes, 2)
        if self.parameters.shape != expected:
            raise ValueError(
                f"parameters must have shape {expected}. Got {self.parameters.shape}"
            )

    def regime_path(self, rng: np.random.Generator, n_periods: int) -> NDArray[np.int64]:
        return self.chain.simulate_path(n_periods, rng)

    def _draw(self, rng: np.random.Generator, n_periods: int) -> NDArray[np.float64]:
        path = self.regime_path(rng, n_periods)
        z = self.correlation.standard_normals(rng, n_periods)
        mu = self.parameters[:, path, 0].T
        sigma = self.parameters[:, path, 1].T
        return mu + sigma * z


def create_return_generator(
    config: SimulationConfig,
) -> Tuple[ReturnGenerator, GeneratorDiagnostics]:
    """
    Build the return generator for a run.

    Parameters
    ----------
    config : SimulationConfig

    Returns
    -------
    generator : ReturnGenerator
    diagnostics : GeneratorDiagnostics
        Data-quality flags and every fallback taken.

    Raises
    ------
    ConfigError
        If the resampling method is not recognised.
    """
    report = assess_data_quality(config.assets)
    correlation = CorrelationModel(config.correlation)
    method = config.method

    if method is ResamplingMethod.SIMPLE or method is ResamplingMethod.BLOCK:
        history = aligned_history(config.assets, report)
        block_length = None
        if method is ResamplingMethod.BLOCK:
            block_length = resolve_block_length(history, config.weights, config.block_size)
        generator: ReturnGenerator = BootstrapReturnGenerator(
            report.assets, correlation, history, block_length
        )
        diagnostics = GeneratorDiagnostics(
            data_quality=report,
            correlation_fallback=correlation.used_identity_fallback,
            block_length=block_length,
        )
    elif method is ResamplingMethod.NORMAL:
        generator = NormalReturnGenerator(report.assets, correlation)
        diagnostics = GeneratorDiagnostics(report, correlation.used_identity_fallback)
    elif method is ResamplingMethod.FAT_TAIL:
        parameters = resolve_fat_tail_parameters(config.assets, config.degrees_of_freedom)
        generator = FatTailReturnGenerator(report.assets, correlation, parameters)
        diagnostics = GeneratorDiagnostics(
            data_quality=report,
            correlation_fallback=correlation.used_identity_fallback,
            fat_tail_parameters={a.symbol: p for a, p in zip(config.assets, parameters)},
        )
    elif method is ResamplingMethod.REGIME:
        mode = config.regime.calibration_mode
        calibrations = tuple(
            calibrate_regime_parameters(a.history.array, mode) for a in config.assets
        )
        table = np.stack([regime_parameter_table(c.parameters) for c in calibrations])
        generator = RegimeSwitchingReturnGenerator(
            report.assets, correlation, config.regime.markov_chain(), table
        )
        diagnostics = GeneratorDiagnostics(
            data_quality=report,
            correlation_fallback=correlation.used_identity_fallback,
            calibrations=calibrations,
        )
    else:
        raise ConfigError(f"Unsupported resampling method {method!r}")

    logger.debug("Return generator %r for method %s", generator, method.value)
    return generator, diagnostics
