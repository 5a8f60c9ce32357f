"""
Calibration of regime parameters from an asset's return history.

Each historical year is labelled by where it falls in the asset's own
return distribution:

    r < P10          -> crash
    P10 ≤ r < P30    -> bear
    r ≥ P30          -> bull

The mean and standard deviation of each bucket become that regime's
parameters. In conservative mode the table is first shifted down and
widened. The resulting table is validated before use; any failure falls
back to the default table for the same mode and is reported.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from bbdsim.errors import InsufficientDataError
from bbdsim.regimes.markov import (
    DEFAULT_REGIME_PARAMETERS,
    REGIME_ORDER,
    Regime,
    RegimeParameters,
)
from bbdsim.stats.summary import mean, percentile, stddev

logger = logging.getLogger(__name__)

MIN_CALIBRATION_OBSERVATIONS = 10
MIN_REGIME_OBSERVATIONS = 2
MAX_REGIME_STDDEV = 0.80
MIN_BULL_BEAR_SEPARATION = 0.05

CRASH_PERCENTILE = 10.0
BEAR_PERCENTILE = 30.0

# Bucket statistics used when a regime has too few observations.
SPARSE_REGIME_DEFAULTS: Mapping[Regime, RegimeParameters] = {
    Regime.BULL: RegimeParameters(mean=0.10, stddev=0.12),
    Regime.BEAR: RegimeParameters(mean=-0.05, stddev=0.15),
    Regime.CRASH: RegimeParameters(mean=-0.25, stddev=0.30),
}

# (mean shift, stddev multiplier) applied in conservative mode.
CONSERVATIVE_ADJUSTMENTS: Mapping[Regime, Tuple[float, float]] = {
    Regime.BULL: (-0.01, 1.15),
    Regime.BEAR: (-0.02, 1.20),
    Regime.CRASH: (-0.03, 1.25),
}


class CalibrationMode(str, Enum):
    """How historical regime statistics are turned into simulation inputs."""

    HISTORICAL = "historical"
    CONSERVATIVE = "conservative"


@dataclass(frozen=True)
class CalibrationResult:
    """
    Outcome of calibrating one asset.

    Attributes
    ----------
    parameters : Dict[Regime, RegimeParameters]
        Parameters to simulate with (calibrated or fallback).
    used_fallback : bool
        True when the defaults replaced the calibrated values.
    reasons : Tuple[str, ...]
        Why the fallback was taken; empty otherwise.
    counts : Dict[Regime, int]
        Number of historical years classified into each regime.
    """

    parameters: Dict[Regime, RegimeParameters]
    used_fallback: bool = False
    reasons: Tuple[str, ...] = ()
    counts: Dict[Regime, int] = field(default_factory=dict)


def classify_regimes(returns: ArrayLike) -> NDArray[np.int64]:
    """
    Label each historical return with a regime index.

    Parameters
    ----------
    returns : array_like
        Annual returns as decimals.

    Returns
    -------
    NDArray[np.int64]
        Regime positions (see ``Regime.position``), same length as input.

    Raises
    ------
    InsufficientDataError
        If fewer than ``MIN_CALIBRATION_OBSERVATIONS`` returns are given.
    """
    arr = np.asarray(returns, dtype=np.float64)
    if arr.size < MIN_CALIBRATION_OBSERVATIONS:
        raise InsufficientDataError(
            f"Regime calibration needs at least {MIN_CALIBRATION_OBSERVATIONS} "
            f"observations, got {arr.size}",
            n_observations=arr.size,
            required=MIN_CALIBRATION_OBSERVATIONS,
        )

    crash_cut = percentile(arr, CRASH_PERCENTILE)
    bear_cut = percentile(arr, BEAR_PERCENTILE)

    labels = np.full(arr.size, Regime.BULL.position, dtype=np.int64)
    labels[arr < bear_cut] = Regime.BEAR.position
    labels[arr < crash_cut] = Regime.CRASH.position
    return labels


def apply_conservative_adjustment(
    params: Mapping[Regime, RegimeParameters]
) -> Dict[Regime, RegimeParameters]:
    """
    Shift each regime's mean down and widen its volatility.

    The bull mean drops by one bull standard deviation, with a floor of one
    percentage point.
    """
    adjusted = {}
    for regime, p in params.items():
        shift, scale = CONSERVATIVE_ADJUSTMENTS[regime]
        if regime is Regime.BULL:
            shift = -max(-shift, p.stddev)
        adjusted[regime] = RegimeParameters(mean=p.mean + shift, stddev=p.stddev * scale)
    return adjusted


def validate_regime_parameters(params: Mapping[Regime, RegimeParameters]) -> List[str]:
    """
    Check calibrated parameters for degenerate shapes.

    Returns
    -------
    List[str]
        Human-readable problems; empty when the parameters are usable.
    """
    problems = []
    bull = params[Regime.BULL]
    bear = params[Regime.BEAR]
    crash = params[Regime.CRASH]

    if bull.mean <= 0:
        problems.append(f"bull mean must be positive, got {bull.mean:.4f}")
    if not bull.mean > bear.mean:
        problems.append(f"bull mean {bull.mean:.4f} must exceed bear mean {bear.mean:.4f}")
    if not bear.mean > crash.mean:
        problems.append(f"bear mean {bear.mean:.4f} must exceed crash mean {crash.mean:.4f}")
    if bull.mean - bear.mean < MIN_BULL_BEAR_SEPARATION:
        problems.append(
            f"bull/bear separation {bull.mean - bear.mean:.4f} is below "
            f"{MIN_BULL_BEAR_SEPARATION}"
        )
    for regime in REGIME_ORDER:
        if params[regime].stddev > MAX_REGIME_STDDEV:
            problems.append(
                f"{regime.value} stddev {params[regime].stddev:.4f} exceeds {MAX_REGIME_STDDEV}"
            )
    return problems


def default_parameters(mode: CalibrationMode = CalibrationMode.HISTORICAL) -> Dict[Regime, RegimeParameters]:
    """
    Default regime table, stressed in conservative mode.

    The conservative table uses the fixed shifts of
    ``CONSERVATIVE_ADJUSTMENTS`` only, so it stays a valid fallback.
    """
    params = dict(DEFAULT_REGIME_PARAMETERS)
    if mode is CalibrationMode.CONSERVATIVE:
        for regime, p in DEFAULT_REGIME_PARAMETERS.items():
            shift, scale = CONSERVATIVE_ADJUSTMENTS[regime]
            params[regime] = RegimeParameters(mean=p.mean + shift, stddev=p.stddev * scale)
    return params


def calibrate_regime_parameters(
    returns: ArrayLike,
    mode: CalibrationMode = CalibrationMode.HISTORICAL,
) -> CalibrationResult:
    """
    Calibrate regime parameters from one asset's annual returns.

    Parameters
    ----------
    returns : array_like
        Historical annual returns as decimals.
    mode : CalibrationMode
        HISTORICAL uses the bucket statistics as measured; CONSERVATIVE
        applies ``apply_conservative_adjustment`` before validation.

    Returns
    -------
    CalibrationResult
        Never raises for data problems: short histories and parameters that
        fail ``validate_regime_parameters`` yield the defaults with
        ``used_fallback=True``.
    """
    arr = np.asarray(returns, dtype=np.float64)
    arr = arr[np.isfinite(arr)]

    try:
        labels = classify_regimes(arr)
    except InsufficientDataError as exc:
        logger.warning("Using default regime parameters: %s", exc)
        return CalibrationResult(
            parameters=default_parameters(mode),
            used_fallback=True,
            reasons=(str(exc),),
        )

    params = {}
    counts = {}
    for regime in REGIME_ORDER:
        bucket = arr[labels == regime.position]
        counts[regime] = int(bucket.size)
        if bucket.size < MIN_REGIME_OBSERVATIONS:
            params[regime] = SPARSE_REGIME_DEFAULTS[regime]
        else:
            params[regime] = RegimeParameters(mean=mean(bucket), stddev=stddev(bucket))

    if mode is CalibrationMode.CONSERVATIVE:
        params = apply_conservative_adjustment(params)

    problems = validate_regime_parameters(params)
    if problems:
        logger.warning(
            "Calibrated regime parameters rejected (%s); using defaults",
            "; ".join(problems),
        )
        return CalibrationResult(
            parameters=default_parameters(mode),
            used_fallback=True,
            reasons=tuple(problems),
            counts=counts,
        )

    return CalibrationResult(parameters=params, counts=counts)
