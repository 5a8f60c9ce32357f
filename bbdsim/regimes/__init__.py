"""
Regime-switching market model.

**Markov chains (markov.py):**
- Bull/bear/crash regimes and their default return distributions
- Transition matrix validation and stationary distribution
- Regime path simulation by inverse-CDF sampling

**Calibration (calibration.py):**
- Percentile-based classification of historical years into regimes
- Per-regime mean/stddev with validation and default fallback
- Conservative stress adjustment
"""

from bbdsim.regimes.markov import (
    DEFAULT_REGIME_PARAMETERS,
    DEFAULT_TRANSITION_MATRIX,
    REGIME_ORDER,
    MarkovChain,
    Regime,
    RegimeParameters,
    default_markov_chain,
    regime_parameter_table,
)
from bbdsim.regimes.calibration import (
    CalibrationMode,
    CalibrationResult,
    apply_conservative_adjustment,
    calibrate_regime_parameters,
    classify_regimes,
    default_parameters,
    validate_regime_parameters,
)

__all__ = [
    # Markov chain
    "DEFAULT_REGIME_PARAMETERS",
    "DEFAULT_TRANSITION_MATRIX",
    "REGIME_ORDER",
    "MarkovChain",
    "Regime",
    "RegimeParameters",
    "default_markov_chain",
    "regime_parameter_table",
    # Calibration
    "CalibrationMode",
    "CalibrationResult",
    "apply_conservative_adjustment",
    "calibrate_regime_parameters",
    "classify_regimes",
    "default_parameters",
    "validate_regime_parameters",
]
