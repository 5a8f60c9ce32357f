"""
Buy-Borrow-Die Monte Carlo simulation engine.

Simulates a leveraged "Buy-Borrow-Die" portfolio, where living expenses are
drawn on a securities-backed line of credit (SBLOC) instead of by selling
assets, against a traditional sell-assets strategy.

Subpackages:

**stats:** seeded random streams, Box-Muller normals, Cholesky-correlated
sampling, Kahan-summed moments and 0-100 percentiles.

**returns / regimes:** historical bootstrap (simple and block), i.i.d. normal,
fat-tailed Student-t and regime-switching return generators.

**sbloc:** pure-function SBLOC state machine (withdrawal, interest, growth,
margin call, liquidation).

**simulation:** Monte Carlo orchestrator, aggregated output and a background
worker with progress and cancellation.

**metrics:** CAGR, TWRR, margin-call curves, sell-strategy counterfactual,
estate comparison and salary equivalent.
"""

from bbdsim.config import (
    AssetClass,
    AssetConfig,
    CalibrationMode,
    CompoundingFrequency,
    PlainStrategy,
    RegimeSettings,
    ResamplingMethod,
    SBLOCConfig,
    SBLOCStrategy,
    SellStrategyConfig,
    SimulationConfig,
    WithdrawalChapter,
    WithdrawalPlan,
)
from bbdsim.errors import (
    ConfigError,
    InsufficientDataError,
    SBLOCStateValidationError,
    SimulationCancelled,
)
from bbdsim.simulation.simulator import MonteCarloSimulator, run_simulation
from bbdsim.simulation.worker import SimulationWorker

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "AssetClass",
    "AssetConfig",
    "CalibrationMode",
    "CompoundingFrequency",
    "PlainStrategy",
    "RegimeSettings",
    "ResamplingMethod",
    "SBLOCConfig",
    "SBLOCStrategy",
    "SellStrategyConfig",
    "SimulationConfig",
    "WithdrawalChapter",
    "WithdrawalPlan",
    # Errors
    "ConfigError",
    "InsufficientDataError",
    "SBLOCStateValidationError",
    "SimulationCancelled",
    # Simulation
    "MonteCarloSimulator",
    "run_simulation",
    "SimulationWorker",
]
