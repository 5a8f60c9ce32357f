"""
Monte Carlo orchestration: the simulator, its aggregated output and a
background worker with progress and cancellation.
"""

from bbdsim.simulation.results import (
    PathPercentile,
    RunDiagnostics,
    SBLOCDiagnostics,
    SimulationOutput,
    SummaryStatistics,
    path_coherent_percentiles,
    summarize_sbloc_diagnostics,
    summarize_terminal_values,
)
from bbdsim.simulation.simulator import MonteCarloSimulator, run_simulation, step_plain
from bbdsim.simulation.worker import (
    CancelledMessage,
    ErrorMessage,
    ProgressMessage,
    ResultMessage,
    SimulationHandle,
    SimulationWorker,
)

__all__ = [
    "PathPercentile",
    "RunDiagnostics",
    "SBLOCDiagnostics",
    "SimulationOutput",
    "SummaryStatistics",
    "path_coherent_percentiles",
    "summarize_sbloc_diagnostics",
    "summarize_terminal_values",
    "MonteCarloSimulator",
    "run_simulation",
    "step_plain",
    "CancelledMessage",
    "ErrorMessage",
    "ProgressMessage",
    "ResultMessage",
    "SimulationHandle",
    "SimulationWorker",
]
