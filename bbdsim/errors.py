"""
Exception types raised by the simulation engine.

Configuration problems fail fast with ``ConfigError`` before any computation.
Numerical degeneracy inside a run is recovered locally and never surfaces as
an exception; ``SBLOCStateValidationError`` is the internal signal used for
that recovery. Cancellation is a cooperative exit, not an error.
"""

from typing import Any, Optional


class ConfigError(ValueError):
    """Malformed simulation configuration."""


class InsufficientDataError(ValueError):
    """A historical return series is too short for the requested estimate."""

    def __init__(self, message: str, n_observations: int, required: int) -> None:
        super().__init__(message)
        self.n_observations = n_observations
        self.required = required


class SBLOCStateValidationError(ValueError):
    """
    An SBLOC state holds a NaN or negative balance.

    Attributes
    ----------
    field : str
        Name of the offending state field.
    state : Any, optional
        The state that failed validation.
    """

    def __init__(self, field: str, message: str, state: Optional[Any] = None) -> None:
        super().__init__(f"Invalid SBLOC state ({field}): {message}")
        self.field = field
        self.state = state


class SimulationCancelled(Exception):
    """Raised when a run is cancelled between batches."""

    def __init__(self, completed: int = 0, total: int = 0) -> None:
        super().__init__(f"Simulation cancelled after {completed}/{total} iterations")
        self.completed = completed
        self.total = total
