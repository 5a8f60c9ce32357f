"""
The single success predicate shared by every module.

An outcome succeeds when it ends strictly above where it started:

    success ⇔ terminal > initial

Ending exactly where it started is not success. Every success rate in the
package is computed through ``success_rate`` so that no two modules can
disagree on the comparison.
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray


def is_success(terminal_values: ArrayLike, initial_value: float) -> NDArray[np.bool_]:
    """Element-wise ``terminal > initial``; NaN never succeeds."""
    return np.asarray(terminal_values, dtype=np.float64) > initial_value


def success_rate(terminal_values: ArrayLike, initial_value: float) -> float:
    """
    Fraction of outcomes strictly above ``initial_value``.

    Returns
    -------
    float
        In [0, 1]; 0.0 for an empty input.
    """
    flags = is_success(terminal_values, initial_value)
    if flags.size == 0:
        return 0.0
    return float(np.count_nonzero(flags)) / flags.size
