"""
Random and statistical primitives.

**Random streams (random.py):**
- Seeded generators and Box-Muller normals
- Cholesky factorisation with a positive-semi-definite repair
- Correlated multivariate normal sampling

**Summaries (summary.py):**
- Kahan-summed mean, variance and standard deviation
- 0-100 percentiles carried as ``Percentile`` values
"""

from bbdsim.stats.random import (
    cholesky_factor,
    correlated_samples,
    normal_random,
    sample_with_factor,
    seeded_rng,
)
from bbdsim.stats.summary import (
    BAND_PERCENTILES,
    P10,
    P25,
    P50,
    P75,
    P90,
    Percentile,
    PercentileBands,
    kahan_sum,
    mean,
    percentile,
    percentile_bands,
    percentiles,
    stddev,
    variance,
)

__all__ = [
    # Random streams
    "cholesky_factor",
    "correlated_samples",
    "normal_random",
    "sample_with_factor",
    "seeded_rng",
    # Summaries
    "BAND_PERCENTILES",
    "P10",
    "P25",
    "P50",
    "P75",
    "P90",
    "Percentile",
    "PercentileBands",
    "kahan_sum",
    "mean",
    "percentile",
    "percentile_bands",
    "percentiles",
    "stddev",
    "variance",
]
