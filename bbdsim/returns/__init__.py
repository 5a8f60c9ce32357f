"""
Annual return models.

This module implements:
- Per-asset statistics with measured/estimated tracking
- Correlation handling with an independent-sampling fallback
- Simple and circular block bootstrap with Politis-White block length
- Multivariate Student-t fat-tail model with per-asset-class tail shapes
- Return generators for every resampling method, and their factory
"""

from bbdsim.returns.history import (
    AssetStatistics,
    DataQualityReport,
    aligned_history,
    assess_data_quality,
    estimate_statistics,
)
from bbdsim.returns.covariance import (
    CorrelationModel,
    create_compound_symmetric_correlation,
    create_identity_correlation,
    portfolio_volatility,
)
from bbdsim.returns.bootstrap import (
    block_bootstrap_indices,
    politis_white_block_length,
    simple_bootstrap_indices,
)
from bbdsim.returns.student_t import (
    FAT_TAIL_PARAMETERS,
    FatTailParameters,
    StudentTReturnModel,
    resolve_fat_tail_parameters,
)
from bbdsim.returns.generator import (
    BootstrapReturnGenerator,
    FatTailReturnGenerator,
    GeneratorDiagnostics,
    NormalReturnGenerator,
    RegimeSwitchingReturnGenerator,
    ReturnGenerator,
    create_return_generator,
)

__all__ = [
    "AssetStatistics",
    "DataQualityReport",
    "aligned_history",
    "assess_data_quality",
    "estimate_statistics",
    "CorrelationModel",
    "create_compound_symmetric_correlation",
    "create_identity_correlation",
    "portfolio_volatility",
    "block_bootstrap_indices",
    "politis_white_block_length",
    "simple_bootstrap_indices",
    "FAT_TAIL_PARAMETERS",
    "FatTailParameters",
    "StudentTReturnModel",
    "resolve_fat_tail_parameters",
    "BootstrapReturnGenerator",
    "FatTailReturnGenerator",
    "GeneratorDiagnostics",
    "NormalReturnGenerator",
    "RegimeSwitchingReturnGenerator",
    "ReturnGenerator",
    "create_return_generator",
]
