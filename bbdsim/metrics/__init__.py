"""
Derived metrics over simulation output.

This module implements:
- The shared success predicate (terminal > initial)
- CAGR from the median and per iteration, TWRR, metrics summary
- Return-target probabilities, percentile return tables and the
  performance summary
- Margin-call probability curves with a monotone cumulative
- The sell-assets counterfactual (percentile and per-iteration variants)
- Estate comparison and salary equivalent
"""

from bbdsim.metrics.success import is_success, success_rate
from bbdsim.metrics.growth import (
    MetricsSummary,
    annualized_volatility,
    cagr_distribution,
    calculate_cagr,
    calculate_metrics_summary,
    calculate_twrr,
    median_cagr,
)
from bbdsim.metrics.return_probabilities import (
    DEFAULT_THRESHOLDS,
    DEFAULT_TIME_HORIZONS,
    ExpectedReturns,
    PerformanceRow,
    PerformanceSummary,
    ReturnProbabilities,
    calculate_expected_returns,
    calculate_performance_summary,
    calculate_return_probabilities,
)
from bbdsim.metrics.margin_call import (
    MarginCallPoint,
    is_monotonic,
    margin_call_curve,
    margin_call_probabilities,
)
from bbdsim.metrics.sell_strategy import (
    GrossUpResult,
    SellPaths,
    SellStrategyResult,
    calculate_sell_iterations,
    calculate_sell_strategy,
    gross_up_withdrawal,
    simulate_sell_paths,
)
from bbdsim.metrics.estate import (
    ESTATE_TAX_EXEMPTION,
    EstateAnalysis,
    EstateDetail,
    SalaryEquivalent,
    calculate_bbd_comparison,
    calculate_estate_analysis,
    calculate_salary_equivalent,
    estate_from_simulation,
)

__all__ = [
    # Success
    "is_success",
    "success_rate",
    # Growth
    "MetricsSummary",
    "annualized_volatility",
    "cagr_distribution",
    "calculate_cagr",
    "calculate_metrics_summary",
    "calculate_twrr",
    "median_cagr",
    # Return probabilities
    "DEFAULT_THRESHOLDS",
    "DEFAULT_TIME_HORIZONS",
    "ExpectedReturns",
    "PerformanceRow",
    "PerformanceSummary",
    "ReturnProbabilities",
    "calculate_expected_returns",
    "calculate_performance_summary",
    "calculate_return_probabilities",
    # Margin calls
    "MarginCallPoint",
    "is_monotonic",
    "margin_call_curve",
    "margin_call_probabilities",
    # Sell strategy
    "GrossUpResult",
    "SellPaths",
    "SellStrategyResult",
    "calculate_sell_iterations",
    "calculate_sell_strategy",
    "gross_up_withdrawal",
    "simulate_sell_paths",
    # Estate
    "ESTATE_TAX_EXEMPTION",
    "EstateAnalysis",
    "EstateDetail",
    "SalaryEquivalent",
    "calculate_bbd_comparison",
    "calculate_estate_analysis",
    "calculate_salary_equivalent",
    "estate_from_simulation",
]
