"""
Sell-assets counterfactual.

The comparison strategy funds spending by selling assets and paying
capital-gains tax on the embedded gain. Each year, in order:

    1. pay tax on dividends:  value -= value × yield × dividend_tax_rate
    2. sell the grossed-up withdrawal (depleted if it exceeds the value)
    3. apply the year's growth

Withdrawal before growth mirrors the SBLOC stepper. The gross-up is

    gain  = withdrawal × (1 - cost_basis_ratio)
    tax   = gain × capital_gains_rate
    sale  = withdrawal + tax

Two predicates are reported and must not be conflated: *not depleted*
(the portfolio funded every withdrawal) and *terminal above initial* (the
shared success predicate used for the BBD strategy).
"""

from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from bbdsim.config import SellStrategyConfig, WithdrawalPlan
from bbdsim.metrics.success import success_rate
from bbdsim.stats.summary import BAND_PERCENTILES, P50, PercentileBands, percentile, percentiles


@dataclass(frozen=True)
class GrossUpResult:
    """Sale needed to net a withdrawal after capital-gains tax."""

    withdrawal: float
    capital_gain: float
    tax: float
    gross_sale: float


def gross_up_withdrawal(
    withdrawal: float,
    cost_basis_ratio: float,
    capital_gains_rate: float,
) -> GrossUpResult:
    """
    Gross sale for a net withdrawal.

    Examples
    --------
    >>> r = gross_up_withdrawal(100_000, 0.4, 0.238)
    >>> round(r.tax), round(r.gross_sale)
    (14280, 114280)
    """
    gain = withdrawal * (1.0 - cost_basis_ratio)
    tax = gain * capital_gains_rate
    return GrossUpResult(
        withdrawal=withdrawal,
        capital_gain=gain,
        tax=tax,
        gross_sale=withdrawal + tax,
    )


@dataclass(frozen=True, eq=False)
class SellPaths:
    """
    Raw sell-strategy trajectories.

    Attributes
    ----------
    values : NDArray[np.float64]
        Portfolio value at years 0..T, shape (S, T + 1).
    depleted : NDArray[np.bool_]
        Whether each path ran out, shape (S,).
    depletion_year : NDArray[np.int64]
        Year (1..T) of depletion; 0 if never.
    capital_gains_taxes, dividend_taxes : NDArray[np.float64]
        Lifetime taxes per path, shape (S,).
    """

    values: NDArray[np.float64]
    depleted: NDArray[np.bool_]
    depletion_year: NDArray[np.int64]
    capital_gains_taxes: NDArray[np.float64]
    dividend_taxes: NDArray[np.float64]


def simulate_sell_paths(
    initial_value: float,
    growth_rates: ArrayLike,
    withdrawals: ArrayLike,
    config: SellStrategyConfig,
) -> SellPaths:
    """
    Step many sell-strategy paths at once.

    Parameters
    ----------
    initial_value : float
    growth_rates : array_like
        Annual growth per path and year, shape (S, T).
    withdrawals : array_like
        Net spending per year, shape (T,).
    config : SellStrategyConfig
    """
    growth = np.asarray(growth_rates, dtype=np.float64)
    if growth.ndim == 1:
        growth = growth[np.newaxis, :]
    draws = np.asarray(withdrawals, dtype=np.float64)
    n_paths, n_years = growth.shape
    if draws.shape != (n_years,):
        raise ValueError(f"withdrawals must have shape ({n_years},). Got {draws.shape}")

    values = np.zeros((n_paths, n_years + 1))
    values[:, 0] = initial_value
    value = np.full(n_paths, float(initial_value))
    depleted = np.zeros(n_paths, dtype=bool)
    depletion_year = np.zeros(n_paths, dtype=np.int64)
    cg_taxes = np.zeros(n_paths)
    div_taxes = np.zeros(n_paths)

    for t in range(n_years):
        dividend_tax = value * config.dividend_yield * config.dividend_tax_rate
        value = value - dividend_tax
        div_taxes += dividend_tax

        sale = gross_up_withdrawal(draws[t], config.cost_basis_ratio, config.capital_gains_rate)
        newly = ~depleted & (sale.gross_sale >= value)
        depletion_year[newly] = t + 1
        depleted |= newly

        cg_taxes += np.where(depleted, 0.0, sale.tax)
        value = np.where(depleted, 0.0, value - sale.gross_sale)
        value = np.maximum(value * (1.0 + np.maximum(growth[:, t], -1.0)), 0.0)
        values[:, t + 1] = value

    return SellPaths(values, depleted, depletion_year, cg_taxes, div_taxes)


def band_growth_rates(band: ArrayLike) -> NDArray[np.float64]:
    """Year-over-year growth of a band, 0 where the prior value is non-positive."""
    b = np.asarray(band, dtype=np.float64)
    prev, curr = b[:-1], b[1:]
    safe_prev = np.where(prev > 0, prev, 1.0)
    return np.where(prev > 0, (curr - prev) / safe_prev, 0.0)


def scenario_bands(bands: PercentileBands) -> Tuple[Tuple[str, ...], NDArray[np.float64]]:
    """
    The five standard bands plus the four midpoints between neighbours.

    Returns
    -------
    labels : Tuple[str, ...]
        ``("p10", "p10-p25", "p25", ..., "p90")``.
    values : NDArray[np.float64]
        Shape (9, T + 1).
    """
    labels = []
    rows = []
    for i, p in enumerate(BAND_PERCENTILES):
        if i > 0:
            lower = BAND_PERCENTILES[i - 1]
            labels.append(f"{lower.label}-{p.label}")
            rows.append((bands.band(lower) + bands.band(p)) / 2.0)
        labels.append(p.label)
        rows.append(bands.band(p))
    return tuple(labels), np.vstack(rows)


@dataclass(frozen=True, eq=False)
class SellStrategyResult:
    """
    Summary of the sell-assets counterfactual.

    Attributes
    ----------
    terminal_values : NDArray[np.float64]
        Terminal value per scenario (or iteration).
    depletion_probability : float
        Fraction of scenarios that ran out of money.
    not_depleted_rate : float
        ``1 - depletion_probability``; the sell strategy's own notion of
        success.
    terminal_above_initial_rate : float
        Shared success predicate (terminal > initial), comparable with the
        BBD success rate.
    terminal_percentiles : Dict[str, float]
    median_terminal : float
    median_path : NDArray[np.float64]
        Path of the scenario with the median terminal value.
    median_capital_gains_tax, median_dividend_tax : float
        Lifetime taxes, median across scenarios.
    labels : Tuple[str, ...]
        Scenario names for the percentile variant; empty otherwise.
    paths : SellPaths
    """

    terminal_values: NDArray[np.float64]
    depletion_probability: float
    not_depleted_rate: float
    terminal_above_initial_rate: float
    terminal_percentiles: Dict[str, float]
    median_terminal: float
    median_path: NDArray[np.float64]
    median_capital_gains_tax: float
    median_dividend_tax: float
    labels: Tuple[str, ...]
    paths: SellPaths

    @property
    def median_lifetime_taxes(self) -> float:
        return self.median_capital_gains_tax + self.median_dividend_tax


def summarize_sell_paths(
    paths: SellPaths,
    initial_value: float,
    labels: Tuple[str, ...] = (),
) -> SellStrategyResult:
    """Reduce raw sell paths to a ``SellStrategyResult``."""
    terminal = paths.values[:, -1]
    n = terminal.size
    depletion = float(np.count_nonzero(paths.depleted)) / n if n else 0.0
    order = np.argsort(terminal, kind="stable")
    median_index = int(order[min(n // 2, n - 1)]) if n else 0
    return SellStrategyResult(
        terminal_values=terminal,
        depletion_probability=depletion,
        not_depleted_rate=1.0 - depletion,
        terminal_above_initial_rate=success_rate(terminal, initial_value),
        terminal_percentiles=percentiles(terminal),
        median_terminal=percentile(terminal, P50),
        median_path=paths.values[median_index].copy() if n else np.zeros(0),
        median_capital_gains_tax=percentile(paths.capital_gains_taxes, P50),
        median_dividend_tax=percentile(paths.dividend_taxes, P50),
        labels=labels,
        paths=paths,
    )


def deflate_paths(paths: SellPaths, deflator: Optional[ArrayLike]) -> SellPaths:
    """Divide path values (years 0..T) by a per-year deflator."""
    if deflator is None:
        return paths
    factors = np.asarray(deflator, dtype=np.float64)
    if factors.shape != (paths.values.shape[1],):
        raise ValueError(
            f"deflator must have shape ({paths.values.shape[1]},). Got {factors.shape}"
        )
    return replace(paths, values=paths.values / factors[np.newaxis, :])


def calculate_sell_strategy(
    config: SellStrategyConfig,
    bands: PercentileBands,
    initial_value: float,
    withdrawal: WithdrawalPlan,
    deflator: Optional[ArrayLike] = None,
) -> SellStrategyResult:
    """
    Sell counterfactual on the BBD run's percentile growth paths.

    The nine scenarios (five bands, four midpoints) each grow at the
    year-over-year rate of their band, so both strategies face the same
    markets.

    Parameters
    ----------
    config : SellStrategyConfig
    bands : PercentileBands
        Yearly bands of a nominal market value index from the BBD run.
    initial_value : float
    withdrawal : WithdrawalPlan
        Net spending, the same schedule the BBD strategy borrows.
    deflator : array_like, optional
        Per-year divisor (years 0..T) applied to the nominal paths before
        they are summarised.
    """
    labels, rows = scenario_bands(bands)
    growth = np.vstack([band_growth_rates(row) for row in rows])
    n_years = growth.shape[1]
    paths = simulate_sell_paths(initial_value, growth, withdrawal.schedule(n_years), config)
    return summarize_sell_paths(deflate_paths(paths, deflator), initial_value, labels)


def calculate_sell_iterations(
    config: SellStrategyConfig,
    market_returns: ArrayLike,
    initial_value: float,
    withdrawal: WithdrawalPlan,
    deflator: Optional[ArrayLike] = None,
) -> SellStrategyResult:
    """
    Sell counterfactual on each iteration's own market returns.

    Parameters
    ----------
    market_returns : array_like
        Portfolio return per iteration and year, shape (N, T).
    deflator : array_like, optional
        As for ``calculate_sell_strategy``.
    """
    growth = np.asarray(market_returns, dtype=np.float64)
    paths = simulate_sell_paths(initial_value, growth, withdrawal.schedule(growth.shape[1]), config)
    return summarize_sell_paths(deflate_paths(paths, deflator), initial_value)
