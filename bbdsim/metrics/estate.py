"""
Estate comparison and salary equivalent.

Under Buy-Borrow-Die the heirs receive the portfolio with a stepped-up cost
basis, so the embedded capital gain is never taxed; the loan is repaid from
the estate. Under the sell strategy the same gain would have been taxed
when realised.
"""

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import ArrayLike

from bbdsim.stats.summary import P50, percentile

ESTATE_TAX_EXEMPTION = 13_990_000.0


@dataclass(frozen=True)
class EstateAnalysis:
    """
    Median estate outcome of both strategies.

    Attributes
    ----------
    bbd_net_estate : float
        Median terminal net worth under BBD (portfolio minus loan).
    sell_net_estate : float
        Median terminal value under the sell strategy.
    bbd_advantage : float
        ``bbd_net_estate - sell_net_estate``.
    median_dividend_taxes_borrowed : float
        Dividend taxes financed on the line of credit (median iteration).
    """

    bbd_net_estate: float
    sell_net_estate: float
    bbd_advantage: float
    median_dividend_taxes_borrowed: float = 0.0


@dataclass(frozen=True)
class EstateDetail:
    """Step-up in basis for a single portfolio."""

    portfolio_value: float
    cost_basis: float
    embedded_gain: float
    stepped_up_savings: float
    loan_balance: float
    net_to_heirs: float
    above_exemption: bool


def calculate_estate_analysis(
    portfolio_value: float,
    cost_basis: float,
    capital_gains_rate: float,
    loan_balance: float = 0.0,
    exemption: float = ESTATE_TAX_EXEMPTION,
) -> EstateDetail:
    """
    Step-up benefit at death.

    Parameters
    ----------
    portfolio_value : float
        Gross value at death.
    cost_basis : float
        Original purchase cost.
    capital_gains_rate : float
        Rate the embedded gain would have been taxed at.
    loan_balance : float
        Outstanding loan repaid from the estate.
    exemption : float
        Estate-tax exemption the net estate is compared against.
    """
    gain = max(0.0, portfolio_value - cost_basis)
    net = portfolio_value - loan_balance
    return EstateDetail(
        portfolio_value=portfolio_value,
        cost_basis=cost_basis,
        embedded_gain=gain,
        stepped_up_savings=gain * capital_gains_rate,
        loan_balance=loan_balance,
        net_to_heirs=net,
        above_exemption=net > exemption,
    )


def calculate_bbd_comparison(
    bbd_net_worth: float,
    sell_terminal_value: float,
    dividend_taxes_borrowed: float = 0.0,
) -> EstateAnalysis:
    """Estate comparison from two already-computed outcomes."""
    return EstateAnalysis(
        bbd_net_estate=bbd_net_worth,
        sell_net_estate=sell_terminal_value,
        bbd_advantage=bbd_net_worth - sell_terminal_value,
        median_dividend_taxes_borrowed=dividend_taxes_borrowed,
    )


def estate_from_simulation(
    terminal_net_worth: ArrayLike,
    terminal_portfolio: ArrayLike,
    initial_value: float,
    cost_basis_ratio: float,
    capital_gains_rate: float,
    dividend_taxes_borrowed: Optional[ArrayLike] = None,
    sell_median_terminal: Optional[float] = None,
) -> EstateAnalysis:
    """
    Estate comparison of a Monte Carlo run.

    The sell estate is the sell counterfactual's median terminal value when
    available; otherwise the median gross portfolio less tax on its
    embedded gain over ``initial_value × cost_basis_ratio``.
    """
    bbd = percentile(terminal_net_worth, P50)
    if sell_median_terminal is None:
        gross = percentile(terminal_portfolio, P50)
        basis = initial_value * cost_basis_ratio
        sell = gross - max(0.0, gross - basis) * capital_gains_rate
    else:
        sell = sell_median_terminal
    borrowed = 0.0
    if dividend_taxes_borrowed is not None:
        borrowed = percentile(np.asarray(dividend_taxes_borrowed, dtype=np.float64), P50)
    return calculate_bbd_comparison(bbd, sell, borrowed)


@dataclass(frozen=True)
class SalaryEquivalent:
    """Pre-tax salary needed to net the same spending."""

    withdrawal: float
    effective_tax_rate: float
    salary: float
    tax_saved: float


def calculate_salary_equivalent(withdrawal: float, effective_tax_rate: float) -> SalaryEquivalent:
    """
    Salary that nets ``withdrawal`` after income tax.

    Borrowed spending is not income, so a BBD withdrawal is worth
    ``withdrawal / (1 - rate)`` of salary.

    Returns
    -------
    SalaryEquivalent
        ``salary == withdrawal`` for rates ≤ 0; ``inf`` for rates ≥ 1.
    """
    if effective_tax_rate <= 0:
        salary = withdrawal
    elif effective_tax_rate >= 1:
        salary = math.inf
    else:
        salary = withdrawal / (1.0 - effective_tax_rate)
    return SalaryEquivalent(
        withdrawal=withdrawal,
        effective_tax_rate=effective_tax_rate,
        salary=salary,
        tax_saved=salary - withdrawal,
    )
