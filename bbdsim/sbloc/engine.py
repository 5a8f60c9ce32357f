"""
SBLOC state machine.

One call advances an account by one simulated year (or, with monthly
withdrawals, by twelve monthly sub-steps) in a fixed order:

    1. borrow the withdrawal and the tax on dividends
    2. accrue interest on the loan
    3. apply the portfolio return (floored at -100%, value floored at 0)
    4. recompute LTV from the updated balances
    5. margin call if LTV > maintenance margin; liquidate to the target LTV
    6. failed if net worth (portfolio - loan) ≤ 0
    7. advance years_since_start

Withdrawals happen before growth. Steps are pure: the input state is never
modified and a new state is returned.

A step that produces a NaN or negative balance is not allowed to propagate:
it is logged, the portfolio is zeroed, the loan reverts to its prior value,
and the result is marked failed and invalid.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from bbdsim.config import CompoundingFrequency, SBLOCConfig
from bbdsim.errors import SBLOCStateValidationError
from bbdsim.sbloc.liquidation import liquidate
from bbdsim.sbloc.state import (
    LiquidationEvent,
    SBLOCState,
    SBLOCYearResult,
    calculate_ltv,
    validate_sbloc_state,
)

logger = logging.getLogger(__name__)

MONTHS_PER_YEAR = 12


def is_in_warning_zone(ltv: float, config: SBLOCConfig) -> bool:
    """Borrowed past ``max_ltv`` but not past the maintenance margin."""
    return config.max_ltv <= ltv <= config.maintenance_margin


def make_state(
    portfolio_value: float,
    loan_balance: float,
    years_since_start: int,
    config: SBLOCConfig,
) -> SBLOCState:
    """Build a state with LTV and warning zone derived from the balances."""
    ltv = calculate_ltv(portfolio_value, loan_balance)
    return SBLOCState(
        portfolio_value=portfolio_value,
        loan_balance=loan_balance,
        current_ltv=ltv,
        years_since_start=years_since_start,
        in_warning_zone=is_in_warning_zone(ltv, config),
    )


def initialize_sbloc_state(config: SBLOCConfig, portfolio_value: float) -> SBLOCState:
    """
    Starting state of an account.

    Raises
    ------
    SBLOCStateValidationError
        If the starting balances are invalid.
    """
    state = make_state(float(portfolio_value), config.initial_loan_balance, 0, config)
    validate_sbloc_state(state)
    return state


def effective_annual_rate(annual_rate: float, compounding: CompoundingFrequency) -> float:
    """Interest actually charged over one year on a fixed balance."""
    if compounding is CompoundingFrequency.MONTHLY:
        return (1.0 + annual_rate / MONTHS_PER_YEAR) ** MONTHS_PER_YEAR - 1.0
    return annual_rate


def monthly_interest_rate(annual_rate: float, compounding: CompoundingFrequency) -> float:
    """
    Per-month rate used by monthly stepping.

    Monthly compounding charges ``rate / 12``; annual compounding charges the
    monthly rate whose twelve-fold compound equals ``rate``.
    """
    if compounding is CompoundingFrequency.MONTHLY:
        return annual_rate / MONTHS_PER_YEAR
    return (1.0 + annual_rate) ** (1.0 / MONTHS_PER_YEAR) - 1.0


def annual_to_monthly_return(annual_return: float) -> float:
    """Geometric monthly return, (1 + R)^(1/12) - 1; total loss stays -1."""
    if annual_return <= -1.0:
        return -1.0
    return (1.0 + annual_return) ** (1.0 / MONTHS_PER_YEAR) - 1.0


def calculate_max_borrowing(portfolio_value: float, config: SBLOCConfig) -> float:
    """Loan ceiling at the target LTV."""
    return max(0.0, portfolio_value) * config.max_ltv


def available_credit(state: SBLOCState, config: SBLOCConfig) -> float:
    """Additional borrowing possible before reaching ``max_ltv``."""
    return max(0.0, calculate_max_borrowing(state.portfolio_value, config) - state.loan_balance)


@dataclass(frozen=True)
class MarginBuffer:
    """
    Portfolio decline the account can absorb.

    Attributes
    ----------
    to_warning : float
        Dollars of portfolio decline before LTV reaches ``max_ltv``.
    to_margin_call : float
        Dollars of portfolio decline before LTV exceeds the maintenance
        margin.
    """

    to_warning: float
    to_margin_call: float

    @property
    def in_margin_call(self) -> bool:
        return self.to_margin_call <= 0


def margin_buffer(state: SBLOCState, config: SBLOCConfig) -> MarginBuffer:
    """Distance of the account from the warning zone and from a margin call."""
    portfolio = state.portfolio_value
    loan = state.loan_balance
    return MarginBuffer(
        to_warning=portfolio - loan / config.max_ltv,
        to_margin_call=portfolio - loan / config.maintenance_margin,
    )


def can_recover_from_margin_call(state: SBLOCState, config: SBLOCConfig) -> bool:
    """Whether selling the whole portfolio (after haircut) would repay the loan."""
    return state.portfolio_value * (1.0 - config.liquidation_haircut) > state.loan_balance


def _period(
    portfolio: float,
    loan: float,
    config: SBLOCConfig,
    period_return: float,
    withdrawal: float,
    dividend_tax: float,
    interest_rate: float,
) -> Tuple[float, float, float, bool, Optional[LiquidationEvent]]:
    """Steps 1-5 for one period on raw balances."""
    # 1. borrow
    loan = loan + withdrawal + dividend_tax

    # 2. interest on the post-withdrawal balance
    interest = loan * interest_rate
    loan = loan + interest

    # 3. growth; NaN passes through to validation
    if period_return < -1.0:
        period_return = -1.0
    portfolio = portfolio * (1.0 + period_return)
    if portfolio < 0:
        portfolio = 0.0

    # 4-5. fresh LTV, margin call
    ltv = calculate_ltv(portfolio, loan)
    margin_call = ltv > config.maintenance_margin
    event = None
    if margin_call:
        portfolio, loan, event = liquidate(portfolio, loan, config)

    return portfolio, loan, interest, margin_call, event


def _recover(
    prior: SBLOCState,
    config: SBLOCConfig,
    exc: SBLOCStateValidationError,
) -> SBLOCYearResult:
    logger.warning("%s; marking iteration as failed", exc)
    loan = prior.loan_balance
    if not math.isfinite(loan) or loan < 0:
        loan = 0.0
    state = make_state(0.0, loan, prior.years_since_start + 1, config)
    return SBLOCYearResult(
        new_state=state,
        margin_call_triggered=False,
        liquidation_event=None,
        portfolio_failed=True,
        interest_charged=0.0,
        withdrawal_made=0.0,
        invalid_state=True,
    )


def step_sbloc(
    state: SBLOCState,
    config: SBLOCConfig,
    portfolio_return: float,
    withdrawal: float,
) -> SBLOCYearResult:
    """
    Advance an account by one year.

    Parameters
    ----------
    state : SBLOCState
        Prior state; not modified.
    config : SBLOCConfig
    portfolio_return : float
        Annual portfolio return as a decimal; values below -1 are floored.
    withdrawal : float
        Amount borrowed for spending this year.

    Returns
    -------
    SBLOCYearResult
        Never raises for numerical degeneracy; see ``invalid_state``.
    """
    if config.monthly_withdrawal:
        return step_sbloc_monthly(state, config, portfolio_return, withdrawal)

    try:
        validate_sbloc_state(state)
        dividend_tax = state.portfolio_value * config.dividend_yield * config.dividend_tax_rate
        interest_rate = effective_annual_rate(config.annual_interest_rate, config.compounding)
        portfolio, loan, interest, margin_call, event = _period(
            state.portfolio_value, state.loan_balance, config,
            portfolio_return, withdrawal, dividend_tax, interest_rate,
        )
        new_state = make_state(portfolio, loan, state.years_since_start + 1, config)
        validate_sbloc_state(new_state)
    except SBLOCStateValidationError as exc:
        return _recover(state, config, exc)

    return SBLOCYearResult(
        new_state=new_state,
        margin_call_triggered=margin_call,
        liquidation_event=event,
        portfolio_failed=new_state.net_worth <= 0,
        interest_charged=interest,
        withdrawal_made=withdrawal,
        dividend_tax_borrowed=dividend_tax,
    )


def step_sbloc_monthly(
    state: SBLOCState,
    config: SBLOCConfig,
    annual_return: float,
    annual_withdrawal: float,
) -> SBLOCYearResult:
    """
    Advance an account by one year in twelve monthly sub-steps.

    Each month borrows 1/12 of the withdrawal and dividend tax, accrues one
    month of interest and applies the geometric monthly return. A margin
    call in any month marks the year; liquidations within the year are
    merged into one event. Stepping stops at the first failed month.
    """
    monthly_return = annual_to_monthly_return(annual_return)
    monthly_withdrawal = annual_withdrawal / MONTHS_PER_YEAR
    interest_rate = monthly_interest_rate(config.annual_interest_rate, config.compounding)

    portfolio = state.portfolio_value
    loan = state.loan_balance
    total_interest = 0.0
    total_withdrawn = 0.0
    total_dividend_tax = 0.0
    margin_call = False
    event: Optional[LiquidationEvent] = None
    failed = False

    try:
        validate_sbloc_state(state)
        for _ in range(MONTHS_PER_YEAR):
            dividend_tax = portfolio * config.dividend_yield * config.dividend_tax_rate / MONTHS_PER_YEAR
            portfolio, loan, interest, month_call, month_event = _period(
                portfolio, loan, config, monthly_return,
                monthly_withdrawal, dividend_tax, interest_rate,
            )
            total_interest += interest
            total_withdrawn += monthly_withdrawal
            total_dividend_tax += dividend_tax
            if month_call:
                margin_call = True
                event = month_event if event is None else event.merge(month_event)
            validate_sbloc_state(make_state(portfolio, loan, state.years_since_start, config))
            if portfolio - loan <= 0:
                failed = True
                break
        new_state = make_state(portfolio, loan, state.years_since_start + 1, config)
    except SBLOCStateValidationError as exc:
        return _recover(state, config, exc)

    return SBLOCYearResult(
        new_state=new_state,
        margin_call_triggered=margin_call,
        liquidation_event=event,
        portfolio_failed=failed or new_state.net_worth <= 0,
        interest_charged=total_interest,
        withdrawal_made=total_withdrawn,
        dividend_tax_borrowed=total_dividend_tax,
    )

