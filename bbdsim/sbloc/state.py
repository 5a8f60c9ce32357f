"""
SBLOC account state and step results.

States are immutable; every step of the state machine returns a new
``SBLOCState``. Loan-to-value is always recomputed from the balances it
describes:

    LTV = loan / portfolio      (portfolio > 0)
    LTV = 0                     (loan == 0)
    LTV = inf                   (portfolio == 0, loan > 0)

An infinite LTV is a valid terminal state (certain margin call); NaN never
is.
"""

import math
from dataclasses import dataclass
from typing import Optional

from bbdsim.errors import SBLOCStateValidationError


def calculate_ltv(portfolio_value: float, loan_balance: float) -> float:
    """
    Loan-to-value ratio.

    Returns
    -------
    float
        0.0 when there is no loan, ``inf`` when a loan is secured by an
        empty portfolio, else ``loan_balance / portfolio_value``.
    """
    if loan_balance == 0:
        return 0.0
    if portfolio_value <= 0:
        return math.inf
    return loan_balance / portfolio_value


@dataclass(frozen=True)
class SBLOCState:
    """
    Snapshot of one SBLOC account.

    Attributes
    ----------
    portfolio_value : float
        Gross market value of the collateral (≥ 0).
    loan_balance : float
        Outstanding loan including capitalised interest (≥ 0).
    current_ltv : float
        ``calculate_ltv(portfolio_value, loan_balance)``.
    years_since_start : int
    in_warning_zone : bool
        Borrowed past the target ceiling but not yet in margin call.
    """

    portfolio_value: float
    loan_balance: float
    current_ltv: float
    years_since_start: int = 0
    in_warning_zone: bool = False

    @property
    def net_worth(self) -> float:
        """Portfolio minus loan; negative when the account is under water."""
        return self.portfolio_value - self.loan_balance


@dataclass(frozen=True)
class LiquidationEvent:
    """
    A forced sale during a margin call.

    Attributes
    ----------
    assets_sold : float
        Gross portfolio value sold.
    proceeds : float
        Amount applied to the loan after the haircut.
    haircut : float
        Value lost to forced selling, ``assets_sold - proceeds``.
    ltv_before, ltv_after : float
    """

    assets_sold: float
    proceeds: float
    haircut: float
    ltv_before: float
    ltv_after: float

    def merge(self, other: "LiquidationEvent") -> "LiquidationEvent":
        """Combine two sales in the same year (monthly stepping)."""
        return LiquidationEvent(
            assets_sold=self.assets_sold + other.assets_sold,
            proceeds=self.proceeds + other.proceeds,
            haircut=self.haircut + other.haircut,
            ltv_before=self.ltv_before,
            ltv_after=other.ltv_after,
        )


@dataclass(frozen=True)
class SBLOCYearResult:
    """
    Output of one state-machine step.

    Attributes
    ----------
    new_state : SBLOCState
    margin_call_triggered : bool
    liquidation_event : LiquidationEvent, optional
    portfolio_failed : bool
        Net worth (portfolio - loan) ≤ 0.
    interest_charged : float
    withdrawal_made : float
    dividend_tax_borrowed : float
    invalid_state : bool
        The step produced a NaN or negative balance and was recovered as a
        failure.
    """

    new_state: SBLOCState
    margin_call_triggered: bool
    liquidation_event: Optional[LiquidationEvent]
    portfolio_failed: bool
    interest_charged: float
    withdrawal_made: float
    dividend_tax_borrowed: float = 0.0
    invalid_state: bool = False

    @property
    def net_worth(self) -> float:
        return self.new_state.net_worth


def validate_sbloc_state(state: SBLOCState) -> None:
    """
    Check balances and LTV.

    Raises
    ------
    SBLOCStateValidationError
        On NaN or negative balances, a NaN LTV, or an infinite LTV that is
        not explained by an empty portfolio with an outstanding loan.
    """
    for name in ("portfolio_value", "loan_balance"):
        value = getattr(state, name)
        if math.isnan(value):
            raise SBLOCStateValidationError(name, "value is NaN", state)
        if math.isinf(value):
            raise SBLOCStateValidationError(name, "value is infinite", state)
        if value < 0:
            raise SBLOCStateValidationError(name, f"value {value} is negative", state)

    ltv = state.current_ltv
    if math.isnan(ltv):
        raise SBLOCStateValidationError("current_ltv", "value is NaN", state)
    if math.isinf(ltv) and not (state.portfolio_value == 0 and state.loan_balance > 0):
        raise SBLOCStateValidationError(
            "current_ltv", "infinite LTV requires an empty portfolio and a loan", state
        )
    if ltv < 0:
        raise SBLOCStateValidationError("current_ltv", f"value {ltv} is negative", state)
