"""
Forced liquidation on a margin call.

The account is brought back to a target LTV below the margin threshold:

    target      = max_ltv × liquidation_target_multiplier
    excess      = loan - portfolio × target
    to_sell     = excess / (1 - haircut)          (capped at the portfolio)
    proceeds    = to_sell × (1 - haircut)
    portfolio' = portfolio - to_sell
    loan'      = max(0, loan - proceeds)

The excess is measured against the pre-sale portfolio, so the sale itself
leaves the LTV somewhat above the target; a deeply under-water account can
remain in margin call after liquidation.
"""

from typing import Tuple

from bbdsim.config import SBLOCConfig
from bbdsim.sbloc.state import LiquidationEvent, calculate_ltv


def liquidation_amount(
    portfolio_value: float,
    loan_balance: float,
    target_ltv: float,
    haircut_rate: float,
) -> float:
    """
    Gross assets to sell to reach ``target_ltv``.

    Returns
    -------
    float
        Zero when the account is already at or below target; never more
        than ``portfolio_value``.
    """
    excess_loan = loan_balance - portfolio_value * target_ltv
    if excess_loan <= 0:
        return 0.0
    return min(excess_loan / (1.0 - haircut_rate), portfolio_value)


def liquidate(
    portfolio_value: float,
    loan_balance: float,
    config: SBLOCConfig,
) -> Tuple[float, float, LiquidationEvent]:
    """
    Apply a forced sale.

    Parameters
    ----------
    portfolio_value, loan_balance : float
        Balances at the margin call.
    config : SBLOCConfig
        Supplies the target LTV and the haircut.

    Returns
    -------
    portfolio_value : float
    loan_balance : float
    event : LiquidationEvent
    """
    ltv_before = calculate_ltv(portfolio_value, loan_balance)
    haircut_rate = config.liquidation_haircut

    sold = liquidation_amount(
        portfolio_value, loan_balance, config.liquidation_target_ltv, haircut_rate
    )
    proceeds = sold * (1.0 - haircut_rate)

    new_portfolio = max(0.0, portfolio_value - sold)
    new_loan = max(0.0, loan_balance - proceeds)
    event = LiquidationEvent(
        assets_sold=sold,
        proceeds=proceeds,
        haircut=sold - proceeds,
        ltv_before=ltv_before,
        ltv_after=calculate_ltv(new_portfolio, new_loan),
    )
    return new_portfolio, new_loan, event
