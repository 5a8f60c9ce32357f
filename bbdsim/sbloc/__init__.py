"""
Securities-backed line of credit (SBLOC) state machine.

**State (state.py):**
- Immutable account snapshots with derived loan-to-value
- Step results and liquidation events
- NaN/negative balance validation

**Liquidation (liquidation.py):**
- Forced sale to a target LTV, net of a haircut

**Engine (engine.py):**
- Annual and monthly stepping in the fixed withdrawal, interest, growth,
  margin-call order
- Borrowing capacity and margin buffer helpers
"""

from bbdsim.sbloc.state import (
    LiquidationEvent,
    SBLOCState,
    SBLOCYearResult,
    calculate_ltv,
    validate_sbloc_state,
)
from bbdsim.sbloc.liquidation import liquidate, liquidation_amount
from bbdsim.sbloc.engine import (
    MarginBuffer,
    annual_to_monthly_return,
    available_credit,
    calculate_max_borrowing,
    can_recover_from_margin_call,
    effective_annual_rate,
    initialize_sbloc_state,
    is_in_warning_zone,
    margin_buffer,
    monthly_interest_rate,
    step_sbloc,
    step_sbloc_monthly,
)

__all__ = [
    # State
    "LiquidationEvent",
    "SBLOCState",
    "SBLOCYearResult",
    "calculate_ltv",
    "validate_sbloc_state",
    # Liquidation
    "liquidate",
    "liquidation_amount",
    # Engine
    "MarginBuffer",
    "annual_to_monthly_return",
    "available_credit",
    "calculate_max_borrowing",
    "can_recover_from_margin_call",
    "effective_annual_rate",
    "initialize_sbloc_state",
    "is_in_warning_zone",
    "margin_buffer",
    "monthly_interest_rate",
    "step_sbloc",
    "step_sbloc_monthly",
]
