"""
Unit tests for the SBLOC state machine.

Tests cover:
- Loan-to-value edge cases
- Annual step ordering (borrow, interest, growth, margin call)
- Forced liquidation to the target LTV
- Monthly stepping and compounding
- NaN recovery
- Balance invariants over random paths
"""

import logging
import math

import pytest
import numpy as np
from numpy.testing import assert_allclose

from bbdsim import CompoundingFrequency, SBLOCConfig, SBLOCStateValidationError
from bbdsim.sbloc import (
    SBLOCState,
    annual_to_monthly_return,
    available_credit,
    calculate_ltv,
    calculate_max_borrowing,
    can_recover_from_margin_call,
    effective_annual_rate,
    initialize_sbloc_state,
    is_in_warning_zone,
    liquidate,
    liquidation_amount,
    margin_buffer,
    monthly_interest_rate,
    step_sbloc,
    validate_sbloc_state,
)
from bbdsim.sbloc.engine import make_state
from bbdsim.stats import seeded_rng


def _state(portfolio: float, loan: float, config: SBLOCConfig) -> SBLOCState:
    return make_state(portfolio, loan, 0, config)


class TestLTV:
    """Tests for loan-to-value edge cases."""

    def test_no_loan_is_zero(self) -> None:
        """Test that LTV is 0 with no loan, whatever the portfolio."""
        assert calculate_ltv(1_000_000.0, 0.0) == 0.0
        assert calculate_ltv(0.0, 0.0) == 0.0

    def test_empty_portfolio_is_infinite(self) -> None:
        """Test that a loan against nothing is an infinite LTV, not NaN."""
        ltv = calculate_ltv(0.0, 100.0)
        assert math.isinf(ltv) and ltv > 0

    def test_ratio(self) -> None:
        """Test the ordinary ratio."""
        assert calculate_ltv(200.0, 50.0) == 0.25

    def test_infinite_ltv_state_is_valid(self) -> None:
        """Test that an empty portfolio with a loan passes validation."""
        validate_sbloc_state(_state(0.0, 100.0, SBLOCConfig()))

    def test_negative_balance_invalid(self) -> None:
        """Test that a negative portfolio fails validation."""
        state = SBLOCState(portfolio_value=-1.0, loan_balance=0.0, current_ltv=0.0)
        with pytest.raises(SBLOCStateValidationError, match="portfolio_value") as info:
            validate_sbloc_state(state)
        assert info.value.field == "portfolio_value"
        assert info.value.state is state

    def test_nan_loan_invalid(self) -> None:
        """Test that a NaN loan fails validation."""
        state = SBLOCState(portfolio_value=1.0, loan_balance=float("nan"), current_ltv=0.0)
        with pytest.raises(SBLOCStateValidationError, match="NaN"):
            validate_sbloc_state(state)

    def test_warning_zone(self) -> None:
        """Test the band between max LTV and the maintenance margin."""
        config = SBLOCConfig()
        assert not is_in_warning_zone(0.49, config)
        assert is_in_warning_zone(0.50, config)
        assert is_in_warning_zone(0.65, config)
        assert not is_in_warning_zone(0.66, config)
        assert _state(100.0, 55.0, config).in_warning_zone


class TestAnnualStep:
    """Tests for one annual step."""

    def test_borrow_then_interest(self) -> None:
        """Test $100k borrowed at 7% with a flat portfolio ends at $107k."""
        config = SBLOCConfig(annual_interest_rate=0.07)
        state = initialize_sbloc_state(config, 1_000_000.0)
        result = step_sbloc(state, config, 0.0, 100_000.0)
        assert_allclose(result.new_state.loan_balance, 107_000.0)
        assert_allclose(result.interest_charged, 7_000.0)
        assert result.new_state.portfolio_value == 1_000_000.0
        assert_allclose(result.new_state.current_ltv, 0.107)
        assert result.withdrawal_made == 100_000.0
        assert not result.margin_call_triggered
        assert not result.portfolio_failed
        assert result.new_state.years_since_start == 1

    def test_monthly_compounding_annual_step(self) -> None:
        """Test that monthly compounding charges the effective annual rate."""
        config = SBLOCConfig(annual_interest_rate=0.07, compounding=CompoundingFrequency.MONTHLY)
        state = initialize_sbloc_state(config, 1_000_000.0)
        result = step_sbloc(state, config, 0.0, 100_000.0)
        assert_allclose(result.new_state.loan_balance, 100_000.0 * (1 + 0.07 / 12) ** 12)

    def test_growth_applies_after_withdrawal(self) -> None:
        """Test that the return is applied to the portfolio, not the loan."""
        config = SBLOCConfig(annual_interest_rate=0.0)
        state = initialize_sbloc_state(config, 1_000_000.0)
        result = step_sbloc(state, config, 0.10, 50_000.0)
        assert_allclose(result.new_state.portfolio_value, 1_100_000.0)
        assert_allclose(result.new_state.loan_balance, 50_000.0)
        assert_allclose(result.net_worth, 1_050_000.0)

    def test_dividend_tax_borrowed(self) -> None:
        """Test that tax on dividends is added to the loan."""
        config = SBLOCConfig(annual_interest_rate=0.0, dividend_yield=0.02, dividend_tax_rate=0.2)
        state = initialize_sbloc_state(config, 1_000_000.0)
        result = step_sbloc(state, config, 0.0, 0.0)
        assert_allclose(result.dividend_tax_borrowed, 4_000.0)
        assert_allclose(result.new_state.loan_balance, 4_000.0)

    def test_initial_loan(self) -> None:
        """Test that an existing loan is carried into the first state."""
        config = SBLOCConfig(initial_loan_balance=100_000.0)
        state = initialize_sbloc_state(config, 1_000_000.0)
        assert state.loan_balance == 100_000.0
        assert_allclose(state.current_ltv, 0.1)

    def test_input_state_unchanged(self) -> None:
        """Test that stepping returns a new state."""
        config = SBLOCConfig()
        state = initialize_sbloc_state(config, 1_000_000.0)
        step_sbloc(state, config, 0.2, 100_000.0)
        assert state.portfolio_value == 1_000_000.0
        assert state.loan_balance == 0.0
        assert state.years_since_start == 0


class TestMarginCall:
    """Tests for margin calls and liquidation."""

    def test_margin_call_liquidates_to_target(self) -> None:
        """Test a 20% drop at 60% LTV forces a sale back under the margin."""
        config = SBLOCConfig(annual_interest_rate=0.0)
        state = _state(1_000_000.0, 600_000.0, config)
        result = step_sbloc(state, config, -0.20, 0.0)
        assert result.margin_call_triggered
        event = result.liquidation_event
        assert event is not None
        # target 0.4 × 800k = 320k; excess 280k grossed up for the 5% haircut
        assert_allclose(event.assets_sold, 280_000.0 / 0.95)
        assert_allclose(event.proceeds, 280_000.0)
        assert_allclose(event.haircut, 280_000.0 / 0.95 - 280_000.0)
        assert_allclose(event.ltv_before, 0.75)
        assert_allclose(result.new_state.loan_balance, 320_000.0)
        assert_allclose(result.new_state.portfolio_value, 800_000.0 - 280_000.0 / 0.95)
        assert result.new_state.current_ltv < config.maintenance_margin
        assert not result.portfolio_failed

    def test_no_margin_call_at_threshold(self) -> None:
        """Test that LTV exactly at the maintenance margin is not a call."""
        config = SBLOCConfig(annual_interest_rate=0.0)
        result = step_sbloc(_state(1_000_000.0, 650_000.0, config), config, 0.0, 0.0)
        assert not result.margin_call_triggered
        assert result.new_state.in_warning_zone

    def test_total_loss_fails(self) -> None:
        """Test that a -100% year leaves an infinite LTV and a failed account."""
        config = SBLOCConfig()
        state = _state(1_000_000.0, 100_000.0, config)
        result = step_sbloc(state, config, -1.0, 0.0)
        assert result.new_state.portfolio_value == 0.0
        assert math.isinf(result.new_state.current_ltv)
        assert result.margin_call_triggered
        assert result.portfolio_failed
        assert not result.invalid_state

    def test_return_below_minus_100_percent_clamped(self) -> None:
        """Test that a -200% return is treated as -100%."""
        config = SBLOCConfig()
        result = step_sbloc(_state(1_000_000.0, 0.0, config), config, -2.0, 0.0)
        assert result.new_state.portfolio_value == 0.0
        assert result.new_state.loan_balance == 0.0

    def test_liquidation_amount_capped(self) -> None:
        """Test that a sale never exceeds the portfolio."""
        assert liquidation_amount(100.0, 1_000.0, 0.4, 0.05) == 100.0
        assert liquidation_amount(100.0, 10.0, 0.4, 0.05) == 0.0

    def test_liquidate_under_water(self) -> None:
        """Test that liquidating an under-water account sells everything."""
        portfolio, loan, event = liquidate(100.0, 200.0, SBLOCConfig())
        assert portfolio == 0.0
        assert_allclose(loan, 105.0)
        assert_allclose(event.proceeds, 95.0)
        assert math.isinf(event.ltv_after)

    def test_target_uses_multiplier(self) -> None:
        """Test that the target LTV follows the configured multiplier."""
        config = SBLOCConfig(annual_interest_rate=0.0, liquidation_target_multiplier=1.0)
        result = step_sbloc(_state(1_000_000.0, 700_000.0, config), config, 0.0, 0.0)
        assert_allclose(result.liquidation_event.proceeds, 700_000.0 - 500_000.0)


class TestMonthlyStep:
    """Tests for monthly stepping."""

    def test_withdrawal_split_evenly(self) -> None:
        """Test that twelve monthly draws add up to the annual withdrawal."""
        config = SBLOCConfig(annual_interest_rate=0.0, monthly_withdrawal=True)
        result = step_sbloc(initialize_sbloc_state(config, 1_000_000.0), config, 0.0, 120_000.0)
        assert_allclose(result.new_state.loan_balance, 120_000.0)
        assert_allclose(result.withdrawal_made, 120_000.0)
        assert result.new_state.years_since_start == 1

    def test_monthly_interest_accrues_on_each_draw(self) -> None:
        """Test interest on a loan that grows month by month."""
        config = SBLOCConfig(
            annual_interest_rate=0.12,
            compounding=CompoundingFrequency.MONTHLY,
            monthly_withdrawal=True,
        )
        result = step_sbloc(initialize_sbloc_state(config, 1_000_000.0), config, 0.0, 120_000.0)
        expected = sum(10_000.0 * 1.01 ** k for k in range(1, 13))
        assert_allclose(result.new_state.loan_balance, expected)
        assert_allclose(result.interest_charged, expected - 120_000.0)

    def test_geometric_monthly_return(self) -> None:
        """Test that twelve monthly returns compound to the annual return."""
        config = SBLOCConfig(monthly_withdrawal=True)
        result = step_sbloc(initialize_sbloc_state(config, 1_000_000.0), config, 0.10, 0.0)
        assert_allclose(result.new_state.portfolio_value, 1_100_000.0)

    def test_total_loss_stops_early(self) -> None:
        """Test that a total loss fails in the first month."""
        config = SBLOCConfig(monthly_withdrawal=True)
        result = step_sbloc(initialize_sbloc_state(config, 1_000_000.0), config, -1.0, 120_000.0)
        assert result.portfolio_failed
        assert_allclose(result.withdrawal_made, 10_000.0)

    def test_rates(self) -> None:
        """Test per-month rates for both compounding modes."""
        assert_allclose(monthly_interest_rate(0.12, CompoundingFrequency.MONTHLY), 0.01)
        assert_allclose(
            (1 + monthly_interest_rate(0.12, CompoundingFrequency.ANNUAL)) ** 12, 1.12
        )
        assert_allclose(effective_annual_rate(0.12, CompoundingFrequency.ANNUAL), 0.12)
        assert annual_to_monthly_return(-1.5) == -1.0


class TestRecovery:
    """Tests for NaN recovery."""

    def test_nan_return_recovered(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a NaN return fails the iteration instead of raising."""
        config = SBLOCConfig()
        state = _state(1_000_000.0, 200_000.0, config)
        with caplog.at_level(logging.WARNING, logger="bbdsim.sbloc.engine"):
            result = step_sbloc(state, config, float("nan"), 50_000.0)
        assert result.invalid_state
        assert result.portfolio_failed
        assert result.new_state.portfolio_value == 0.0
        assert result.new_state.loan_balance == 200_000.0
        assert result.withdrawal_made == 0.0
        assert result.interest_charged == 0.0
        assert "marking iteration as failed" in caplog.text

    def test_nan_return_monthly(self) -> None:
        """Test that monthly stepping recovers the same way."""
        config = SBLOCConfig(monthly_withdrawal=True)
        result = step_sbloc(_state(1_000_000.0, 0.0, config), config, float("nan"), 60_000.0)
        assert result.invalid_state
        assert result.new_state.portfolio_value == 0.0
        assert result.new_state.loan_balance == 0.0
        assert result.withdrawal_made == 0.0


class TestBorrowingCapacity:
    """Tests for capacity and buffer helpers."""

    def test_capacity(self) -> None:
        """Test the borrowing ceiling and remaining credit."""
        config = SBLOCConfig()
        assert calculate_max_borrowing(1_000_000.0, config) == 500_000.0
        assert available_credit(_state(1_000_000.0, 300_000.0, config), config) == 200_000.0
        assert available_credit(_state(1_000_000.0, 600_000.0, config), config) == 0.0

    def test_margin_buffer(self) -> None:
        """Test the decline needed to reach the warning zone and a margin call."""
        config = SBLOCConfig()
        buffer = margin_buffer(_state(1_000_000.0, 300_000.0, config), config)
        assert_allclose(buffer.to_warning, 400_000.0)
        assert_allclose(buffer.to_margin_call, 1_000_000.0 - 300_000.0 / 0.65)
        assert not buffer.in_margin_call

    def test_recoverable(self) -> None:
        """Test whether a full sale would repay the loan."""
        config = SBLOCConfig()
        assert can_recover_from_margin_call(_state(100.0, 90.0, config), config)
        assert not can_recover_from_margin_call(_state(100.0, 96.0, config), config)


class TestInvariants:
    """Balance invariants over random paths."""

    @pytest.mark.parametrize("monthly", [False, True])
    def test_balances_never_negative(self, monthly: bool) -> None:
        """Test portfolio ≥ 0, loan ≥ 0 and a consistent LTV at every step."""
        config = SBLOCConfig(monthly_withdrawal=monthly, dividend_yield=0.02, dividend_tax_rate=0.238)
        rng = seeded_rng(2024)
        for _ in range(100):
            state = initialize_sbloc_state(config, 1_000_000.0)
            returns = rng.normal(0.07, 0.35, size=30)
            for r in returns:
                result = step_sbloc(state, config, float(r), 60_000.0)
                state = result.new_state
                assert state.portfolio_value >= 0.0
                assert state.loan_balance >= 0.0
                assert not np.isnan(state.current_ltv)
                if state.loan_balance == 0:
                    assert state.current_ltv == 0.0
                elif state.portfolio_value == 0:
                    assert math.isinf(state.current_ltv)
                else:
                    assert_allclose(state.current_ltv, state.loan_balance / state.portfolio_value)
                if result.portfolio_failed:
                    break
