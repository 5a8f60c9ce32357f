"""
Unit tests for the Monte Carlo orchestrator.

Tests cover:
- Deterministic plain and SBLOC runs on flat or crashing markets
- Reproducibility from a seed
- Batching, progress ticks and cancellation
- Inflation adjustment
- Path-coherent percentiles and aggregated diagnostics
- Sell-strategy and estate attachments
"""

import logging
import threading

import pytest
import numpy as np
from numpy.testing import assert_allclose

from bbdsim import (
    AssetClass,
    AssetConfig,
    MonteCarloSimulator,
    PlainStrategy,
    ResamplingMethod,
    SBLOCConfig,
    SBLOCStrategy,
    SellStrategyConfig,
    SimulationCancelled,
    SimulationConfig,
    WithdrawalPlan,
    run_simulation,
)
from bbdsim.metrics import is_monotonic
from bbdsim.simulation import step_plain

FLAT = (0.0,) * 20
CRASH = (-0.6,) * 20
SPY = (0.28, -0.05, 0.31, 0.18, 0.28, -0.18, 0.26, 0.12, 0.21, 0.01, 0.14, 0.32)
AGG = (0.06, 0.00, 0.08, 0.07, -0.02, -0.13, 0.05, 0.01, 0.03, 0.00, 0.04, -0.02)


def _flat_config(**kwargs) -> SimulationConfig:
    params = dict(
        iterations=50,
        time_horizon=10,
        initial_value=1_000_000.0,
        assets=(AssetConfig("CASH", 1.0, FLAT),),
        seed=3,
    )
    params.update(kwargs)
    return SimulationConfig(**params)


def _market_config(**kwargs) -> SimulationConfig:
    params = dict(
        iterations=200,
        time_horizon=20,
        initial_value=1_000_000.0,
        assets=(AssetConfig("SPY", 0.6, SPY), AssetConfig("AGG", 0.4, AGG)),
        seed=42,
    )
    params.update(kwargs)
    return SimulationConfig(**params)


class TestStepPlain:
    """Tests for the unleveraged yearly step."""

    def test_withdraw_then_grow(self) -> None:
        """Test that the withdrawal is sold before the return applies."""
        value, invalid = step_plain(100.0, 0.1, 20.0)
        assert_allclose(value, 88.0)
        assert not invalid

    def test_floored_at_zero(self) -> None:
        """Test that overspending and total loss end at zero."""
        assert step_plain(10.0, 0.5, 20.0) == (0.0, False)
        assert step_plain(100.0, -3.0, 0.0) == (0.0, False)

    def test_non_finite_is_invalid(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that NaN input zeroes the portfolio and is flagged."""
        with caplog.at_level(logging.WARNING, logger="bbdsim.simulation.simulator"):
            value, invalid = step_plain(100.0, float("nan"), 0.0)
        assert value == 0.0
        assert invalid
        assert "marking iteration as failed" in caplog.text


class TestDeterministicRuns:
    """Tests on markets whose outcome is known exactly."""

    def test_flat_market_is_not_success(self) -> None:
        """Test that a portfolio ending exactly where it started does not succeed."""
        output = run_simulation(_flat_config())
        assert_allclose(output.terminal_values, 1_000_000.0)
        assert output.success_rate == 0.0
        assert output.summary.median == 1_000_000.0
        assert output.strategy_mode == "plain"
        assert output.estate is None
        assert output.diagnostics.sbloc is None

    def test_plain_withdrawals_deplete(self) -> None:
        """Test that a plain portfolio fails when withdrawals exhaust it."""
        config = _flat_config(strategy=PlainStrategy(WithdrawalPlan(annual_amount=150_000.0)))
        output = run_simulation(config)
        assert_allclose(output.terminal_values, 0.0)
        assert output.diagnostics.failed_iterations == config.iterations
        assert_allclose(output.portfolio_bands.p50[:3], [1_000_000.0, 850_000.0, 700_000.0])
        assert_allclose(output.cumulative_withdrawals[-1], 1_500_000.0)

    def test_sbloc_interest_accrues(self) -> None:
        """Test loan growth from borrowing and interest on a flat market."""
        sbloc = SBLOCConfig(annual_interest_rate=0.05, withdrawal=WithdrawalPlan(annual_amount=10_000.0))
        output = run_simulation(_flat_config(time_horizon=3, strategy=SBLOCStrategy(sbloc)))
        assert_allclose(output.loan_bands.p50, [0.0, 10_500.0, 21_525.0, 33_101.25])
        assert_allclose(output.terminal_values, 1_000_000.0 - 33_101.25)
        assert output.strategy_mode == "sbloc"
        assert all(p.probability == 0.0 for p in output.margin_call_stats)
        assert output.diagnostics.sbloc.margin_call_distribution["0"] == 50
        assert_allclose(output.diagnostics.sbloc.interest_median, 500.0 + 1025.0 + 1576.25)

    def test_crash_triggers_margin_call_and_failure(self) -> None:
        """Test a first-year margin call that leaves the account under water for good."""
        sbloc = SBLOCConfig(
            annual_interest_rate=0.0,
            withdrawal=WithdrawalPlan(),
            initial_loan_balance=400_000.0,
        )
        config = _flat_config(assets=(AssetConfig("EQ", 1.0, CRASH),), strategy=SBLOCStrategy(sbloc))
        output = run_simulation(config)
        first = output.margin_call_stats[0]
        assert first.probability == 1.0
        assert all(p.cumulative_probability == 1.0 for p in output.margin_call_stats)
        diagnostics = output.diagnostics.sbloc
        assert diagnostics.margin_call_distribution["3+"] == config.iterations
        assert diagnostics.max_margin_calls == config.time_horizon
        assert diagnostics.failed_iterations == config.iterations
        assert diagnostics.failure_year_median == 1.0
        assert diagnostics.haircut_median > 0
        assert np.all(output.terminal_values < 0)
        assert output.success_rate == 0.0

    def test_failed_iterations_keep_accruing(self) -> None:
        """Test that a failed account keeps borrowing and paying interest."""
        sbloc = SBLOCConfig(
            annual_interest_rate=0.1,
            withdrawal=WithdrawalPlan(annual_amount=100_000.0),
            initial_loan_balance=400_000.0,
        )
        config = _flat_config(assets=(AssetConfig("EQ", 1.0, CRASH),), strategy=SBLOCStrategy(sbloc))
        output = run_simulation(config)
        expected = [400_000.0, 170_000.0]
        for _ in range(config.time_horizon - 1):
            expected.append((expected[-1] + 100_000.0) * 1.1)
        assert_allclose(output.loan_bands.p50, expected)
        assert_allclose(output.portfolio_bands.p50[1:], 0.0)
        assert np.all(np.diff(output.loan_bands.p50[1:]) > 0)
        diagnostics = output.diagnostics.sbloc
        assert diagnostics.failed_iterations == config.iterations
        assert diagnostics.failure_year_median == 1.0
        assert_allclose(output.terminal_values, -expected[-1])


class TestReproducibility:
    """Tests for seeded determinism."""

    def test_same_seed_same_output(self) -> None:
        """Test that identical configs give identical bands, curves and summaries."""
        sbloc = SBLOCConfig(withdrawal=WithdrawalPlan(annual_amount=50_000.0))
        first = run_simulation(_market_config(strategy=SBLOCStrategy(sbloc)))
        second = run_simulation(_market_config(strategy=SBLOCStrategy(sbloc)))
        assert np.array_equal(first.terminal_values, second.terminal_values)
        for name in ("portfolio_bands", "net_worth_bands", "loan_bands", "market_bands"):
            a, b = getattr(first, name), getattr(second, name)
            for field in ("years", "p10", "p25", "p50", "p75", "p90"):
                assert np.array_equal(getattr(a, field), getattr(b, field)), f"{name}.{field}"
        assert first.margin_call_stats == second.margin_call_stats
        assert first.summary == second.summary
        assert [p.iteration for p in first.path_percentiles] == [p.iteration for p in second.path_percentiles]

    def test_different_seed_differs(self) -> None:
        """Test that changing the seed changes the draws."""
        first = run_simulation(_market_config())
        second = run_simulation(_market_config(seed=43))
        assert not np.array_equal(first.terminal_values, second.terminal_values)

    def test_batch_size_does_not_change_results(self) -> None:
        """Test that batching only affects progress granularity."""
        first = run_simulation(_market_config(batch_size=7))
        second = run_simulation(_market_config(batch_size=1000))
        assert np.array_equal(first.terminal_values, second.terminal_values)

    def test_simulator_reruns_identically(self) -> None:
        """Test that each run restarts the random stream."""
        simulator = MonteCarloSimulator(_market_config(method=ResamplingMethod.NORMAL))
        assert np.array_equal(simulator.run().terminal_values, simulator.run().terminal_values)


class TestProgressAndCancellation:
    """Tests for batch progress and cooperative cancellation."""

    def test_progress_ticks(self) -> None:
        """Test one tick per batch, ending at the total."""
        ticks = []
        run_simulation(_flat_config(iterations=250, batch_size=100), lambda c, t: ticks.append((c, t)))
        assert ticks == [(100, 250), (200, 250), (250, 250)]

    def test_cancel_before_start(self) -> None:
        """Test that a pre-set token stops the run before any batch."""
        event = threading.Event()
        event.set()
        with pytest.raises(SimulationCancelled) as info:
            run_simulation(_flat_config(), cancel_event=event)
        assert info.value.completed == 0
        assert info.value.total == 50

    def test_cancel_between_batches(self) -> None:
        """Test that cancellation is honoured at the next batch boundary."""
        event = threading.Event()

        def progress(completed: int, total: int) -> None:
            event.set()

        with pytest.raises(SimulationCancelled) as info:
            run_simulation(_flat_config(iterations=300, batch_size=100), progress, event)
        assert info.value.completed == 100


class TestAggregation:
    """Tests for aggregated output."""

    def test_band_shapes(self) -> None:
        """Test that every band covers years 0..T."""
        output = run_simulation(_market_config())
        for bands in (output.portfolio_bands, output.net_worth_bands, output.loan_bands, output.market_bands):
            assert bands.p50.shape == (21,)
            assert bands.years[-1] == 20
        assert len(output.margin_call_stats) == 20

    def test_bands_ordered(self) -> None:
        """Test p10 ≤ p50 ≤ p90 in every year."""
        bands = run_simulation(_market_config()).net_worth_bands
        assert np.all(bands.p10 <= bands.p50 + 1e-9)
        assert np.all(bands.p50 <= bands.p90 + 1e-9)

    def test_path_percentiles(self) -> None:
        """Test that percentile paths are whole iterations ranked by terminal value."""
        output = run_simulation(_market_config())
        assert len(output.path_percentiles) == 5
        low = output.path_percentile(10)
        high = output.path_percentile(90)
        assert low.net_worth[-1] <= high.net_worth[-1]
        median = output.path_percentile(50)
        assert_allclose(output.median_path, median.net_worth)
        assert_allclose(median.net_worth[-1], output.terminal_values[median.iteration])

    def test_unknown_path_percentile(self) -> None:
        """Test that only the standard ranks are available."""
        output = run_simulation(_flat_config())
        with pytest.raises(KeyError):
            output.path_percentile(33)

    def test_inflation_deflates_recorded_values(self) -> None:
        """Test that recorded values are in today's money."""
        output = run_simulation(_flat_config(inflation_rate=0.03))
        assert_allclose(output.terminal_values, 1_000_000.0 / 1.03 ** 10)
        assert_allclose(output.portfolio_bands.p50, 1_000_000.0 / 1.03 ** np.arange(11))
        assert output.success_rate == 0.0

    def test_margin_call_curve_monotone(self) -> None:
        """Test that the cumulative margin-call probability never decreases."""
        sbloc = SBLOCConfig(withdrawal=WithdrawalPlan(annual_amount=60_000.0, growth_rate=0.03))
        output = run_simulation(_market_config(strategy=SBLOCStrategy(sbloc), method=ResamplingMethod.FAT_TAIL))
        assert is_monotonic(output.margin_call_stats)
        assert output.margin_call_stats[-1].cumulative_probability <= 1.0

    def test_estimated_asset_flagged(self) -> None:
        """Test that an asset without history is reported as estimated."""
        assets = (AssetConfig("SPY", 0.5, SPY), AssetConfig("NEW", 0.5))
        output = run_simulation(_market_config(assets=assets, iterations=20))
        assert output.diagnostics.estimated_assets == ("NEW",)
        assert output.diagnostics.degraded

    def test_regime_calibration_fallback_reported(self) -> None:
        """Test that a short history falls back to default regime parameters."""
        config = _market_config(
            assets=(AssetConfig("A", 1.0, (0.1, 0.05, -0.02, 0.2, 0.07)),),
            method=ResamplingMethod.REGIME,
            iterations=20,
        )
        output = run_simulation(config)
        assert output.diagnostics.calibration_fallbacks == ("A",)
        assert np.all(np.isfinite(output.terminal_values))

    def test_block_length_reported(self) -> None:
        """Test that the block bootstrap records its block length."""
        output = run_simulation(_market_config(method=ResamplingMethod.BLOCK, block_size=4, iterations=20))
        assert output.diagnostics.block_length == 4

    def test_fat_tail_parameters_reported(self) -> None:
        """Test that a fat-tail run records the tail shape of each asset."""
        assets = (AssetConfig("SPY", 0.6, SPY), AssetConfig("AGG", 0.4, AGG, asset_class=AssetClass.BOND))
        output = run_simulation(_market_config(method=ResamplingMethod.FAT_TAIL, assets=assets, iterations=20))
        reported = output.diagnostics.fat_tail_parameters
        assert set(reported) == {"SPY", "AGG"}
        assert reported["AGG"].degrees_of_freedom > reported["SPY"].degrees_of_freedom
        assert run_simulation(_market_config(iterations=20)).diagnostics.fat_tail_parameters == {}


class TestSellAndEstate:
    """Tests for the counterfactual and estate attachments."""

    def test_sell_variants_attached(self) -> None:
        """Test that both sell variants are computed when configured."""
        tax = SellStrategyConfig(cost_basis_ratio=1.0, capital_gains_rate=0.0, dividend_yield=0.0, dividend_tax_rate=0.0)
        output = run_simulation(_flat_config(sell_strategy=tax))
        assert len(output.sell_strategy.labels) == 9
        assert_allclose(output.sell_strategy.median_terminal, 1_000_000.0)
        assert output.sell_iterations.terminal_values.shape == (50,)
        assert output.sell_strategy.terminal_above_initial_rate == 0.0

    def test_no_sell_variants_by_default(self) -> None:
        """Test that the counterfactual is opt-in."""
        output = run_simulation(_flat_config())
        assert output.sell_strategy is None
        assert output.sell_iterations is None

    def test_sell_counterfactual_deflated(self) -> None:
        """Test that the sell paths use the same deflator as the BBD run."""
        tax = SellStrategyConfig(cost_basis_ratio=1.0, capital_gains_rate=0.0, dividend_yield=0.0, dividend_tax_rate=0.0)
        output = run_simulation(_flat_config(sell_strategy=tax, inflation_rate=0.02))
        assert_allclose(output.sell_strategy.median_terminal, 1_000_000.0 / 1.02 ** 10)

    def test_estate_for_sbloc_runs(self) -> None:
        """Test the estate comparison of a leveraged run."""
        sbloc = SBLOCConfig(annual_interest_rate=0.0, withdrawal=WithdrawalPlan(annual_amount=10_000.0))
        tax = SellStrategyConfig(cost_basis_ratio=1.0, capital_gains_rate=0.0, dividend_yield=0.0, dividend_tax_rate=0.0)
        output = run_simulation(_flat_config(strategy=SBLOCStrategy(sbloc), sell_strategy=tax))
        assert_allclose(output.estate.bbd_net_estate, 900_000.0)
        assert_allclose(output.estate.sell_net_estate, 900_000.0)
        assert_allclose(output.estate.bbd_advantage, 0.0, atol=1e-6)
