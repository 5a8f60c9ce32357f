"""
Unit tests for simulation configuration.

Tests cover:
- Portfolio weight and correlation validation
- SBLOC terms and the liquidation multiplier fallback
- Withdrawal schedules with growth, delay and chapters
- Building a configuration from plain mappings
"""

import logging

import pytest
import numpy as np
from numpy.testing import assert_allclose

from bbdsim import (
    AssetClass,
    AssetConfig,
    ConfigError,
    PlainStrategy,
    ResamplingMethod,
    SBLOCConfig,
    SBLOCStrategy,
    SimulationConfig,
    WithdrawalChapter,
    WithdrawalPlan,
)
from bbdsim.config import AssetReturnSeries, RegimeSettings, SellStrategyConfig


def _assets(*weights: float):
    return tuple(
        AssetConfig(f"A{i}", w, (0.05, 0.10, -0.02)) for i, w in enumerate(weights)
    )


class TestWeights:
    """Tests for portfolio weight validation."""

    def test_weights_within_tolerance_accepted(self) -> None:
        """Test that weights off by less than 0.01 are accepted and normalised."""
        config = SimulationConfig(10, 5, 1_000_000.0, _assets(0.6, 0.395))
        assert_allclose(config.weights.sum(), 1.0)
        assert_allclose(config.weights, [0.6 / 0.995, 0.395 / 0.995])

    def test_weights_outside_tolerance_rejected(self) -> None:
        """Test that weights summing to 0.9 are rejected."""
        with pytest.raises(ConfigError, match="weights must sum to 1"):
            SimulationConfig(10, 5, 1_000_000.0, _assets(0.6, 0.3))

    def test_negative_weight_rejected(self) -> None:
        """Test that short positions are rejected."""
        with pytest.raises(ConfigError, match="non-negative"):
            AssetConfig("SPY", -0.1)

    def test_duplicate_symbols_rejected(self) -> None:
        """Test that an asset cannot appear twice."""
        assets = (AssetConfig("SPY", 0.5), AssetConfig("SPY", 0.5))
        with pytest.raises(ConfigError, match="Duplicate"):
            SimulationConfig(10, 5, 1.0, assets)

    def test_no_assets_rejected(self) -> None:
        """Test that an empty portfolio is rejected."""
        with pytest.raises(ConfigError, match="At least one asset"):
            SimulationConfig(10, 5, 1.0, ())

    def test_config_error_is_value_error(self) -> None:
        """Test that callers catching ValueError still see config errors."""
        with pytest.raises(ValueError):
            SimulationConfig(10, 5, 1_000_000.0, _assets(0.5))


class TestRunParameters:
    """Tests for iteration count, horizon and initial value."""

    @pytest.mark.parametrize("iterations", [0, -5])
    def test_non_positive_iterations(self, iterations: int) -> None:
        """Test that the iteration count must be positive."""
        with pytest.raises(ConfigError, match="iterations"):
            SimulationConfig(iterations, 5, 1.0, _assets(1.0))

    def test_non_positive_horizon(self) -> None:
        """Test that the horizon must be positive."""
        with pytest.raises(ConfigError, match="time_horizon"):
            SimulationConfig(10, 0, 1.0, _assets(1.0))

    def test_non_positive_initial_value(self) -> None:
        """Test that the initial value must be positive."""
        with pytest.raises(ConfigError, match="initial_value"):
            SimulationConfig(10, 5, 0.0, _assets(1.0))

    def test_degrees_of_freedom(self) -> None:
        """Test that the Student-t tail parameter must exceed 2."""
        with pytest.raises(ConfigError, match="degrees_of_freedom"):
            SimulationConfig(10, 5, 1.0, _assets(1.0), degrees_of_freedom=2.0)
        assert SimulationConfig(10, 5, 1.0, _assets(1.0)).degrees_of_freedom is None

    def test_method_from_string(self) -> None:
        """Test that methods may be given by name."""
        config = SimulationConfig(10, 5, 1.0, _assets(1.0), method="block")
        assert config.method is ResamplingMethod.BLOCK

    def test_with_overrides_revalidates(self) -> None:
        """Test that overrides go through validation again."""
        config = SimulationConfig(10, 5, 1.0, _assets(1.0))
        assert config.with_overrides(iterations=20).iterations == 20
        with pytest.raises(ConfigError):
            config.with_overrides(iterations=0)


class TestCorrelationMatrix:
    """Tests for correlation matrix validation."""

    def test_default_is_identity(self) -> None:
        """Test that no matrix means independent assets."""
        config = SimulationConfig(10, 5, 1.0, _assets(0.5, 0.5))
        assert_allclose(config.correlation, np.eye(2))

    def test_shape_mismatch(self) -> None:
        """Test that the matrix must match the asset count."""
        with pytest.raises(ConfigError, match="shape"):
            SimulationConfig(10, 5, 1.0, _assets(0.5, 0.5), correlation_matrix=np.eye(3))

    def test_diagonal_must_be_one(self) -> None:
        """Test the unit diagonal requirement."""
        with pytest.raises(ConfigError, match="diagonal"):
            SimulationConfig(
                10, 5, 1.0, _assets(0.5, 0.5),
                correlation_matrix=((0.9, 0.2), (0.2, 1.0)),
            )

    def test_must_be_symmetric(self) -> None:
        """Test the symmetry requirement."""
        with pytest.raises(ConfigError, match="symmetric"):
            SimulationConfig(
                10, 5, 1.0, _assets(0.5, 0.5),
                correlation_matrix=((1.0, 0.2), (0.3, 1.0)),
            )

    def test_indefinite_matrix_accepted(self) -> None:
        """Test that a valid-looking but indefinite matrix is left to the sampler."""
        corr = ((1.0, 0.9, -0.9), (0.9, 1.0, 0.9), (-0.9, 0.9, 1.0))
        config = SimulationConfig(10, 5, 1.0, _assets(0.4, 0.3, 0.3), correlation_matrix=corr)
        assert config.correlation.shape == (3, 3)


class TestSBLOCConfig:
    """Tests for SBLOC terms."""

    def test_defaults(self) -> None:
        """Test default terms."""
        config = SBLOCConfig()
        assert config.max_ltv == 0.5
        assert config.maintenance_margin == 0.65
        assert_allclose(config.liquidation_target_ltv, 0.4)
        assert not config.multiplier_fallback

    def test_max_ltv_above_maintenance_rejected(self) -> None:
        """Test that the warning ceiling cannot exceed the margin threshold."""
        with pytest.raises(ConfigError, match="max_ltv"):
            SBLOCConfig(max_ltv=0.7, maintenance_margin=0.65)

    def test_negative_rate_rejected(self) -> None:
        """Test that interest cannot be negative."""
        with pytest.raises(ConfigError, match="annual_interest_rate"):
            SBLOCConfig(annual_interest_rate=-0.01)

    def test_haircut_below_one(self) -> None:
        """Test that a 100% haircut is rejected."""
        with pytest.raises(ConfigError, match="liquidation_haircut"):
            SBLOCConfig(liquidation_haircut=1.0)

    @pytest.mark.parametrize("multiplier", [0.0, 1.5, -0.2])
    def test_multiplier_fallback(self, multiplier: float, caplog: pytest.LogCaptureFixture) -> None:
        """Test that an out-of-range multiplier is replaced and reported."""
        with caplog.at_level(logging.WARNING, logger="bbdsim.config"):
            config = SBLOCConfig(liquidation_target_multiplier=multiplier)
        assert config.liquidation_target_multiplier == 0.8
        assert config.multiplier_fallback
        assert "liquidation_target_multiplier" in caplog.text

    def test_multiplier_in_range_kept(self) -> None:
        """Test that a valid multiplier is used as given."""
        config = SBLOCConfig(liquidation_target_multiplier=1.0)
        assert config.liquidation_target_ltv == 0.5
        assert not config.multiplier_fallback

    def test_compounding_from_string(self) -> None:
        """Test that compounding may be given by name."""
        assert SBLOCConfig(compounding="monthly").compounding.value == "monthly"


class TestWithdrawalPlan:
    """Tests for withdrawal schedules."""

    def test_growth(self) -> None:
        """Test inflation-style growth of the withdrawal."""
        plan = WithdrawalPlan(annual_amount=100_000, growth_rate=0.03)
        assert_allclose(plan.schedule(3), [100_000, 103_000, 106_090])

    def test_delayed_start(self) -> None:
        """Test that nothing is drawn before the start year."""
        plan = WithdrawalPlan(annual_amount=50_000, growth_rate=0.1, start_year=2)
        assert_allclose(plan.schedule(4), [0, 0, 50_000, 55_000])

    def test_chapters_compound(self) -> None:
        """Test that spending cuts apply from their year and compound."""
        plan = WithdrawalPlan(
            annual_amount=100_000,
            chapters=(WithdrawalChapter(2, 25.0), WithdrawalChapter(4, 50.0)),
        )
        assert_allclose(plan.schedule(5), [100_000, 100_000, 75_000, 75_000, 37_500])

    def test_chapters_from_mappings(self) -> None:
        """Test that chapters may be given as dicts."""
        plan = WithdrawalPlan(100.0, chapters=({"years_after_start": 1, "reduction_percent": 10},))
        assert plan.amount_for_year(1) == pytest.approx(90.0)

    def test_chapters_must_be_ordered(self) -> None:
        """Test that chapters must be strictly increasing."""
        with pytest.raises(ConfigError, match="ordered"):
            WithdrawalPlan(100.0, chapters=(WithdrawalChapter(5, 10), WithdrawalChapter(3, 10)))

    def test_at_most_two_chapters(self) -> None:
        """Test the chapter limit."""
        chapters = tuple(WithdrawalChapter(i, 10) for i in (1, 2, 3))
        with pytest.raises(ConfigError, match="At most"):
            WithdrawalPlan(100.0, chapters=chapters)

    def test_reduction_range(self) -> None:
        """Test that reductions are percentages."""
        with pytest.raises(ConfigError, match="reduction_percent"):
            WithdrawalChapter(1, 120.0)

    def test_cumulative(self) -> None:
        """Test the running total."""
        plan = WithdrawalPlan(annual_amount=10.0)
        assert_allclose(plan.cumulative(3), [10.0, 20.0, 30.0])


class TestReturnSeries:
    """Tests for historical return series."""

    def test_from_pairs_sorts_and_drops_invalid(self) -> None:
        """Test ordering by date and dropping unusable records."""
        series = AssetReturnSeries.from_pairs([
            {"date": "2021-12-31", "return": 0.2},
            {"date": "2019-12-31", "return": 0.1},
            {"date": "2020-12-31", "return": None},
            {"date": "2022-12-31", "return": float("nan")},
            {"date": "2018-12-31"},
        ])
        assert series.values == (0.1, 0.2)
        assert series.dates == ("2019-12-31", "2021-12-31")

    def test_mismatched_dates_rejected(self) -> None:
        """Test that dates must match values one to one."""
        with pytest.raises(ConfigError, match="differ in length"):
            AssetReturnSeries(values=(0.1, 0.2), dates=("2020",))

    def test_plain_sequence_history(self) -> None:
        """Test that an asset accepts a bare list of returns."""
        asset = AssetConfig("SPY", 1.0, [0.1, 0.2])
        assert isinstance(asset.history, AssetReturnSeries)
        assert len(asset.history) == 2

    def test_asset_class(self) -> None:
        """Test that asset classes default to index equity and accept names."""
        assert AssetConfig("SPY", 1.0).asset_class is AssetClass.EQUITY_INDEX
        assert AssetConfig("AGG", 1.0, asset_class="bond").asset_class is AssetClass.BOND
        with pytest.raises(ConfigError, match="Unknown asset class"):
            AssetConfig("X", 1.0, asset_class="crypto")


class TestFromDict:
    """Tests for building a configuration from mappings."""

    def test_sbloc_config(self) -> None:
        """Test a complete SBLOC configuration."""
        config = SimulationConfig.from_dict({
            "iterations": 100,
            "time_horizon": 20,
            "initial_value": 5_000_000,
            "method": "regime",
            "seed": "plan-a",
            "assets": [
                {"symbol": "SPY", "weight": 0.7, "history": [
                    {"date": "2020-12-31", "return": 0.18},
                    {"date": "2021-12-31", "return": 0.28},
                ]},
                {"symbol": "AGG", "weight": 0.3, "history": [0.07, -0.02, -0.13], "asset_class": "bond"},
            ],
            "strategy": {"mode": "sbloc", "config": {
                "annual_interest_rate": 0.065,
                "withdrawal": {"annual_amount": 200_000, "growth_rate": 0.03},
            }},
            "regime": {"calibration_mode": "conservative"},
            "sell_strategy": {"cost_basis_ratio": 0.25},
        })
        assert isinstance(config.strategy, SBLOCStrategy)
        assert config.strategy.config.annual_interest_rate == 0.065
        assert config.withdrawal.annual_amount == 200_000
        assert config.method is ResamplingMethod.REGIME
        assert config.regime.calibration_mode.value == "conservative"
        assert config.sell_strategy == SellStrategyConfig(cost_basis_ratio=0.25)
        assert config.assets[0].history.values == (0.18, 0.28)
        assert config.assets[0].asset_class is AssetClass.EQUITY_INDEX
        assert config.assets[1].asset_class is AssetClass.BOND

    def test_plain_is_default(self) -> None:
        """Test that the plain strategy is the default."""
        config = SimulationConfig.from_dict({
            "iterations": 1, "time_horizon": 1, "initial_value": 1.0,
            "assets": [{"symbol": "X", "weight": 1.0}],
        })
        assert isinstance(config.strategy, PlainStrategy)
        assert config.sell_strategy is None

    def test_unknown_key(self) -> None:
        """Test that unknown fields are rejected as configuration errors."""
        with pytest.raises(ConfigError, match="Malformed"):
            SimulationConfig.from_dict({
                "iterations": 1, "time_horizon": 1, "initial_value": 1.0,
                "assets": [{"symbol": "X", "weight": 1.0}], "bogus": 3,
            })

    def test_missing_assets(self) -> None:
        """Test that assets are required."""
        with pytest.raises(ConfigError, match="Malformed"):
            SimulationConfig.from_dict({"iterations": 1, "time_horizon": 1, "initial_value": 1.0})

    def test_unknown_strategy_mode(self) -> None:
        """Test that the strategy variant is checked."""
        with pytest.raises(ConfigError, match="strategy mode"):
            SimulationConfig.from_dict({
                "iterations": 1, "time_horizon": 1, "initial_value": 1.0,
                "assets": [{"symbol": "X", "weight": 1.0}],
                "strategy": {"mode": "margin"},
            })

    def test_invalid_value_is_config_error(self) -> None:
        """Test that validation errors surface as ConfigError."""
        with pytest.raises(ConfigError):
            SimulationConfig.from_dict({
                "iterations": 1, "time_horizon": 1, "initial_value": 1.0,
                "assets": [{"symbol": "X", "weight": 0.5}],
            })

    def test_regime_matrix_validated(self) -> None:
        """Test that a non-stochastic transition matrix is rejected."""
        with pytest.raises(ConfigError, match="transition matrix"):
            RegimeSettings(transition_matrix=((0.5, 0.5, 0.5), (0.3, 0.3, 0.4), (0.1, 0.1, 0.8)))
