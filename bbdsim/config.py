"""
Immutable simulation configuration.

A run is fully described by one ``SimulationConfig`` value. Every dataclass
validates itself in ``__post_init__`` and raises ``ConfigError`` on malformed
input, so a bad configuration is rejected before any computation starts.

The leverage model is a tagged variant: ``PlainStrategy`` (withdrawals sold
out of the portfolio) or ``SBLOCStrategy`` (withdrawals drawn on a
securities-backed line of credit).
"""

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from bbdsim.errors import ConfigError
from bbdsim.regimes.calibration import CalibrationMode
from bbdsim.regimes.markov import DEFAULT_TRANSITION_MATRIX, MarkovChain

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 0.01
CORRELATION_TOLERANCE = 1e-6
DEFAULT_BATCH_SIZE = 1000
DEFAULT_LIQUIDATION_TARGET_MULTIPLIER = 0.8
MAX_WITHDRAWAL_CHAPTERS = 2


class ResamplingMethod(str, Enum):
    """Statistical model used to draw annual returns."""

    SIMPLE = "simple"
    BLOCK = "block"
    REGIME = "regime"
    NORMAL = "normal"
    FAT_TAIL = "fat_tail"


class AssetClass(str, Enum):
    """Kind of holding; selects its fat-tail return shape."""

    EQUITY_STOCK = "equity_stock"
    EQUITY_INDEX = "equity_index"
    BOND = "bond"
    COMMODITY = "commodity"


class CompoundingFrequency(str, Enum):
    """How loan interest compounds within a year."""

    ANNUAL = "annual"
    MONTHLY = "monthly"


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


def _finite(value: float, name: str) -> None:
    _require(
        isinstance(value, (int, float)) and math.isfinite(value),
        f"{name} must be a finite number. Got {value!r}",
    )


def _fraction(value: float, name: str, upper_inclusive: bool = True) -> None:
    _finite(value, name)
    upper_ok = value <= 1 if upper_inclusive else value < 1
    _require(0 <= value and upper_ok, f"{name} must be in [0, 1{']' if upper_inclusive else ')'}. Got {value}")


@dataclass(frozen=True)
class AssetReturnSeries:
    """
    Ordered historical returns of one asset.

    Attributes
    ----------
    values : Tuple[float, ...]
        Period returns as decimals (0.0123 = 1.23%), oldest first.
    dates : Tuple[str, ...]
        Matching ISO dates; empty when the source carried none.
    """

    values: Tuple[float, ...] = ()
    dates: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(float(v) for v in self.values))
        object.__setattr__(self, "dates", tuple(str(d) for d in self.dates))
        _require(
            not self.dates or len(self.dates) == len(self.values),
            f"dates ({len(self.dates)}) and values ({len(self.values)}) differ in length",
        )

    @classmethod
    def from_pairs(cls, pairs: Sequence[Mapping[str, Any]]) -> "AssetReturnSeries":
        """
        Build a series from ``{"date": ..., "return": ...}`` records.

        Records are ordered by date; non-numeric and non-finite returns are
        dropped rather than zero-filled.
        """
        cleaned = []
        for record in pairs:
            try:
                value = float(record["return"])
            except (KeyError, TypeError, ValueError):
                continue
            if math.isfinite(value):
                cleaned.append((str(record.get("date", "")), value))
        cleaned.sort(key=lambda pair: pair[0])
        return cls(
            values=tuple(v for _, v in cleaned),
            dates=tuple(d for d, _ in cleaned),
        )

    @property
    def array(self) -> NDArray[np.float64]:
        """Finite returns as a float array."""
        arr = np.asarray(self.values, dtype=np.float64)
        return arr[np.isfinite(arr)]

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class AssetConfig:
    """One portfolio holding: symbol, target weight, return history and class."""

    symbol: str
    weight: float
    history: AssetReturnSeries = field(default_factory=AssetReturnSeries)
    asset_class: AssetClass = AssetClass.EQUITY_INDEX

    def __post_init__(self) -> None:
        _require(bool(self.symbol), "Asset symbol must be non-empty")
        _finite(self.weight, f"weight of {self.symbol}")
        _require(self.weight >= 0, f"weight of {self.symbol} must be non-negative. Got {self.weight}")
        if not isinstance(self.history, AssetReturnSeries):
            object.__setattr__(self, "history", AssetReturnSeries(values=tuple(self.history)))
        try:
            object.__setattr__(self, "asset_class", AssetClass(self.asset_class))
        except ValueError:
            raise ConfigError(
                f"Unknown asset class {self.asset_class!r} for {self.symbol}; "
                f"expected one of {[c.value for c in AssetClass]}"
            ) from None


@dataclass(frozen=True)
class WithdrawalChapter:
    """A permanent cut to spending, ``years_after_start`` years into withdrawals."""

    years_after_start: int
    reduction_percent: float

    def __post_init__(self) -> None:
        _require(
            isinstance(self.years_after_start, int) and self.years_after_start > 0,
            f"years_after_start must be a positive integer. Got {self.years_after_start!r}",
        )
        _finite(self.reduction_percent, "reduction_percent")
        _require(
            0 <= self.reduction_percent <= 100,
            f"reduction_percent must be in [0, 100]. Got {self.reduction_percent}",
        )


@dataclass(frozen=True)
class WithdrawalPlan:
    """
    Annual spending schedule.

    The draw in simulation year ``y`` (0-indexed) is

        annual_amount × (1 + growth_rate)^(y - start_year) × chapter multiplier

    and zero before ``start_year``. Chapter reductions compound.
    """

    annual_amount: float = 0.0
    growth_rate: float = 0.0
    start_year: int = 0
    chapters: Tuple[WithdrawalChapter, ...] = ()

    def __post_init__(self) -> None:
        _finite(self.annual_amount, "annual_amount")
        _require(self.annual_amount >= 0, f"annual_amount must be non-negative. Got {self.annual_amount}")
        _finite(self.growth_rate, "growth_rate")
        _require(self.growth_rate > -1, f"growth_rate must exceed -100%. Got {self.growth_rate}")
        _require(
            isinstance(self.start_year, int) and self.start_year >= 0,
            f"start_year must be a non-negative integer. Got {self.start_year!r}",
        )
        chapters = tuple(
            c if isinstance(c, WithdrawalChapter) else WithdrawalChapter(**c)
            for c in self.chapters
        )
        _require(
            len(chapters) <= MAX_WITHDRAWAL_CHAPTERS,
            f"At most {MAX_WITHDRAWAL_CHAPTERS} withdrawal chapters are supported",
        )
        offsets = [c.years_after_start for c in chapters]
        _require(offsets == sorted(set(offsets)), "Withdrawal chapters must be strictly ordered")
        object.__setattr__(self, "chapters", chapters)

    def chapter_multiplier(self, year: int) -> float:
        """Cumulative spending multiplier from chapters reached by ``year``."""
        multiplier = 1.0
        for chapter in self.chapters:
            if year >= self.start_year + chapter.years_after_start:
                multiplier *= 1.0 - chapter.reduction_percent / 100.0
        return multiplier

    def amount_for_year(self, year: int) -> float:
        """Withdrawal in simulation year ``year`` (0-indexed)."""
        if year < self.start_year:
            return 0.0
        grown = self.annual_amount * (1.0 + self.growth_rate) ** (year - self.start_year)
        return grown * self.chapter_multiplier(year)

    def schedule(self, years: int) -> NDArray[np.float64]:
        """Withdrawals for years 0 .. years-1."""
        return np.array([self.amount_for_year(y) for y in range(years)], dtype=np.float64)

    def cumulative(self, years: int) -> NDArray[np.float64]:
        """Running total of withdrawals, shape (years,)."""
        return np.cumsum(self.schedule(years))


@dataclass(frozen=True)
class SBLOCConfig:
    """
    Securities-backed line of credit terms.

    Attributes
    ----------
    annual_interest_rate : float
        Nominal annual rate charged on the loan.
    max_ltv : float
        Target borrowing ceiling. Loans above it sit in the warning zone.
    maintenance_margin : float
        LTV above which a margin call forces liquidation.
    liquidation_haircut : float
        Fraction of sale proceeds lost to forced selling.
    liquidation_target_multiplier : float
        Post-liquidation target LTV as a fraction of ``max_ltv``. Values
        outside (0, 1] are replaced by 0.8 with a warning and
        ``multiplier_fallback`` set.
    compounding : CompoundingFrequency
        Interest compounding within a year.
    monthly_withdrawal : bool
        Step the account monthly, drawing 1/12 of the withdrawal each month.
    withdrawal : WithdrawalPlan
        Spending financed on the line of credit.
    dividend_yield, dividend_tax_rate : float
        Tax on portfolio dividends is borrowed each year.
    initial_loan_balance : float
        Loan already outstanding at the start.
    """

    annual_interest_rate: float = 0.074
    max_ltv: float = 0.50
    maintenance_margin: float = 0.65
    liquidation_haircut: float = 0.05
    liquidation_target_multiplier: float = DEFAULT_LIQUIDATION_TARGET_MULTIPLIER
    compounding: CompoundingFrequency = CompoundingFrequency.ANNUAL
    monthly_withdrawal: bool = False
    withdrawal: WithdrawalPlan = field(
        default_factory=lambda: WithdrawalPlan(annual_amount=50_000.0, growth_rate=0.03)
    )
    dividend_yield: float = 0.0
    dividend_tax_rate: float = 0.0
    initial_loan_balance: float = 0.0
    multiplier_fallback: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        _finite(self.annual_interest_rate, "annual_interest_rate")
        _require(self.annual_interest_rate >= 0, "annual_interest_rate must be non-negative")
        _finite(self.max_ltv, "max_ltv")
        _finite(self.maintenance_margin, "maintenance_margin")
        _require(
            0 < self.max_ltv <= self.maintenance_margin < 1,
            "Require 0 < max_ltv <= maintenance_margin < 1. "
            f"Got max_ltv={self.max_ltv}, maintenance_margin={self.maintenance_margin}",
        )
        _fraction(self.liquidation_haircut, "liquidation_haircut", upper_inclusive=False)
        _fraction(self.dividend_yield, "dividend_yield")
        _fraction(self.dividend_tax_rate, "dividend_tax_rate")
        _finite(self.initial_loan_balance, "initial_loan_balance")
        _require(self.initial_loan_balance >= 0, "initial_loan_balance must be non-negative")
        object.__setattr__(self, "compounding", CompoundingFrequency(self.compounding))

        multiplier = self.liquidation_target_multiplier
        if not (isinstance(multiplier, (int, float)) and 0 < multiplier <= 1):
            logger.warning(
                "liquidation_target_multiplier %r outside (0, 1]; using %s",
                multiplier, DEFAULT_LIQUIDATION_TARGET_MULTIPLIER,
            )
            object.__setattr__(
                self, "liquidation_target_multiplier", DEFAULT_LIQUIDATION_TARGET_MULTIPLIER
            )
            object.__setattr__(self, "multiplier_fallback", True)

    @property
    def liquidation_target_ltv(self) -> float:
        return self.max_ltv * self.liquidation_target_multiplier


@dataclass(frozen=True)
class PlainStrategy:
    """No leverage: withdrawals are sold out of the portfolio."""

    withdrawal: WithdrawalPlan = field(default_factory=WithdrawalPlan)
    mode: str = field(default="plain", init=False)


@dataclass(frozen=True)
class SBLOCStrategy:
    """Buy-Borrow-Die: withdrawals and dividend taxes are borrowed."""

    config: SBLOCConfig = field(default_factory=SBLOCConfig)
    mode: str = field(default="sbloc", init=False)

    @property
    def withdrawal(self) -> WithdrawalPlan:
        return self.config.withdrawal


Strategy = Union[PlainStrategy, SBLOCStrategy]


@dataclass(frozen=True)
class SellStrategyConfig:
    """Tax assumptions for the sell-assets counterfactual."""

    cost_basis_ratio: float = 0.4
    capital_gains_rate: float = 0.238
    dividend_yield: float = 0.02
    dividend_tax_rate: float = 0.238

    def __post_init__(self) -> None:
        _fraction(self.cost_basis_ratio, "cost_basis_ratio")
        _fraction(self.capital_gains_rate, "capital_gains_rate", upper_inclusive=False)
        _fraction(self.dividend_yield, "dividend_yield")
        _fraction(self.dividend_tax_rate, "dividend_tax_rate")


@dataclass(frozen=True)
class RegimeSettings:
    """Transition matrix and calibration mode for the regime model."""

    transition_matrix: Tuple[Tuple[float, ...], ...] = tuple(
        tuple(row) for row in DEFAULT_TRANSITION_MATRIX.tolist()
    )
    calibration_mode: CalibrationMode = CalibrationMode.HISTORICAL

    def __post_init__(self) -> None:
        matrix = tuple(tuple(float(v) for v in row) for row in self.transition_matrix)
        object.__setattr__(self, "transition_matrix", matrix)
        object.__setattr__(self, "calibration_mode", CalibrationMode(self.calibration_mode))
        _require(
            np.asarray(matrix).shape == (3, 3),
            "Regime transition matrix must be 3x3 (bull, bear, crash)",
        )
        try:
            MarkovChain(np.asarray(matrix))
        except ValueError as exc:
            raise ConfigError(f"Invalid regime transition matrix: {exc}") from exc

    def markov_chain(self) -> MarkovChain:
        return MarkovChain(np.asarray(self.transition_matrix))


@dataclass(frozen=True)
class SimulationConfig:
    """
    Complete description of a Monte Carlo run.

    Attributes
    ----------
    iterations : int
        Number of independent trajectories.
    time_horizon : int
        Number of simulated years.
    initial_value : float
        Starting portfolio value.
    assets : Tuple[AssetConfig, ...]
        Holdings; weights must sum to 1 within 0.01.
    correlation_matrix : Tuple[Tuple[float, ...], ...], optional
        Symmetric, unit-diagonal asset correlations. None means independent.
    method : ResamplingMethod
        Return model.
    strategy : PlainStrategy or SBLOCStrategy
        Leverage model and its withdrawal plan.
    inflation_rate : float, optional
        When set, recorded values are deflated to today's money.
    block_size : int, optional
        Block length for the block bootstrap; None selects it automatically.
    degrees_of_freedom : float, optional
        Student-t tail parameter for the fat-tail model. None uses each
        asset class's own value.
    regime : RegimeSettings
        Regime model settings.
    sell_strategy : SellStrategyConfig, optional
        When set, the sell-assets counterfactual is computed alongside.
    seed : int or str, optional
        Seed of the random stream. Same seed and config give identical output.
    batch_size : int
        Iterations per batch between progress ticks and cancellation checks.
    """

    iterations: int
    time_horizon: int
    initial_value: float
    assets: Tuple[AssetConfig, ...]
    correlation_matrix: Optional[Tuple[Tuple[float, ...], ...]] = None
    method: ResamplingMethod = ResamplingMethod.SIMPLE
    strategy: Strategy = field(default_factory=PlainStrategy)
    inflation_rate: Optional[float] = None
    block_size: Optional[int] = None
    degrees_of_freedom: Optional[float] = None
    regime: RegimeSettings = field(default_factory=RegimeSettings)
    sell_strategy: Optional[SellStrategyConfig] = None
    seed: Union[int, str, None] = None
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self) -> None:
        _require(
            isinstance(self.iterations, int) and self.iterations > 0,
            f"iterations must be a positive integer. Got {self.iterations!r}",
        )
        _require(
            isinstance(self.time_horizon, int) and self.time_horizon > 0,
            f"time_horizon must be a positive integer. Got {self.time_horizon!r}",
        )
        _finite(self.initial_value, "initial_value")
        _require(self.initial_value > 0, f"initial_value must be positive. Got {self.initial_value}")
        _require(
            isinstance(self.batch_size, int) and self.batch_size > 0,
            f"batch_size must be a positive integer. Got {self.batch_size!r}",
        )
        object.__setattr__(self, "method", ResamplingMethod(self.method))

        assets = tuple(self.assets)
        _require(len(assets) > 0, "At least one asset is required")
        symbols = [a.symbol for a in assets]
        _require(len(set(symbols)) == len(symbols), f"Duplicate asset symbols: {symbols}")
        total = sum(a.weight for a in assets)
        _require(
            abs(total - 1.0) <= WEIGHT_TOLERANCE,
            f"Portfolio weights must sum to 1 (±{WEIGHT_TOLERANCE}). Got {total:.4f}",
        )
        object.__setattr__(self, "assets", assets)

        if self.correlation_matrix is not None:
            matrix = tuple(tuple(float(v) for v in row) for row in self.correlation_matrix)
            _validate_correlation_matrix(np.asarray(matrix, dtype=np.float64), len(assets))
            object.__setattr__(self, "correlation_matrix", matrix)

        if not isinstance(self.strategy, (PlainStrategy, SBLOCStrategy)):
            raise ConfigError(f"Unknown strategy type {type(self.strategy).__name__}")

        if self.inflation_rate is not None:
            _finite(self.inflation_rate, "inflation_rate")
            _require(self.inflation_rate > -1, "inflation_rate must exceed -100%")
        if self.block_size is not None:
            _require(
                isinstance(self.block_size, int) and self.block_size > 0,
                f"block_size must be a positive integer. Got {self.block_size!r}",
            )
        if self.degrees_of_freedom is not None:
            _finite(self.degrees_of_freedom, "degrees_of_freedom")
            _require(self.degrees_of_freedom > 2, f"degrees_of_freedom must be > 2. Got {self.degrees_of_freedom}")

    @property
    def n_assets(self) -> int:
        return len(self.assets)

    @property
    def weights(self) -> NDArray[np.float64]:
        """Weights normalised to sum to exactly 1."""
        w = np.array([a.weight for a in self.assets], dtype=np.float64)
        return w / w.sum()

    @property
    def correlation(self) -> NDArray[np.float64]:
        """Correlation matrix as an array (identity when none was given)."""
        if self.correlation_matrix is None:
            return np.eye(self.n_assets)
        return np.asarray(self.correlation_matrix, dtype=np.float64)

    @property
    def withdrawal(self) -> WithdrawalPlan:
        return self.strategy.withdrawal

    def with_overrides(self, **changes: Any) -> "SimulationConfig":
        """Copy with some fields replaced (re-validated)."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SimulationConfig":
        """
        Build a configuration from plain mappings and lists.

        Accepted shapes mirror the dataclasses. Asset histories may be a
        list of floats or a list of ``{"date", "return"}`` records. The
        strategy is ``{"mode": "plain", "withdrawal": {...}}`` or
        ``{"mode": "sbloc", "config": {...}}``.

        Raises
        ------
        ConfigError
            On unknown keys, missing required keys or invalid values.
        """
        data = dict(data)
        try:
            assets = tuple(_asset_from_dict(a) for a in data.pop("assets"))
            strategy = _strategy_from_dict(data.pop("strategy", {"mode": "plain"}))
            regime = data.pop("regime", None)
            sell = data.pop("sell_strategy", None)
            return cls(
                assets=assets,
                strategy=strategy,
                regime=RegimeSettings(**regime) if regime is not None else RegimeSettings(),
                sell_strategy=SellStrategyConfig(**sell) if sell is not None else None,
                **data,
            )
        except (KeyError, TypeError) as exc:
            raise ConfigError(f"Malformed simulation config: {exc}") from exc
        except ValueError as exc:
            if isinstance(exc, ConfigError):
                raise
            raise ConfigError(str(exc)) from exc


def _validate_correlation_matrix(matrix: NDArray[np.float64], n_assets: int) -> None:
    _require(
        matrix.shape == (n_assets, n_assets),
        f"Correlation matrix shape {matrix.shape} doesn't match ({n_assets}, {n_assets})",
    )
    _require(bool(np.all(np.isfinite(matrix))), "Correlation matrix must be finite")
    _require(
        np.allclose(np.diag(matrix), 1.0, atol=CORRELATION_TOLERANCE),
        f"Correlation matrix diagonal must be 1. Got {np.diag(matrix)}",
    )
    _require(
        np.allclose(matrix, matrix.T, atol=CORRELATION_TOLERANCE),
        "Correlation matrix must be symmetric",
    )
    _require(
        bool(np.all(np.abs(matrix) <= 1.0 + CORRELATION_TOLERANCE)),
        "Correlations must be in [-1, 1]",
    )


def _asset_from_dict(data: Mapping[str, Any]) -> AssetConfig:
    history = data.get("history", data.get("returns", ()))
    if history and isinstance(history[0], Mapping):
        series = AssetReturnSeries.from_pairs(history)
    else:
        series = AssetReturnSeries(values=tuple(history))
    return AssetConfig(
        symbol=data["symbol"],
        weight=float(data["weight"]),
        history=series,
        asset_class=data.get("asset_class", AssetClass.EQUITY_INDEX),
    )


def _withdrawal_from_dict(data: Optional[Mapping[str, Any]]) -> WithdrawalPlan:
    if data is None:
        return WithdrawalPlan()
    data = dict(data)
    chapters = tuple(WithdrawalChapter(**c) for c in data.pop("chapters", ()))
    return WithdrawalPlan(chapters=chapters, **data)


def _strategy_from_dict(data: Mapping[str, Any]) -> Strategy:
    data = dict(data)
    mode = data.pop("mode", "plain")
    if mode == "plain":
        return PlainStrategy(withdrawal=_withdrawal_from_dict(data.get("withdrawal")))
    if mode == "sbloc":
        sbloc: Dict[str, Any] = dict(data.get("config", {}))
        if "withdrawal" in sbloc:
            sbloc["withdrawal"] = _withdrawal_from_dict(sbloc["withdrawal"])
        return SBLOCStrategy(config=SBLOCConfig(**sbloc))
    raise ConfigError(f"Unknown strategy mode {mode!r}; expected 'plain' or 'sbloc'")
