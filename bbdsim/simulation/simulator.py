"""
Monte Carlo orchestrator for Buy-Borrow-Die portfolios.

Runs independent trajectories of a leveraged (SBLOC) or plain portfolio and
aggregates them into percentile bands, margin-call curves and summary
statistics.

Key components:
- One seeded random stream, advanced iteration by iteration
- Per-iteration stepping of the SBLOC state machine or plain compounding
- Batching with progress ticks and cooperative cancellation between batches
- Aggregation into ``SimulationOutput``
"""

import logging
import math
import threading
from typing import Callable, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from bbdsim.config import (
    PlainStrategy,
    SBLOCStrategy,
    SellStrategyConfig,
    SimulationConfig,
)
from bbdsim.errors import SimulationCancelled
from bbdsim.metrics.estate import estate_from_simulation
from bbdsim.metrics.margin_call import margin_call_probabilities
from bbdsim.metrics.sell_strategy import calculate_sell_iterations, calculate_sell_strategy
from bbdsim.returns.generator import create_return_generator
from bbdsim.sbloc.engine import initialize_sbloc_state, step_sbloc
from bbdsim.simulation.results import (
    RunDiagnostics,
    SimulationOutput,
    path_coherent_percentiles,
    summarize_sbloc_diagnostics,
    summarize_terminal_values,
)
from bbdsim.stats.random import seeded_rng
from bbdsim.stats.summary import percentile_bands

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def step_plain(value: float, portfolio_return: float, withdrawal: float) -> Tuple[float, bool]:
    """
    Advance an unleveraged portfolio by one year.

    The withdrawal is sold first, then the return is applied (floored at
    -100%). The value never goes below zero.

    Returns
    -------
    value : float
        Portfolio value after the year.
    invalid : bool
        True when a non-finite input was replaced by a zero portfolio.
    """
    if not (math.isfinite(value) and math.isfinite(portfolio_return)):
        logger.warning(
            "Non-finite plain portfolio step (value=%r, return=%r); marking iteration as failed",
            value, portfolio_return,
        )
        return 0.0, True
    value = max(0.0, value - withdrawal)
    value *= 1.0 + max(portfolio_return, -1.0)
    return max(value, 0.0), False


class _Trajectories:
    """Per-iteration records for a block of iterations."""

    def __init__(self, n_iterations: int, n_years: int) -> None:
        self.portfolio = np.zeros((n_iterations, n_years + 1))
        self.loan = np.zeros((n_iterations, n_years + 1))
        self.market = np.ones((n_iterations, n_years + 1))
        self.returns = np.zeros((n_iterations, n_years))
        self.first_call_year = np.zeros(n_iterations, dtype=np.int64)
        self.margin_calls = np.zeros(n_iterations, dtype=np.int64)
        self.haircuts = np.zeros(n_iterations)
        self.interest = np.zeros(n_iterations)
        self.dividend_taxes = np.zeros(n_iterations)
        self.failure_year = np.zeros(n_iterations, dtype=np.int64)
        self.invalid = np.zeros(n_iterations, dtype=bool)

    def store(self, offset: int, batch: "_Trajectories") -> None:
        """Copy a completed batch into rows ``offset:offset + len(batch)``."""
        rows = slice(offset, offset + batch.invalid.size)
        for name, values in vars(batch).items():
            getattr(self, name)[rows] = values


class MonteCarloSimulator:
    """
    Monte Carlo simulator for a Buy-Borrow-Die or plain portfolio.

    The return generator is built (and every fallback decided) once, at
    construction. Each call to ``run`` starts a fresh random stream from
    ``config.seed``, so repeated runs of the same simulator are identical.

    Attributes
    ----------
    config : SimulationConfig
        Validated run configuration.
    generator : ReturnGenerator
        Annual return model.
    diagnostics : GeneratorDiagnostics
        Fallbacks taken while building the generator.
    """

    def __init__(self, config: SimulationConfig) -> None:
        """
        Initialize the simulator.

        Parameters
        ----------
        config : SimulationConfig
            Run configuration, already validated by its constructor.

        Raises
        ------
        ConfigError
            If the configuration cannot be turned into a return model.
        """
        if not isinstance(config.strategy, (PlainStrategy, SBLOCStrategy)):
            raise TypeError(f"Unsupported strategy {type(config.strategy).__name__}")
        self.config = config
        self.generator, self.diagnostics = create_return_generator(config)
        self._weights = config.weights
        self._withdrawals = config.withdrawal.schedule(config.time_horizon)

    @property
    def is_sbloc(self) -> bool:
        return isinstance(self.config.strategy, SBLOCStrategy)

    def run(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SimulationOutput:
        """
        Run every iteration and aggregate the results.

        Parameters
        ----------
        progress_callback : callable, optional
            Called as ``progress_callback(completed, total)`` after each batch.
        cancel_event : threading.Event, optional
            Checked between batches; when set the run stops.

        Returns
        -------
        SimulationOutput

        Raises
        ------
        SimulationCancelled
            If ``cancel_event`` was set before the last batch started. No
            partial aggregate is produced.
        """
        cfg = self.config
        total = cfg.iterations
        rng = seeded_rng(cfg.seed)
        records = _Trajectories(total, cfg.time_horizon)
        logger.info(
            "Starting %d iterations over %d years (%s, %s)",
            total, cfg.time_horizon, cfg.strategy.mode, cfg.method.value,
        )

        completed = 0
        while completed < total:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Simulation cancelled after %d/%d iterations", completed, total)
                raise SimulationCancelled(completed, total)
            size = min(cfg.batch_size, total - completed)
            batch = _Trajectories(size, cfg.time_horizon)
            for row in range(size):
                self._simulate_iteration(rng, batch, row)
            records.store(completed, batch)
            completed += size
            logger.debug("Batch done: %d/%d iterations", completed, total)
            if progress_callback is not None:
                progress_callback(completed, total)

        output = self._aggregate(records)
        logger.info(
            "Finished %d iterations: median terminal %.2f, success rate %.3f",
            total, output.summary.median, output.summary.success_rate,
        )
        return output

    def _simulate_iteration(self, rng: np.random.Generator, out: _Trajectories, row: int) -> None:
        """Draw one iteration's returns and step it through every year."""
        returns = self.generator.generate(rng, self.config.time_horizon)
        portfolio_returns = returns @ self._weights
        out.returns[row] = portfolio_returns
        out.market[row, 1:] = np.cumprod(1.0 + np.maximum(portfolio_returns, -1.0))
        if self.is_sbloc:
            self._step_sbloc(portfolio_returns, out, row)
        else:
            self._step_plain(portfolio_returns, out, row)

    def _step_plain(self, portfolio_returns: NDArray[np.float64], out: _Trajectories, row: int) -> None:
        value = self.config.initial_value
        out.portfolio[row, 0] = value
        failed = False
        for t, r in enumerate(portfolio_returns):
            if not failed:
                value, invalid = step_plain(value, float(r), self._withdrawals[t])
                if invalid:
                    out.invalid[row] = True
                if value <= 0:
                    failed = True
                    out.failure_year[row] = t + 1
            out.portfolio[row, t + 1] = value

    def _step_sbloc(self, portfolio_returns: NDArray[np.float64], out: _Trajectories, row: int) -> None:
        sbloc = self.config.strategy.config
        state = initialize_sbloc_state(sbloc, self.config.initial_value)
        out.portfolio[row, 0] = state.portfolio_value
        out.loan[row, 0] = state.loan_balance
        for t, r in enumerate(portfolio_returns):
            # a failed account keeps borrowing and accruing interest
            result = step_sbloc(state, sbloc, float(r), self._withdrawals[t])
            state = result.new_state
            if result.margin_call_triggered:
                out.margin_calls[row] += 1
                if out.first_call_year[row] == 0:
                    out.first_call_year[row] = t + 1
            if result.liquidation_event is not None:
                out.haircuts[row] += result.liquidation_event.haircut
            out.interest[row] += result.interest_charged
            out.dividend_taxes[row] += result.dividend_tax_borrowed
            if result.invalid_state:
                out.invalid[row] = True
            if result.portfolio_failed and out.failure_year[row] == 0:
                out.failure_year[row] = t + 1
            out.portfolio[row, t + 1] = state.portfolio_value
            out.loan[row, t + 1] = state.loan_balance

    def _deflator(self) -> NDArray[np.float64]:
        years = np.arange(self.config.time_horizon + 1)
        if self.config.inflation_rate is None:
            return np.ones(years.size)
        return (1.0 + self.config.inflation_rate) ** years

    def _aggregate(self, records: _Trajectories) -> SimulationOutput:
        cfg = self.config
        deflator = self._deflator()
        portfolio = records.portfolio / deflator
        loan = records.loan / deflator
        net_worth = portfolio - loan
        terminal = net_worth[:, -1]
        market_nominal = cfg.initial_value * records.market

        n_invalid = int(np.count_nonzero(records.invalid))
        n_failed = int(np.count_nonzero(records.failure_year))
        if n_invalid:
            logger.warning("%d of %d iterations recovered from an invalid state", n_invalid, cfg.iterations)

        sell_strategy = None
        sell_iterations = None
        if cfg.sell_strategy is not None:
            sell_strategy = calculate_sell_strategy(
                cfg.sell_strategy, percentile_bands(market_nominal),
                cfg.initial_value, cfg.withdrawal, deflator,
            )
            sell_iterations = calculate_sell_iterations(
                cfg.sell_strategy, records.returns, cfg.initial_value, cfg.withdrawal, deflator,
            )

        estate = None
        sbloc_diagnostics = None
        multiplier_fallback = False
        if self.is_sbloc:
            tax = cfg.sell_strategy if cfg.sell_strategy is not None else SellStrategyConfig()
            estate = estate_from_simulation(
                terminal,
                portfolio[:, -1],
                cfg.initial_value,
                tax.cost_basis_ratio,
                tax.capital_gains_rate,
                dividend_taxes_borrowed=records.dividend_taxes,
                sell_median_terminal=sell_strategy.median_terminal if sell_strategy is not None else None,
            )
            sbloc_diagnostics = summarize_sbloc_diagnostics(
                records.margin_calls,
                records.haircuts,
                records.interest,
                records.dividend_taxes,
                portfolio[:, -1],
                records.failure_year,
            )
            multiplier_fallback = cfg.strategy.config.multiplier_fallback

        diagnostics = RunDiagnostics(
            invalid_iterations=n_invalid,
            failed_iterations=n_failed,
            correlation_fallback=self.diagnostics.correlation_fallback,
            data_quality=self.diagnostics.data_quality,
            calibration_fallbacks=self.diagnostics.calibration_fallbacks,
            multiplier_fallback=multiplier_fallback,
            block_length=self.diagnostics.block_length,
            sbloc=sbloc_diagnostics,
            fat_tail_parameters=self.diagnostics.fat_tail_parameters,
        )

        return SimulationOutput(
            terminal_values=terminal,
            portfolio_bands=percentile_bands(portfolio),
            net_worth_bands=percentile_bands(net_worth),
            loan_bands=percentile_bands(loan),
            market_bands=percentile_bands(market_nominal / deflator),
            margin_call_stats=tuple(margin_call_probabilities(records.first_call_year, cfg.time_horizon)),
            summary=summarize_terminal_values(terminal, cfg.initial_value),
            path_percentiles=path_coherent_percentiles(terminal, net_worth, portfolio, loan),
            diagnostics=diagnostics,
            initial_value=cfg.initial_value,
            time_horizon=cfg.time_horizon,
            iterations=cfg.iterations,
            strategy_mode=cfg.strategy.mode,
            cumulative_withdrawals=cfg.withdrawal.cumulative(cfg.time_horizon),
            estate=estate,
            sell_strategy=sell_strategy,
            sell_iterations=sell_iterations,
        )


def run_simulation(
    config: SimulationConfig,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
) -> SimulationOutput:
    """
    Run a Monte Carlo simulation.

    Parameters
    ----------
    config : SimulationConfig
    progress_callback : callable, optional
        ``progress_callback(completed, total)`` after each batch.
    cancel_event : threading.Event, optional
        Cooperative cancellation token checked between batches.

    Returns
    -------
    SimulationOutput

    Raises
    ------
    SimulationCancelled
        If the run was cancelled.
    """
    return MonteCarloSimulator(config).run(progress_callback, cancel_event)
