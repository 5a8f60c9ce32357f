"""
Background execution of simulations.

A ``SimulationWorker`` owns a single worker thread. Each submitted run gets
a ``SimulationHandle`` carrying a message channel and a cancellation token:
the caller receives ``ProgressMessage`` ticks followed by exactly one
terminal message (``ResultMessage``, ``CancelledMessage`` or
``ErrorMessage``). Nothing is shared with the running simulation except the
queue and the token.
"""

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator, Optional, Union

from bbdsim.config import SimulationConfig
from bbdsim.errors import SimulationCancelled
from bbdsim.simulation.results import SimulationOutput
from bbdsim.simulation.simulator import ProgressCallback, run_simulation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressMessage:
    """Progress tick sent after each completed batch."""

    completed: int
    total: int

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


@dataclass(frozen=True, eq=False)
class ResultMessage:
    """The finished run."""

    output: SimulationOutput


@dataclass(frozen=True)
class CancelledMessage:
    """Acknowledges a cancelled run; no output is produced."""

    completed: int
    total: int


@dataclass(frozen=True, eq=False)
class ErrorMessage:
    """The run raised (configuration errors included)."""

    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


WorkerMessage = Union[ProgressMessage, ResultMessage, CancelledMessage, ErrorMessage]
TERMINAL_MESSAGES = (ResultMessage, CancelledMessage, ErrorMessage)


class SimulationHandle:
    """
    Caller's side of one submitted run.

    Attributes
    ----------
    config : SimulationConfig
        The submitted configuration.
    """

    def __init__(
        self,
        config: SimulationConfig,
        future: "Future[SimulationOutput]",
        channel: "queue.Queue[WorkerMessage]",
        cancel_event: threading.Event,
    ) -> None:
        self.config = config
        self._future = future
        self._channel = channel
        self._cancel_event = cancel_event

    def cancel(self) -> None:
        """Ask the run to stop at the next batch boundary."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self._future.done()

    def messages(self, timeout: Optional[float] = None) -> Iterator[WorkerMessage]:
        """
        Yield messages until the terminal one (inclusive).

        Parameters
        ----------
        timeout : float, optional
            Maximum wait for each message.

        Raises
        ------
        queue.Empty
            If no message arrives within ``timeout``.
        """
        while True:
            message = self._channel.get(timeout=timeout)
            yield message
            if isinstance(message, TERMINAL_MESSAGES):
                return

    def result(self, timeout: Optional[float] = None) -> SimulationOutput:
        """
        Wait for the output.

        Raises
        ------
        SimulationCancelled
            If the run was cancelled.
        ConfigError
            If the configuration was rejected.
        """
        return self._future.result(timeout=timeout)


class SimulationWorker:
    """
    Runs simulations on one background thread.

    Runs submitted while another is in progress wait their turn; each keeps
    its own channel and cancellation token.

    Examples
    --------
    >>> with SimulationWorker() as worker:  # doctest: +SKIP
    ...     handle = worker.submit(config)
    ...     for message in handle.messages():
    ...         print(message)
    """

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bbdsim-worker")

    def submit(self, config: SimulationConfig) -> SimulationHandle:
        """Queue a run and return its handle."""
        channel: "queue.Queue[WorkerMessage]" = queue.Queue()
        cancel_event = threading.Event()
        future = self._executor.submit(self._run, config, channel, cancel_event)
        return SimulationHandle(config, future, channel, cancel_event)

    @staticmethod
    def _run(
        config: SimulationConfig,
        channel: "queue.Queue[WorkerMessage]",
        cancel_event: threading.Event,
    ) -> SimulationOutput:
        progress: ProgressCallback = lambda completed, total: channel.put(
            ProgressMessage(completed, total)
        )
        try:
            output = run_simulation(config, progress, cancel_event)
        except SimulationCancelled as exc:
            channel.put(CancelledMessage(exc.completed, exc.total))
            raise
        except Exception as exc:
            logger.exception("Simulation failed")
            channel.put(ErrorMessage(exc))
            raise
        channel.put(ResultMessage(output))
        return output

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting runs; optionally wait for queued ones."""
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "SimulationWorker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
