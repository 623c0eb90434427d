"""
Run-scoped state.

Everything a run shares between its components lives in an explicit
`RunContext` handed to each of them: the run id, the seeded RNG, the
monotonic clock origin, the dispatch sequence and the cancellation signals.
Nothing is kept at module level, so several runs can coexist in one process.
"""

from __future__ import annotations

import enum
import itertools
import logging
import random
import threading
import time
import uuid

logger = logging.getLogger(__name__)


class RunStateError(RuntimeError):
    """Raised on an illegal run state transition."""


class RunState(enum.StrEnum):
    """
    Lifecycle of a load test run.

    Attributes:
        CONFIGURED: Scenario parsed and validated, nothing dispatched yet.
        RUNNING: The scheduler is dispatching iterations.
        DRAINING: Dispatch stopped, in-flight iterations are finishing.
        COMPLETED: Terminal. The run went through its full duration.
        CANCELLED: Terminal. Stopped early by an explicit stop or a fatal error.
    """
    CONFIGURED = "CONFIGURED"
    RUNNING = "RUNNING"
    DRAINING = "DRAINING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.CANCELLED)


_VALID_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.CONFIGURED: frozenset({RunState.RUNNING}),
    RunState.RUNNING:    frozenset({RunState.DRAINING, RunState.CANCELLED}),
    RunState.DRAINING:   frozenset({RunState.COMPLETED, RunState.CANCELLED}),
    RunState.COMPLETED:  frozenset(),
    RunState.CANCELLED:  frozenset(),
}


class RunContext:
    """
    Explicit, run-scoped context passed to every component.

    Attributes:
        run_id: Unique identifier of the run (used as log prefix).
        seed: Seed of `rng`, or None for a random seed.
        rng: The run's RNG.
        stop_event: Set when dispatching must stop (duration elapsed or cancel).
        hard_stop_event: Set when in-flight work must not be waited for anymore.

    Example:
        >>> context = RunContext(seed=42)
        >>> context.start()
        >>> context.elapsed() < 1.0
        True
    """

    def __init__(self, seed: int | None = None, run_id: str | None = None):
        self.run_id = run_id or str(uuid.uuid4())
        self.seed = seed
        self.rng = random.Random(seed)
        self.stop_event = threading.Event()
        self.hard_stop_event = threading.Event()

        self._started_at: float | None = None
        self._sequence = itertools.count()
        self._sequence_lock = threading.Lock()
        self._state = RunState.CONFIGURED
        self._state_lock = threading.Lock()

    @property
    def log_prefix(self) -> str:
        return f"{self.run_id[:26]:<26}"

    # -------------------------------------------------------------------------
    # Clock
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Set the clock origin. Offsets reported by `elapsed()` start here."""
        assert self._started_at is None, "🌀 Sanity check | RunContext clock already started."
        self._started_at = time.monotonic()

    @property
    def started(self) -> bool:
        return self._started_at is not None

    def elapsed(self) -> float:
        """Seconds since `start()`."""
        assert self._started_at is not None, "🌀 Sanity check | RunContext clock was not started."
        return time.monotonic() - self._started_at

    def wait_until(self, offset: float) -> bool:
        """
        Sleep until `offset` seconds after start, waking early on stop.

        Returns:
            True if the wait was interrupted by `stop_event`, False otherwise.
        """
        remaining = offset - self.elapsed()
        if remaining > 0:
            return self.stop_event.wait(remaining)
        return self.stop_event.is_set()

    def next_sequence(self) -> int:
        """Return the next run-wide dispatch sequence number."""
        with self._sequence_lock:
            return next(self._sequence)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def request_stop(self) -> None:
        """Stop dispatching new iterations. In-flight iterations keep running."""
        self.stop_event.set()

    def request_hard_stop(self) -> None:
        """Stop dispatching and stop waiting for in-flight iterations."""
        self.stop_event.set()
        self.hard_stop_event.set()

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    def transition_to(self, new_status: RunState) -> RunState:
        """
        Move the run to `new_status`.

        Returns:
            The previous state.

        Raises:
            RunStateError: If the transition is not allowed.
        """
        with self._state_lock:
            old_status = self._state
            if new_status not in _VALID_TRANSITIONS[old_status]:
                raise RunStateError(f"Invalid run state transition: {old_status} → {new_status}")
            self._state = new_status
        logger.debug(f"{self.log_prefix} | RUN | State changed: {old_status} → {new_status}")
        return old_status

    def try_transition_to(self, new_status: RunState) -> bool:
        """Like `transition_to()`, but returns False instead of raising."""
        try:
            self.transition_to(new_status)
            return True
        except RunStateError:
            return False
