"""
Run coordination.

`LoadTestRun` wires one scenario's components together (scheduler, worker
pool, request executor, metrics aggregator) around an explicit `RunContext`
and drives the run through its state machine:

    CONFIGURED → RUNNING → DRAINING → COMPLETED
                    └──────────┴────→ CANCELLED

The scheduler loop runs on the caller thread; iterations run on the pool's
worker threads. Once dispatching stops, in-flight iterations get up to the
scenario's `graceful_stop` to finish before they are abandoned. Abandoned
iterations end on their own within their request timeout; the report counts
them as `interrupted_iterations` and ignores their late outcomes, so that
`requests + dropped_iterations + interrupted_iterations == dispatched`.

Example:
    >>> scenario = load_scenario(Path("rate_limit.json"))
    >>> report = LoadTestRun(scenario).run()
    >>> print(report.render())
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from concurrent.futures import Future
from typing import Any

from loadrig._config import LOADRIG
from loadrig._context import RunContext, RunState, RunStateError
from loadrig._executor import RequestExecutor
from loadrig._http import HttpClient, RequestsHttpClient
from loadrig._metrics import MetricsAggregator
from loadrig._models import DispatchEvent, Outcome
from loadrig._pool import VuSlot, WorkerPool
from loadrig._report import RunReport
from loadrig._scenario import ScenarioConfig
from loadrig._scheduler import ConstantArrivalRateScheduler, RampingVusScheduler
from loadrig._thresholds import declared_percentiles, evaluate

logger = logging.getLogger(__name__)


class FatalRunError(RuntimeError):
    """Raised (and recorded as cancel reason) when a run must stop early, e.g. by the fail-fast policy."""


class LoadTestRun:
    """
    One execution of a scenario.

    A run can only be executed once. `cancel()` may be called from any thread
    (including signal handlers) while the run is in progress.

    Args:
        scenario: The validated scenario to run.
        http_client: Transport to use. Defaults to a `RequestsHttpClient`
            owned (and closed) by the run.
        context: Run context. Defaults to a fresh one seeded with `scenario.seed`.
        metrics: Aggregator. Defaults to a fresh one using the run's RNG and tracking
            the percentiles the scenario's thresholds declare (a custom one must too).

    Raises:
        ConfigValidationError: If the scenario is invalid.
    """

    def __init__(
        self,
        scenario: ScenarioConfig,
        http_client: HttpClient | None = None,
        context: RunContext | None = None,
        metrics: MetricsAggregator | None = None,
    ):
        self.scenario = scenario.validate()
        self.context = context or RunContext(seed=scenario.seed)

        cfg = LOADRIG.config.run
        self.tick_interval = cfg.tick_interval
        self.fail_fast_threshold = cfg.fail_fast_consecutive_failures

        self._owns_http_client = http_client is None
        self.http_client: HttpClient = http_client or RequestsHttpClient()
        self.metrics = metrics or MetricsAggregator(
            rng=self.context.rng,
            percentiles=declared_percentiles(scenario.thresholds),
        )
        self.pool = WorkerPool(
            pre_allocated_vus=scenario.pre_allocated_vus,
            max_vus=scenario.max_vus,
            name=f"loadrig-{scenario.name}",
        )
        self.executor = RequestExecutor(
            http_client=self.http_client,
            context=self.context,
            sink=self._on_outcome,
            think_time=scenario.think_time,
            think_time_jitter=scenario.think_time_jitter,
        )

        self._lock = threading.Lock()
        self._dispatched = 0
        self._consecutive_failures = 0
        self._sealed = False
        self._cancel_reason: str | None = None
        self._in_flight: set[Future[Any]] = set()
        self._target_vus = 0
        self._vus: dict[int, Future[Any]] = {}
        self._warned_dropped = False
        self._warned_clamped = False

    @property
    def state(self) -> RunState:
        return self.context.state

    @property
    def dispatched(self) -> int:
        with self._lock:
            return self._dispatched

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def run(self) -> RunReport:
        """
        Execute the scenario and block until the run reaches a terminal state.

        Returns:
            The run report (also when the run was cancelled).

        Raises:
            RunStateError: If the run was already started.
        """
        ctx = self.context
        ctx.transition_to(RunState.RUNNING)
        ctx.start()
        self._log_start()

        try:
            if self.scenario.model.is_open_loop:
                self._run_open_loop()
            else:
                self._run_closed_loop()

            if ctx.try_transition_to(RunState.DRAINING):
                logger.info(f"{ctx.log_prefix} | RUN | ⏳ Duration elapsed, draining in-flight iterations.")
            ctx.request_stop()
            self._drain()
            ctx.try_transition_to(RunState.COMPLETED)
        except Exception as e:
            logger.error(
                f"{ctx.log_prefix} | RUN | ❌ Run aborted by unexpected error: {e}",
                exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            self.cancel(f"Unexpected error: {e}", hard=True)
            raise
        finally:
            self._shutdown()

        return self._build_report()

    def cancel(self, reason: str | BaseException = "Cancelled by user", hard: bool = False) -> bool:
        """
        Stop the run early.

        Dispatching stops immediately. In-flight iterations are still allowed to
        finish within `graceful_stop`, unless `hard` is True.

        Args:
            reason: Why the run is being cancelled (recorded in the report).
            hard: Do not wait for in-flight iterations.

        Returns:
            True if the run is (now) cancelled, False if it had already completed.

        Raises:
            RunStateError: If the run has not started yet.
        """
        ctx = self.context
        if ctx.state is RunState.CONFIGURED:
            raise RunStateError("Cannot cancel a run that has not started.")

        if ctx.try_transition_to(RunState.CANCELLED):
            self._cancel_reason = str(reason)
            logger.warning(f"{ctx.log_prefix} | RUN | 🛑 Run cancelled: {reason}")

        if ctx.state is not RunState.CANCELLED:
            logger.debug(f"{ctx.log_prefix} | RUN | Ignoring cancel request, run already {ctx.state}.")
            return False

        if hard:
            ctx.request_hard_stop()
        else:
            ctx.request_stop()
        return True

    # -------------------------------------------------------------------------
    # Open loop
    # -------------------------------------------------------------------------

    def _run_open_loop(self) -> None:
        ctx = self.context
        scheduler = ConstantArrivalRateScheduler.from_scenario(self.scenario)

        for event in scheduler.events(ctx):
            with self._lock:
                self._dispatched += 1

            future = self.pool.dispatch(self._iterate, event)
            if future is None:
                self.metrics.record_dropped(event)
                self._warn_dropped(event)
                continue

            with self._lock:
                self._in_flight.add(future)
            future.add_done_callback(self._forget)

        # Keep the run open for its whole duration even after the last event
        ctx.wait_until(self.scenario.duration)

    def _warn_dropped(self, event: DispatchEvent) -> None:
        prefix = self.context.log_prefix
        if not self._warned_dropped:
            self._warned_dropped = True
            logger.warning(
                f"{prefix} | RUN | ⚠️ Insufficient VUs: all {self.pool.max_vus} VUs are busy, "
                f"dropping iterations (first at {event.scheduled_at:.3f}s). Consider raising maxVUs."
            )
        logger.debug(f"{prefix} | RUN | Dropped iteration #{event.sequence} scheduled at {event.scheduled_at:.3f}s")

    def _forget(self, future: Future[Any]) -> None:
        with self._lock:
            self._in_flight.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(
                f"{self.context.log_prefix} | RUN | ❌ Iteration failed unexpectedly: {future.exception()}",
                exc_info=future.exception() if logger.isEnabledFor(logging.DEBUG) else None,
            )

    # -------------------------------------------------------------------------
    # Closed loop
    # -------------------------------------------------------------------------

    def _run_closed_loop(self) -> None:
        scheduler = RampingVusScheduler.from_scenario(self.scenario, tick_interval=self.tick_interval)
        for tick in scheduler.ticks(self.context):
            self._scale_to(tick.target)
        self._scale_to(0)

    def _scale_to(self, target: int) -> None:
        prefix = self.context.log_prefix
        if target > self.pool.max_vus:
            if not self._warned_clamped:
                self._warned_clamped = True
                logger.warning(f"{prefix} | RUN | ⚠️ VU target {target} exceeds maxVUs, capped at {self.pool.max_vus}.")
            target = self.pool.max_vus

        with self._lock:
            previous, self._target_vus = self._target_vus, target
            if target > 0 and self.context.stopping:
                return
            for index in range(target):
                running = self._vus.get(index)
                if running is None or running.done():
                    self._vus[index] = self.pool.spawn(self._vu_loop, index)

        if target != previous:
            logger.debug(f"{prefix} | RUN | 👥 VU target changed: {previous} → {target}")

    def _vu_loop(self, index: int) -> None:
        ctx = self.context
        remaining = max(0.0, self.scenario.duration - ctx.elapsed())
        slot = self.pool.acquire(blocking=True, timeout=remaining)
        if slot is None:
            logger.debug(f"{ctx.log_prefix} | RUN | VU index {index} found no free slot before the ramp ended.")
            return

        try:
            iteration = 0
            while not ctx.stopping and index < self._target_vus:
                event = DispatchEvent(
                    sequence=ctx.next_sequence(),
                    scheduled_at=ctx.elapsed(),
                    iteration=iteration,
                )
                with self._lock:
                    self._dispatched += 1
                self._iterate(slot, event)
                iteration += 1
        finally:
            self.pool.release(slot)

    # -------------------------------------------------------------------------
    # Iterations and outcomes
    # -------------------------------------------------------------------------

    def _iterate(self, slot: VuSlot, event: DispatchEvent) -> Outcome:
        requests = self.scenario.requests
        request = requests[event.sequence % len(requests)]
        return self.executor.execute(request, event, slot)

    def _on_outcome(self, outcome: Outcome) -> None:
        with self._lock:
            if self._sealed:
                logger.debug(
                    f"{self.context.log_prefix} | RUN | Ignoring outcome of interrupted iteration "
                    f"#{outcome.sequence} ({outcome.kind}), the report is already built."
                )
                return
            self.metrics.ingest(outcome)
            if not self.fail_fast_threshold:
                return

            if outcome.is_success:
                self._consecutive_failures = 0
                return
            self._consecutive_failures += 1
            tripped = self._consecutive_failures == self.fail_fast_threshold

        if tripped:
            error = FatalRunError(
                f"{self.fail_fast_threshold} consecutive iterations failed "
                f"(last: {outcome.kind}{f' {outcome.status_code}' if outcome.status_code else ''})."
            )
            logger.error(f"{self.context.log_prefix} | RUN | ❌ Fail-fast triggered: {error}")
            self.cancel(error)

    # -------------------------------------------------------------------------
    # Drain and shutdown
    # -------------------------------------------------------------------------

    def _pending(self) -> set[Future[Any]]:
        with self._lock:
            pending = set(self._in_flight) | set(self._vus.values())
        return {future for future in pending if not future.done()}

    def _drain(self) -> None:
        ctx = self.context
        pending = self._pending()
        if not pending:
            return

        logger.debug(f"{ctx.log_prefix} | RUN | Waiting up to {self.scenario.graceful_stop}s for {len(pending)} in-flight iteration(s).")
        deadline = time.monotonic() + self.scenario.graceful_stop
        while pending and not ctx.hard_stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            _, pending = concurrent.futures.wait(pending, timeout=min(remaining, 0.1))

        if pending:
            logger.warning(
                f"{ctx.log_prefix} | RUN | ⚠️ Abandoning {len(pending)} in-flight iteration(s) "
                f"after graceful stop of {self.scenario.graceful_stop}s."
            )
            ctx.request_hard_stop()

    def _shutdown(self) -> None:
        hard = self.context.hard_stop_event.is_set()
        self.pool.shutdown(wait=not hard, cancel_futures=True)
        if self._owns_http_client:
            self.http_client.close()

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def _log_start(self) -> None:
        prefix = self.context.log_prefix
        scenario = self.scenario
        logger.info(f"{prefix} | RUN | 🚀 Starting scenario '{scenario.name}' ({scenario.model}).")
        if scenario.model.is_open_loop:
            logger.info(f"{prefix} | RUN |    ├ rate = {scenario.rate:g} per {scenario.time_unit:g}s for {scenario.duration:g}s")
        else:
            stages = ", ".join(f"{stage.duration:g}s→{stage.target}" for stage in scenario.stages)
            logger.info(f"{prefix} | RUN |    ├ stages = {stages}")
        logger.info(f"{prefix} | RUN |    ├ vus = {scenario.pre_allocated_vus} pre-allocated, {scenario.max_vus} max")
        logger.info(f"{prefix} | RUN |    ├ requests = {', '.join(request.label for request in scenario.requests)}")
        logger.info(f"{prefix} | RUN |    └ thresholds = {len(scenario.thresholds)}")

    def _build_report(self) -> RunReport:
        ctx = self.context
        # Outcomes of iterations still running from here on are not counted
        with self._lock:
            self._sealed = True
            snapshot = self.metrics.snapshot()
            dispatched = self._dispatched
        interrupted = dispatched - snapshot.requests - snapshot.dropped_iterations
        results = tuple(evaluate(self.scenario.thresholds, snapshot))
        report = RunReport(
            run_id=ctx.run_id,
            scenario=self.scenario,
            state=ctx.state,
            snapshot=snapshot,
            thresholds=results,
            dispatched=dispatched,
            interrupted_iterations=interrupted,
            peak_vus=self.pool.peak_active,
            wall_time=ctx.elapsed(),
            cancel_reason=self._cancel_reason,
        )

        failed = sum(1 for result in results if not result.passed)
        icon = "🏁" if report.state is RunState.COMPLETED else "🛑"
        logger.info(f"{ctx.log_prefix} | RUN | {icon} Run finished with state {report.state} in {report.wall_time:.2f}s.")
        logger.info(
            f"{ctx.log_prefix} | RUN |    ├ iterations = {snapshot.requests} completed, "
            f"{snapshot.dropped_iterations} dropped, {interrupted} interrupted"
        )
        logger.info(f"{ctx.log_prefix} | RUN |    ├ error_rate = {snapshot.error_rate:.2%}")
        logger.info(
            f"{ctx.log_prefix} | RUN |    └ thresholds = "
            + ("✅ all passed" if failed == 0 else f"❌ {failed} of {len(results)} failed")
        )
        return report
