"""
Request execution.

`RequestExecutor` runs one iteration on a VU slot: it issues the request with
its timeout, measures latency, classifies the result into an `Outcome`,
hands the outcome to the run's sink, then applies think time before giving
control back to the pool.

Transport failures never escape `execute()`: connection errors and timeouts
become NETWORK_ERROR / TIMEOUT outcomes, so every dispatched iteration
produces exactly one outcome.
"""

import logging
import time
from collections.abc import Callable

from loadrig._context import RunContext
from loadrig._http import HttpClient
from loadrig._models import DispatchEvent, Outcome, OutcomeKind
from loadrig._pool import VuSlot
from loadrig._scenario import RequestSpec
from loadrig._utils import sleep_with_jitter

logger = logging.getLogger(__name__)


class RequestExecutor:
    """
    Executes iterations and emits their outcomes.

    Args:
        http_client: Transport used to reach the target.
        context: The run context (clock, stop events, RNG).
        sink: Callable receiving every outcome (usually the aggregator's `ingest`).
        think_time: Seconds to pause after each request, interrupted on stop.
        think_time_jitter: Jitter factor applied to the think time (0 = exact).

    Example:
        >>> executor = RequestExecutor(RequestsHttpClient(), context, sink=aggregator.ingest, think_time=1.0)
        >>> outcome = executor.execute(scenario.requests[0], event, slot)
    """

    def __init__(
        self,
        http_client: HttpClient,
        context: RunContext,
        sink: Callable[[Outcome], None],
        think_time: float = 0.0,
        think_time_jitter: float = 0.0,
    ):
        assert http_client, "HTTP client can not be None."
        assert context, "Run context can not be None."
        assert sink, "Outcome sink can not be None."
        assert think_time >= 0, "think_time must be >= 0."

        self.http_client = http_client
        self.context = context
        self.sink = sink
        self.think_time = think_time
        self.think_time_jitter = think_time_jitter

    def execute(self, request: RequestSpec, event: DispatchEvent, slot: VuSlot) -> Outcome:
        """
        Run one iteration.

        Args:
            request: The request to issue.
            event: The dispatch event that triggered the iteration.
            slot: The VU slot executing it.

        Returns:
            The outcome, already delivered to the sink.
        """
        outcome = self._send(request, event, slot)
        self.sink(outcome)

        if self.think_time > 0:
            sleep_with_jitter(
                self.think_time,
                jitter_factor=self.think_time_jitter,
                stop_event=self.context.stop_event,
                rng=self.context.rng,
            )
        return outcome

    def _send(self, request: RequestSpec, event: DispatchEvent, slot: VuSlot) -> Outcome:
        prefix = f"{self.context.log_prefix} | VU-{slot.vu_id:<4}"
        timeout = request.effective_timeout()

        started_at = self.context.elapsed()
        started = time.perf_counter()
        try:
            response = self.http_client.request(
                method=request.method,
                url=request.url,
                headers=dict(request.headers) or None,
                body=request.body,
                timeout=timeout,
            )
        except Exception as e:
            latency = time.perf_counter() - started
            kind = OutcomeKind.from_exception(e)
            logger.debug(
                f"{prefix} | #{event.sequence} {request.label} ❌ {kind} after {latency * 1000:.1f}ms: {e}",
                exc_info=kind is OutcomeKind.NETWORK_ERROR and logger.isEnabledFor(logging.DEBUG),
            )
            return self._failed(request, event, slot, kind, started_at, latency, f"{type(e).__name__}: {e}")

        latency = time.perf_counter() - started
        if latency > timeout:
            # A response that arrives after the deadline counts as a timeout whatever its status
            logger.debug(
                f"{prefix} | #{event.sequence} {request.label} ❌ {OutcomeKind.TIMEOUT} "
                f"after {latency * 1000:.1f}ms (status {response.status_code} arrived past the {timeout}s timeout)"
            )
            return self._failed(
                request, event, slot, OutcomeKind.TIMEOUT, started_at, latency,
                f"Deadline exceeded: response took {latency:.3f}s, timeout is {timeout}s.",
            )

        status_code = response.status_code
        kind = OutcomeKind.from_status(status_code)
        logger.debug(f"{prefix} | #{event.sequence} {request.label} 🛜 {status_code} in {latency * 1000:.1f}ms")
        return Outcome(
            sequence=event.sequence,
            vu_id=slot.vu_id,
            kind=kind,
            status_code=status_code,
            latency=latency,
            started_at=started_at,
            check_passed=request.check(status_code),
            request_name=request.label,
        )

    @staticmethod
    def _failed(
        request: RequestSpec,
        event: DispatchEvent,
        slot: VuSlot,
        kind: OutcomeKind,
        started_at: float,
        latency: float,
        error: str,
    ) -> Outcome:
        return Outcome(
            sequence=event.sequence,
            vu_id=slot.vu_id,
            kind=kind,
            status_code=None,
            latency=latency,
            started_at=started_at,
            error=error,
            check_passed=request.check(None),
            request_name=request.label,
        )
