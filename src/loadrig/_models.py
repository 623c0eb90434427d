"""
Data models shared across the harness.

This module contains the core data structures that flow between components:
- DispatchEvent: A scheduled instant at which one iteration should begin (frozen/immutable)
- Outcome: The result of one executed iteration (frozen/immutable)
- OutcomeKind: Enum classifying every outcome into exactly one bucket
"""
import enum
from dataclasses import dataclass


class OutcomeKind(enum.StrEnum):
    """
    Classification of an executed iteration.

    Attributes:
        SUCCESS: The target answered with a 2xx or 3xx status.
        CLIENT_ERROR: The target answered with a 4xx status (including 429 rate limiting).
        SERVER_ERROR: The target answered with a 5xx status.
        NETWORK_ERROR: The request failed at the transport level (refused, reset, DNS...).
        TIMEOUT: The request did not complete within its timeout.
    """
    SUCCESS = "SUCCESS"
    CLIENT_ERROR = "CLIENT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_status(cls, status_code: int) -> "OutcomeKind":
        """
        Classify an HTTP status code.

        Args:
            status_code: The HTTP status code returned by the target.

        Returns:
            SUCCESS for 1xx-3xx, CLIENT_ERROR for 4xx, SERVER_ERROR for 5xx and above.
        """
        if status_code >= 500:
            return cls.SERVER_ERROR
        if status_code >= 400:
            return cls.CLIENT_ERROR
        return cls.SUCCESS

    @classmethod
    def from_exception(cls, exc: BaseException) -> "OutcomeKind":
        """
        Classify a transport exception.

        Args:
            exc: The exception raised while executing the request.

        Returns:
            TIMEOUT for timeout exceptions, NETWORK_ERROR for all others.
        """
        from loadrig._utils import is_timeout_exception
        return cls.TIMEOUT if is_timeout_exception(exc) else cls.NETWORK_ERROR

    @property
    def status_class(self) -> str | None:
        """Histogram key for outcomes that carry no status code, None otherwise."""
        if self is OutcomeKind.TIMEOUT:
            return "timeout"
        if self is OutcomeKind.NETWORK_ERROR:
            return "error"
        return None


@dataclass(frozen=True)
class DispatchEvent:
    """
    A scheduled instant at which one new iteration should begin.

    Attributes:
        sequence: Run-wide, strictly increasing identifier of the event.
        scheduled_at: Offset in seconds from the run start.
        iteration: Per-VU iteration index in closed-loop mode, None in open-loop mode.
    """
    sequence: int
    scheduled_at: float
    iteration: int | None = None

    def __post_init__(self) -> None:
        assert self.sequence >= 0, "Event sequence can not be negative."
        assert self.scheduled_at >= 0, "Event scheduled_at can not be negative."


@dataclass(frozen=True)
class Outcome:
    """
    Result of one executed iteration.

    Every accepted DispatchEvent produces exactly one Outcome, whichever branch
    the request took. Timestamps are offsets in seconds from the run start, so
    outcomes can be aggregated correctly whatever order they arrive in.

    Attributes:
        sequence: Sequence of the DispatchEvent that produced this outcome.
        vu_id: Identifier of the virtual user slot that executed it.
        kind: Classification of the result.
        status_code: HTTP status, or None for network errors and timeouts.
        latency: Request duration in seconds (think time excluded).
        started_at: Offset in seconds from the run start when the request began.
        error: Error description for network errors and timeouts.
        check_passed: Result of the status check, or None when no check is declared.
        request_name: Name of the request spec that was executed.
    """
    sequence: int
    vu_id: int
    kind: OutcomeKind
    status_code: int | None
    latency: float
    started_at: float
    error: str | None = None
    check_passed: bool | None = None
    request_name: str = ""

    def __post_init__(self) -> None:
        assert self.latency >= 0, "Outcome latency can not be negative."
        assert (self.status_code is None) == (self.kind.status_class is not None), \
            f"🌀 Sanity check | Outcome of kind {self.kind} is inconsistent with status_code={self.status_code}."

    @property
    def finished_at(self) -> float:
        """Offset in seconds from the run start when the request completed."""
        return self.started_at + self.latency

    @property
    def is_success(self) -> bool:
        """Returns True if the target answered with a 2xx/3xx status."""
        return self.kind is OutcomeKind.SUCCESS

    @property
    def status_class(self) -> str:
        """Normalized histogram key: '2xx', '4xx', '5xx', 'error' or 'timeout'."""
        if self.status_code is None:
            return self.kind.status_class or "error"
        return f"{self.status_code // 100}xx"
