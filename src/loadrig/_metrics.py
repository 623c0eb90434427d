"""
Metrics aggregation for load test runs.

Outcomes are ingested concurrently by worker threads and folded into bounded
streaming aggregates: exact counters and running totals, a fixed-size latency
reservoir for quantiles, and per-bucket request counts for throughput over time.
No raw Outcome is retained, so memory stays bounded for arbitrarily long runs.
"""

from __future__ import annotations

import random
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import numpy as np

from loadrig._config import LOADRIG
from loadrig._models import DispatchEvent, Outcome


def _empty_mapping() -> Mapping[Any, Any]:
    return MappingProxyType({})


class LatencyReservoir:
    """
    Uniform sample of latencies with a fixed capacity (Algorithm R).

    Keeps the first `capacity` values, then replaces a random slot with
    probability capacity/seen for every later value, so the retained sample
    stays uniform over everything offered.

    Not thread-safe: the aggregator serializes access.
    """

    def __init__(self, capacity: int, rng: random.Random | None = None):
        assert capacity > 0, "capacity must be greater than 0."
        self.capacity = capacity
        self._rng = rng or random.Random()
        self._samples: list[float] = []
        self._seen = 0

    def offer(self, value: float) -> None:
        self._seen += 1
        if len(self._samples) < self.capacity:
            self._samples.append(value)
            return
        slot = self._rng.randrange(self._seen)
        if slot < self.capacity:
            self._samples[slot] = value

    @property
    def seen(self) -> int:
        return self._seen

    def __len__(self) -> int:
        return len(self._samples)

    def quantiles(self, percentiles: tuple[float, ...]) -> dict[float, float]:
        """Return the requested percentiles (0-100) of the retained sample."""
        if not self._samples:
            return {p: 0.0 for p in percentiles}
        values = np.percentile(np.asarray(self._samples, dtype=float), percentiles)
        return {p: float(v) for p, v in zip(percentiles, values, strict=True)}


@dataclass(frozen=True)
class MetricSnapshot:
    """
    Point-in-time aggregate of every outcome ingested so far.

    Latencies are expressed in milliseconds. Mapping fields are read-only views
    over copies taken at snapshot time, so a snapshot never changes once returned.

    Attributes:
        requests: Number of outcomes ingested.
        successes: Outcomes classified SUCCESS.
        failures: Outcomes not classified SUCCESS.
        dropped_iterations: Dispatch events dropped because every VU was busy.
        first_started_at: Offset (s) of the earliest request start, 0 when empty.
        last_finished_at: Offset (s) of the latest request completion, 0 when empty.
        latency_min_ms / latency_max_ms / latency_avg_ms: Exact over all outcomes.
        latency_med_ms / latency_p90_ms / latency_p95_ms / latency_p99_ms:
            Estimated from the latency reservoir.
        latency_percentiles_ms: Any further percentiles the aggregator was asked to track
            (e.g. 99.9 for a `p(99.9)` threshold), keyed by percentile.
        latency_samples: Number of latencies retained in the reservoir.
        by_class: Outcome counts keyed by '2xx', '3xx', '4xx', '5xx', 'error', 'timeout'.
        by_status: Outcome counts keyed by raw HTTP status code.
        by_kind: Outcome counts keyed by OutcomeKind value.
        checks_passed / checks_failed: Status check results (outcomes with a check only).
        requests_per_bucket: Completed requests keyed by bucket start offset (s).
        bucket_size: Width of each bucket in seconds.
    """

    requests: int = 0
    successes: int = 0
    failures: int = 0
    dropped_iterations: int = 0
    first_started_at: float = 0.0
    last_finished_at: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_avg_ms: float = 0.0
    latency_med_ms: float = 0.0
    latency_p90_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_percentiles_ms: Mapping[float, float] = field(default_factory=_empty_mapping)
    latency_samples: int = 0
    by_class: Mapping[str, int] = field(default_factory=_empty_mapping)
    by_status: Mapping[int, int] = field(default_factory=_empty_mapping)
    by_kind: Mapping[str, int] = field(default_factory=_empty_mapping)
    checks_passed: int = 0
    checks_failed: int = 0
    requests_per_bucket: Mapping[float, int] = field(default_factory=_empty_mapping)
    bucket_size: float = 1.0

    @property
    def elapsed(self) -> float:
        """Seconds between the first request start and the last request completion."""
        return max(0.0, self.last_finished_at - self.first_started_at)

    @property
    def request_rate(self) -> float:
        """Requests per second over the observed span."""
        if self.requests == 0 or self.elapsed == 0:
            return float(self.requests)
        return self.requests / self.elapsed

    @property
    def error_rate(self) -> float:
        """Fraction (0-1) of outcomes that were not successful."""
        if self.requests == 0:
            return 0.0
        return self.failures / self.requests

    @property
    def checks_rate(self) -> float:
        """Fraction (0-1) of checks that passed, 1.0 when no check ran."""
        total = self.checks_passed + self.checks_failed
        if total == 0:
            return 1.0
        return self.checks_passed / total

    @property
    def peak_bucket_rate(self) -> float:
        """Highest requests-per-second observed in a single bucket."""
        if not self.requests_per_bucket:
            return 0.0
        return max(self.requests_per_bucket.values()) / self.bucket_size

    def latency_percentile_ms(self, percentile: float) -> float | None:
        """Return a precomputed latency percentile, or None if it is not tracked."""
        percentile = float(percentile)
        fixed = {
            50.0: self.latency_med_ms,
            90.0: self.latency_p90_ms,
            95.0: self.latency_p95_ms,
            99.0: self.latency_p99_ms,
        }
        if percentile in fixed:
            return fixed[percentile]
        return self.latency_percentiles_ms.get(percentile)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "dropped_iterations": self.dropped_iterations,
            "request_rate": self.request_rate,
            "error_rate": self.error_rate,
            "elapsed": self.elapsed,
            "latency_ms": {
                "min": self.latency_min_ms,
                "avg": self.latency_avg_ms,
                "med": self.latency_med_ms,
                "p90": self.latency_p90_ms,
                "p95": self.latency_p95_ms,
                "p99": self.latency_p99_ms,
                **{f"p{p:g}": v for p, v in sorted(self.latency_percentiles_ms.items())},
                "max": self.latency_max_ms,
                "samples": self.latency_samples,
            },
            "by_class": dict(self.by_class),
            "by_status": {str(k): v for k, v in sorted(self.by_status.items())},
            "by_kind": dict(self.by_kind),
            "checks": {"passed": self.checks_passed, "failed": self.checks_failed},
            "requests_per_bucket": {f"{k:g}": v for k, v in sorted(self.requests_per_bucket.items())},
        }


class MetricsAggregator:
    """
    Thread-safe, append-only aggregation of outcomes.

    All mutation happens under a single lock, so concurrent `ingest()` calls
    never lose updates. `snapshot()` takes the same lock and derives every
    value from ingested data only, so repeated snapshots without an intervening
    ingest are equal.

    Args:
        reservoir_size: Latency reservoir capacity. Defaults to LOADRIG.config.metrics.reservoir_size.
        bucket_size: Throughput bucket width (s). Defaults to LOADRIG.config.metrics.bucket_size.
        rng: RNG for reservoir replacement (pass the run's seeded RNG for reproducibility).
        percentiles: Extra latency percentiles (0-100] to compute on every snapshot,
            on top of PERCENTILES.

    Example:
        >>> aggregator = MetricsAggregator()
        >>> aggregator.ingest(outcome)
        >>> aggregator.snapshot().latency_p95_ms
    """

    PERCENTILES = (50.0, 90.0, 95.0, 99.0)

    def __init__(
        self,
        reservoir_size: int | None = None,
        bucket_size: float | None = None,
        rng: random.Random | None = None,
        percentiles: Iterable[float] = (),
    ):
        cfg = LOADRIG.config.metrics
        self.extra_percentiles = tuple(sorted({float(p) for p in percentiles} - set(self.PERCENTILES)))
        assert all(0 < p <= 100 for p in self.extra_percentiles), "percentiles must be in (0, 100]."
        self.bucket_size = bucket_size or cfg.bucket_size
        assert self.bucket_size > 0, "bucket_size must be greater than 0."

        self._lock = threading.Lock()
        self._reservoir = LatencyReservoir(reservoir_size or cfg.reservoir_size, rng=rng)

        self._requests = 0
        self._successes = 0
        self._dropped = 0
        self._latency_sum = 0.0
        self._latency_min: float | None = None
        self._latency_max: float | None = None
        self._first_started_at: float | None = None
        self._last_finished_at: float | None = None
        self._by_class: dict[str, int] = {}
        self._by_status: dict[int, int] = {}
        self._by_kind: dict[str, int] = {}
        self._checks_passed = 0
        self._checks_failed = 0
        self._buckets: dict[float, int] = {}

    def ingest(self, outcome: Outcome) -> None:
        """Fold one outcome into the aggregates."""
        bucket = (outcome.finished_at // self.bucket_size) * self.bucket_size
        with self._lock:
            self._requests += 1
            if outcome.is_success:
                self._successes += 1

            latency = outcome.latency
            self._latency_sum += latency
            self._latency_min = latency if self._latency_min is None else min(self._latency_min, latency)
            self._latency_max = latency if self._latency_max is None else max(self._latency_max, latency)
            self._reservoir.offer(latency)

            if self._first_started_at is None or outcome.started_at < self._first_started_at:
                self._first_started_at = outcome.started_at
            if self._last_finished_at is None or outcome.finished_at > self._last_finished_at:
                self._last_finished_at = outcome.finished_at

            self._by_class[outcome.status_class] = self._by_class.get(outcome.status_class, 0) + 1
            self._by_kind[outcome.kind.value] = self._by_kind.get(outcome.kind.value, 0) + 1
            if outcome.status_code is not None:
                self._by_status[outcome.status_code] = self._by_status.get(outcome.status_code, 0) + 1

            if outcome.check_passed is True:
                self._checks_passed += 1
            elif outcome.check_passed is False:
                self._checks_failed += 1

            self._buckets[bucket] = self._buckets.get(bucket, 0) + 1

    def record_dropped(self, event: DispatchEvent) -> None:
        """Count a dispatch event that found no free VU (open-loop pool exhaustion)."""
        with self._lock:
            self._dropped += 1

    @property
    def requests(self) -> int:
        with self._lock:
            return self._requests

    def snapshot(self) -> MetricSnapshot:
        """Return a consistent, immutable view of everything ingested so far."""
        with self._lock:
            quantiles = self._reservoir.quantiles(self.PERCENTILES + self.extra_percentiles)
            avg = self._latency_sum / self._requests if self._requests else 0.0
            return MetricSnapshot(
                requests=self._requests,
                successes=self._successes,
                failures=self._requests - self._successes,
                dropped_iterations=self._dropped,
                first_started_at=self._first_started_at or 0.0,
                last_finished_at=self._last_finished_at or 0.0,
                latency_min_ms=(self._latency_min or 0.0) * 1000,
                latency_max_ms=(self._latency_max or 0.0) * 1000,
                latency_avg_ms=avg * 1000,
                latency_med_ms=quantiles[50.0] * 1000,
                latency_p90_ms=quantiles[90.0] * 1000,
                latency_p95_ms=quantiles[95.0] * 1000,
                latency_p99_ms=quantiles[99.0] * 1000,
                latency_percentiles_ms=MappingProxyType({p: quantiles[p] * 1000 for p in self.extra_percentiles}),
                latency_samples=len(self._reservoir),
                by_class=MappingProxyType(dict(self._by_class)),
                by_status=MappingProxyType(dict(self._by_status)),
                by_kind=MappingProxyType(dict(self._by_kind)),
                checks_passed=self._checks_passed,
                checks_failed=self._checks_failed,
                requests_per_bucket=MappingProxyType(dict(self._buckets)),
                bucket_size=self.bucket_size,
            )
