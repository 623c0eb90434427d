"""Tests for metrics aggregation."""

import random
import threading
import unittest

import pytest

from loadrig._metrics import LatencyReservoir, MetricsAggregator, MetricSnapshot
from loadrig._models import DispatchEvent, Outcome, OutcomeKind


def make_outcome(
    sequence: int = 0,
    status_code: int | None = 200,
    kind: OutcomeKind | None = None,
    latency: float = 0.1,
    started_at: float = 0.0,
    check_passed: bool | None = None,
) -> Outcome:
    if kind is None:
        kind = OutcomeKind.from_status(status_code)
    return Outcome(
        sequence=sequence,
        vu_id=0,
        kind=kind,
        status_code=status_code,
        latency=latency,
        started_at=started_at,
        check_passed=check_passed,
    )


# =============================================================================
# LatencyReservoir
# =============================================================================


class TestLatencyReservoir:
    """Tests for the bounded latency reservoir."""

    def test_keeps_everything_below_capacity(self):
        reservoir = LatencyReservoir(capacity=10)
        for value in range(5):
            reservoir.offer(float(value))
        assert len(reservoir) == 5
        assert reservoir.seen == 5

    def test_memory_is_bounded(self):
        reservoir = LatencyReservoir(capacity=100, rng=random.Random(1))
        for value in range(10_000):
            reservoir.offer(float(value))
        assert len(reservoir) == 100
        assert reservoir.seen == 10_000

    def test_sample_stays_representative(self):
        reservoir = LatencyReservoir(capacity=2_000, rng=random.Random(42))
        for value in range(100_000):
            reservoir.offer(float(value))
        quantiles = reservoir.quantiles((50.0,))
        assert quantiles[50.0] == pytest.approx(50_000, rel=0.1)

    def test_exact_quantiles_below_capacity(self):
        reservoir = LatencyReservoir(capacity=1_000)
        for value in range(1, 101):
            reservoir.offer(float(value))
        quantiles = reservoir.quantiles((50.0, 95.0))
        assert quantiles[50.0] == pytest.approx(50.5)
        assert quantiles[95.0] == pytest.approx(95.05)

    def test_empty_quantiles_are_zero(self):
        assert LatencyReservoir(capacity=10).quantiles((95.0,)) == {95.0: 0.0}

    def test_invalid_capacity(self):
        with pytest.raises(AssertionError, match="capacity must be greater than 0"):
            LatencyReservoir(capacity=0)


# =============================================================================
# MetricsAggregator
# =============================================================================


class TestMetricsAggregator(unittest.TestCase):
    """Tests for MetricsAggregator ingest/snapshot."""

    def test_empty_snapshot(self):
        snapshot = MetricsAggregator().snapshot()
        self.assertEqual(snapshot.requests, 0)
        self.assertEqual(snapshot.error_rate, 0.0)
        self.assertEqual(snapshot.latency_p95_ms, 0.0)
        self.assertEqual(dict(snapshot.by_class), {})

    def test_counts_and_histograms(self):
        aggregator = MetricsAggregator()
        aggregator.ingest(make_outcome(0, 200))
        aggregator.ingest(make_outcome(1, 302))
        aggregator.ingest(make_outcome(2, 429))
        aggregator.ingest(make_outcome(3, 503))
        aggregator.ingest(make_outcome(4, None, kind=OutcomeKind.TIMEOUT))
        aggregator.ingest(make_outcome(5, None, kind=OutcomeKind.NETWORK_ERROR))

        snapshot = aggregator.snapshot()

        self.assertEqual(snapshot.requests, 6)
        self.assertEqual(snapshot.successes, 2)
        self.assertEqual(snapshot.failures, 4)
        self.assertEqual(
            dict(snapshot.by_class),
            {"2xx": 1, "3xx": 1, "4xx": 1, "5xx": 1, "timeout": 1, "error": 1},
        )
        self.assertEqual(dict(snapshot.by_status), {200: 1, 302: 1, 429: 1, 503: 1})
        self.assertEqual(snapshot.by_kind["TIMEOUT"], 1)
        self.assertAlmostEqual(snapshot.error_rate, 4 / 6)

    def test_latency_aggregates_in_milliseconds(self):
        aggregator = MetricsAggregator()
        for i, latency in enumerate((0.010, 0.020, 0.030)):
            aggregator.ingest(make_outcome(i, latency=latency))

        snapshot = aggregator.snapshot()

        self.assertAlmostEqual(snapshot.latency_min_ms, 10.0)
        self.assertAlmostEqual(snapshot.latency_max_ms, 30.0)
        self.assertAlmostEqual(snapshot.latency_avg_ms, 20.0)
        self.assertAlmostEqual(snapshot.latency_med_ms, 20.0)
        self.assertEqual(snapshot.latency_samples, 3)

    def test_fixed_latency_percentiles(self):
        aggregator = MetricsAggregator()
        for i in range(200):
            aggregator.ingest(make_outcome(i, latency=0.8))
        snapshot = aggregator.snapshot()
        self.assertAlmostEqual(snapshot.latency_p95_ms, 800.0)
        self.assertAlmostEqual(snapshot.latency_percentile_ms(99), 800.0)
        self.assertIsNone(snapshot.latency_percentile_ms(97))

    def test_declared_extra_percentiles(self):
        aggregator = MetricsAggregator(percentiles=(99.9, 95, 42))
        for i in range(1000):
            aggregator.ingest(make_outcome(i, latency=0.001 * (i + 1)))

        snapshot = aggregator.snapshot()

        self.assertEqual(aggregator.extra_percentiles, (42.0, 99.9))
        self.assertEqual(set(snapshot.latency_percentiles_ms), {42.0, 99.9})
        self.assertAlmostEqual(snapshot.latency_percentile_ms(99.9), 999.001, places=2)
        self.assertAlmostEqual(snapshot.latency_percentile_ms(42), 420.58, places=2)
        self.assertEqual(snapshot.to_dict()["latency_ms"]["p99.9"], snapshot.latency_percentile_ms(99.9))

    def test_checks(self):
        aggregator = MetricsAggregator()
        aggregator.ingest(make_outcome(0, 200, check_passed=True))
        aggregator.ingest(make_outcome(1, 500, check_passed=False))
        aggregator.ingest(make_outcome(2, 200, check_passed=None))
        snapshot = aggregator.snapshot()
        self.assertEqual((snapshot.checks_passed, snapshot.checks_failed), (1, 1))
        self.assertAlmostEqual(snapshot.checks_rate, 0.5)

    def test_dropped_iterations(self):
        aggregator = MetricsAggregator()
        aggregator.record_dropped(DispatchEvent(sequence=0, scheduled_at=0.0))
        aggregator.record_dropped(DispatchEvent(sequence=1, scheduled_at=0.1))
        snapshot = aggregator.snapshot()
        self.assertEqual(snapshot.dropped_iterations, 2)
        self.assertEqual(snapshot.requests, 0)

    def test_throughput_buckets_use_completion_time(self):
        aggregator = MetricsAggregator(bucket_size=1.0)
        aggregator.ingest(make_outcome(0, started_at=0.1, latency=0.1))  # finishes at 0.2
        aggregator.ingest(make_outcome(1, started_at=0.5, latency=0.6))  # finishes at 1.1
        aggregator.ingest(make_outcome(2, started_at=1.2, latency=0.1))  # finishes at 1.3

        snapshot = aggregator.snapshot()

        self.assertEqual(dict(snapshot.requests_per_bucket), {0.0: 1, 1.0: 2})
        self.assertAlmostEqual(snapshot.peak_bucket_rate, 2.0)
        self.assertAlmostEqual(snapshot.elapsed, 1.2)

    def test_out_of_order_ingest(self):
        aggregator = MetricsAggregator()
        aggregator.ingest(make_outcome(1, started_at=2.0, latency=0.5))
        aggregator.ingest(make_outcome(0, started_at=1.0, latency=0.5))
        snapshot = aggregator.snapshot()
        self.assertEqual(snapshot.first_started_at, 1.0)
        self.assertEqual(snapshot.last_finished_at, 2.5)

    def test_snapshot_is_idempotent(self):
        aggregator = MetricsAggregator(rng=random.Random(3))
        for i in range(50):
            aggregator.ingest(make_outcome(i, status_code=200 if i % 5 else 500, latency=i / 1000))
        self.assertEqual(aggregator.snapshot(), aggregator.snapshot())

    def test_snapshot_is_copy_on_read(self):
        aggregator = MetricsAggregator()
        aggregator.ingest(make_outcome(0, 200))
        first = aggregator.snapshot()

        aggregator.ingest(make_outcome(1, 500))

        self.assertEqual(first.requests, 1)
        self.assertEqual(dict(first.by_status), {200: 1})
        with self.assertRaises(TypeError):
            first.by_status[500] = 1  # type: ignore[index]

    def test_concurrent_ingest_loses_nothing(self):
        aggregator = MetricsAggregator()
        threads_count = 8
        per_thread = 500

        def worker(offset: int) -> None:
            for i in range(per_thread):
                aggregator.ingest(make_outcome(offset * per_thread + i, 200 if i % 2 else 429))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snapshot = aggregator.snapshot()
        self.assertEqual(snapshot.requests, threads_count * per_thread)
        self.assertEqual(sum(snapshot.by_class.values()), snapshot.requests)
        self.assertEqual(snapshot.by_status[429], threads_count * per_thread // 2)

    def test_snapshot_to_dict(self):
        aggregator = MetricsAggregator()
        aggregator.ingest(make_outcome(0, 200))
        data = aggregator.snapshot().to_dict()
        self.assertEqual(data["requests"], 1)
        self.assertEqual(data["by_status"], {"200": 1})
        self.assertIn("p95", data["latency_ms"])


class TestMetricSnapshot:
    """Tests for MetricSnapshot derived values."""

    def test_request_rate_without_elapsed_time(self):
        assert MetricSnapshot(requests=3).request_rate == 3.0

    def test_request_rate(self):
        snapshot = MetricSnapshot(requests=20, first_started_at=1.0, last_finished_at=11.0)
        assert snapshot.request_rate == pytest.approx(2.0)
