"""Tests for the VU worker pool."""

import threading
import time

import pytest

from loadrig._pool import VuSlot, WorkerPool


class TestWorkerPoolSlots:
    """Tests for slot accounting."""

    def test_pre_allocated_slots(self):
        pool = WorkerPool(pre_allocated_vus=3, max_vus=5)
        try:
            assert pool.allocated == 3
            assert pool.active == 0
        finally:
            pool.shutdown()

    def test_lazy_allocation_up_to_max(self):
        pool = WorkerPool(pre_allocated_vus=1, max_vus=3)
        try:
            slots = [pool.acquire() for _ in range(3)]
            assert [slot.vu_id for slot in slots] == [0, 1, 2]
            assert pool.allocated == 3
            assert pool.active == 3
            assert pool.acquire() is None
        finally:
            pool.shutdown()

    def test_release_makes_slot_reusable(self):
        pool = WorkerPool(pre_allocated_vus=1, max_vus=1)
        try:
            slot = pool.acquire()
            assert pool.acquire() is None
            pool.release(slot)
            assert pool.acquire() == slot
            assert pool.peak_active == 1
        finally:
            pool.shutdown()

    def test_double_release_is_detected(self):
        pool = WorkerPool(pre_allocated_vus=0, max_vus=2)
        try:
            first = pool.acquire()
            pool.acquire()
            pool.release(first)
            with pytest.raises(AssertionError, match="released twice"):
                pool.release(first)
        finally:
            pool.shutdown()

    def test_blocking_acquire_waits_for_release(self):
        pool = WorkerPool(pre_allocated_vus=1, max_vus=1)
        try:
            slot = pool.acquire()
            threading.Timer(0.1, pool.release, args=(slot,)).start()

            start = time.monotonic()
            acquired = pool.acquire(blocking=True, timeout=2.0)

            assert acquired == slot
            assert time.monotonic() - start >= 0.05
        finally:
            pool.shutdown()

    def test_blocking_acquire_times_out(self):
        pool = WorkerPool(pre_allocated_vus=1, max_vus=1)
        try:
            pool.acquire()
            assert pool.acquire(blocking=True, timeout=0.05) is None
        finally:
            pool.shutdown()

    def test_invalid_bounds(self):
        with pytest.raises(AssertionError, match="max_vus must be >= pre_allocated_vus"):
            WorkerPool(pre_allocated_vus=5, max_vus=2)
        with pytest.raises(AssertionError, match="max_vus must be greater than 0"):
            WorkerPool(pre_allocated_vus=0, max_vus=0)


class TestWorkerPoolDispatch:
    """Tests for non-blocking dispatch."""

    def test_dispatch_runs_work_on_a_slot(self):
        pool = WorkerPool(pre_allocated_vus=1, max_vus=1)
        try:
            future = pool.dispatch(lambda slot, value: (slot, value * 2), 21)
            slot, result = future.result(timeout=2)
            assert isinstance(slot, VuSlot)
            assert result == 42
        finally:
            pool.shutdown()
        assert pool.active == 0

    def test_dispatch_returns_none_when_saturated(self):
        pool = WorkerPool(pre_allocated_vus=2, max_vus=2)
        release = threading.Event()
        try:
            futures = [pool.dispatch(lambda slot: release.wait(5)) for _ in range(2)]
            assert all(f is not None for f in futures)
            assert pool.dispatch(lambda slot: None) is None
        finally:
            release.set()
            pool.shutdown()

    def test_slot_is_released_when_work_raises(self):
        pool = WorkerPool(pre_allocated_vus=1, max_vus=1)

        def boom(slot):
            raise RuntimeError("boom")

        try:
            future = pool.dispatch(boom)
            with pytest.raises(RuntimeError, match="boom"):
                future.result(timeout=2)
            assert pool.dispatch(lambda slot: "ok").result(timeout=2) == "ok"
        finally:
            pool.shutdown()

    def test_active_never_exceeds_max_vus(self):
        max_vus = 4
        pool = WorkerPool(pre_allocated_vus=0, max_vus=max_vus)
        lock = threading.Lock()
        running = 0
        observed_peak = 0

        def work(slot):
            nonlocal running, observed_peak
            with lock:
                running += 1
                observed_peak = max(observed_peak, running)
            time.sleep(0.02)
            with lock:
                running -= 1

        accepted = 0
        dropped = 0
        try:
            for _ in range(50):
                if pool.dispatch(work) is None:
                    dropped += 1
                else:
                    accepted += 1
                time.sleep(0.002)
        finally:
            pool.shutdown()

        assert accepted + dropped == 50
        assert dropped > 0
        assert observed_peak <= max_vus
        assert pool.peak_active <= max_vus

    def test_spawn_does_not_claim_a_slot(self):
        pool = WorkerPool(pre_allocated_vus=1, max_vus=1)
        try:
            assert pool.spawn(lambda: pool.active).result(timeout=2) == 0
        finally:
            pool.shutdown()
