"""
Virtual-user worker pool.

The pool owns the VU slots and the worker threads executing iterations. It
starts with `pre_allocated_vus` idle slots, allocates more lazily up to
`max_vus`, and never lets more than `max_vus` slots be active at once.

Open-loop callers use the non-blocking `dispatch()`: when every slot is busy
it returns None immediately and the caller counts a dropped iteration.
Closed-loop callers use `acquire(blocking=True)` and wait for a free slot.

Example:
    >>> pool = WorkerPool(pre_allocated_vus=10, max_vus=50)
    >>> if pool.dispatch(run_iteration, event) is None:
    ...     metrics.record_dropped(event)
    >>> pool.shutdown()
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VuSlot:
    """
    One virtual-user execution slot.

    Attributes:
        vu_id: Zero-based identifier, stable for the slot's lifetime.
    """
    vu_id: int


class WorkerPool:
    """
    Bounded set of VU slots backed by a thread pool.

    Slot accounting is guarded by a single condition variable; worker threads
    come from a `ThreadPoolExecutor` sized `max_vus`.

    Args:
        pre_allocated_vus: Slots allocated up front (>= 0).
        max_vus: Upper bound on concurrently active slots (>= pre_allocated_vus, > 0).
        name: Prefix for worker thread names.
    """

    def __init__(self, pre_allocated_vus: int, max_vus: int, name: str = "loadrig-vu"):
        assert pre_allocated_vus >= 0, "pre_allocated_vus must be >= 0."
        assert max_vus > 0, "max_vus must be greater than 0."
        assert max_vus >= pre_allocated_vus, "max_vus must be >= pre_allocated_vus."

        self.pre_allocated_vus = pre_allocated_vus
        self.max_vus = max_vus

        self._condition = threading.Condition()
        self._idle: deque[VuSlot] = deque(VuSlot(vu_id) for vu_id in range(pre_allocated_vus))
        self._allocated = pre_allocated_vus
        self._active = 0
        self._peak_active = 0
        self._executor = ThreadPoolExecutor(max_workers=max_vus, thread_name_prefix=name)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def allocated(self) -> int:
        """Slots allocated so far (idle + active)."""
        with self._condition:
            return self._allocated

    @property
    def active(self) -> int:
        """Slots currently executing work."""
        with self._condition:
            return self._active

    @property
    def peak_active(self) -> int:
        """Highest number of simultaneously active slots observed."""
        with self._condition:
            return self._peak_active

    # -------------------------------------------------------------------------
    # Slots
    # -------------------------------------------------------------------------

    def acquire(self, blocking: bool = False, timeout: float | None = None) -> VuSlot | None:
        """
        Claim a free slot.

        Args:
            blocking: Wait for a slot to free up when the pool is at capacity.
            timeout: Maximum seconds to wait when blocking. None waits forever.

        Returns:
            The claimed slot, or None if the pool is at capacity (non-blocking)
            or the timeout elapsed (blocking).
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                slot = self._take_slot()
                if slot is not None or not blocking:
                    return slot
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._condition.wait(remaining)

    def _take_slot(self) -> VuSlot | None:
        if self._idle:
            slot = self._idle.popleft()
        elif self._allocated < self.max_vus:
            slot = VuSlot(self._allocated)
            self._allocated += 1
            logger.debug(f"Allocated VU slot #{slot.vu_id} ({self._allocated}/{self.max_vus}).")
        else:
            return None

        self._active += 1
        self._peak_active = max(self._peak_active, self._active)
        assert self._active <= self.max_vus, \
            f"🌀 Sanity check | Active VUs ({self._active}) exceeded max_vus ({self.max_vus})."
        return slot

    def release(self, slot: VuSlot) -> None:
        """Return a slot to the pool and wake one waiter."""
        with self._condition:
            assert self._active > 0, "🌀 Sanity check | Released a slot while no slot was active."
            assert slot not in self._idle, f"🌀 Sanity check | VU slot #{slot.vu_id} released twice."
            self._active -= 1
            self._idle.append(slot)
            self._condition.notify()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def dispatch(self, work: Callable[..., Any], *args: Any) -> Future[Any] | None:
        """
        Run `work(slot, *args)` on a free slot without blocking.

        The slot is released when `work` returns or raises.

        Returns:
            The future of the submitted work, or None if every slot is busy.
        """
        slot = self.acquire(blocking=False)
        if slot is None:
            return None
        try:
            return self._executor.submit(self._run_on_slot, slot, work, *args)
        except RuntimeError:
            # Executor already shut down
            self.release(slot)
            raise

    def _run_on_slot(self, slot: VuSlot, work: Callable[..., Any], *args: Any) -> Any:
        try:
            return work(slot, *args)
        finally:
            self.release(slot)

    def spawn(self, work: Callable[..., Any], *args: Any) -> Future[Any]:
        """
        Run `work(*args)` on a worker thread without claiming a slot.

        Used by closed-loop VUs, which claim their slot themselves for their whole lifetime.
        """
        return self._executor.submit(work, *args)

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        """Stop accepting work and optionally wait for running work to finish."""
        self._executor.shutdown(wait=wait, cancel_futures=cancel_futures)
        with self._condition:
            self._condition.notify_all()
