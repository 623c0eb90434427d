"""
Arrival scheduling.

Schedulers decide when iterations start, independently of how they are executed:

- ConstantArrivalRateScheduler: Open loop. Emits one DispatchEvent every
  `time_unit / rate` seconds for the scenario duration, never waiting for
  earlier iterations to complete.
- RampingVusScheduler: Closed loop. Emits target-concurrency ticks obtained by
  linear interpolation across the scenario stages; VUs start iterations
  themselves whenever they are free.

Both schedulers follow an absolute timeline anchored at the run start, so
slow consumers never accumulate drift, and both stop as soon as the run's
stop event is set.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass

from loadrig._context import RunContext
from loadrig._models import DispatchEvent
from loadrig._scenario import ScenarioConfig, Stage

logger = logging.getLogger(__name__)


class ConstantArrivalRateScheduler:
    """
    Open-loop scheduler emitting events at a constant rate.

    Event *i* is due at `i * interval` for every `i * interval < duration`,
    so a run emits `ceil(duration / interval)` events.

    Example:
        >>> scheduler = ConstantArrivalRateScheduler(rate=5, time_unit=60.0, duration=60.0)
        >>> list(scheduler.offsets())
        [0.0, 12.0, 24.0, 36.0, 48.0]
    """

    def __init__(self, rate: float, time_unit: float, duration: float):
        assert rate > 0, "rate must be greater than 0."
        assert time_unit > 0, "time_unit must be greater than 0."
        assert duration > 0, "duration must be greater than 0."

        self.rate = rate
        self.time_unit = time_unit
        self.duration = duration
        self.interval = time_unit / rate

    @classmethod
    def from_scenario(cls, scenario: ScenarioConfig) -> ConstantArrivalRateScheduler:
        return cls(rate=scenario.rate, time_unit=scenario.time_unit, duration=scenario.duration)

    def offsets(self) -> Iterator[float]:
        """Yield the due offsets (seconds from start) of every event, without waiting."""
        index = 0
        while True:
            offset = index * self.interval
            # Tolerate float error so that e.g. 5 events/60s never yields a 6th at 59.99999
            if offset >= self.duration - 1e-9:
                return
            yield offset
            index += 1

    def events(self, context: RunContext) -> Iterator[DispatchEvent]:
        """
        Yield DispatchEvents in real time.

        Blocks between events; returns early when `context.stop_event` is set.

        Args:
            context: The run context (clock must be started).
        """
        for offset in self.offsets():
            if context.wait_until(offset):
                logger.debug(f"{context.log_prefix} | SCHED | Stop requested, no more events after offset={offset:.3f}s")
                return
            yield DispatchEvent(sequence=context.next_sequence(), scheduled_at=offset)


@dataclass(frozen=True)
class VuTarget:
    """
    A target-concurrency tick emitted by RampingVusScheduler.

    Attributes:
        elapsed: Offset in seconds from the run start.
        target: Number of VUs that should be active at that instant.
    """
    elapsed: float
    target: int


class RampingVusScheduler:
    """
    Closed-loop scheduler interpolating the VU count across stages.

    Within each stage the target moves linearly from the previous stage's
    target (or `start_vus` for the first stage) to the stage's own target.

    Example:
        >>> scheduler = RampingVusScheduler(stages=(Stage(30, 20), Stage(60, 20), Stage(30, 0)))
        >>> scheduler.target_at(15.0)
        10
        >>> scheduler.target_at(60.0)
        20
    """

    def __init__(self, stages: tuple[Stage, ...], start_vus: int = 0, tick_interval: float = 0.1):
        assert stages, "at least one stage is required."
        assert all(stage.duration > 0 for stage in stages), "stage durations must be greater than 0."
        assert start_vus >= 0, "start_vus must be >= 0."
        assert tick_interval > 0, "tick_interval must be greater than 0."

        self.stages = stages
        self.start_vus = start_vus
        self.tick_interval = tick_interval
        self.duration = sum(stage.duration for stage in stages)

    @classmethod
    def from_scenario(cls, scenario: ScenarioConfig, tick_interval: float) -> RampingVusScheduler:
        return cls(stages=scenario.stages, start_vus=scenario.start_vus, tick_interval=tick_interval)

    @property
    def max_target(self) -> int:
        return max([self.start_vus, *(stage.target for stage in self.stages)])

    def target_at(self, elapsed: float) -> int:
        """Return the interpolated VU target `elapsed` seconds after start."""
        stage_start = 0.0
        previous = self.start_vus
        for stage in self.stages:
            stage_end = stage_start + stage.duration
            if elapsed < stage_end:
                progress = max(0.0, elapsed - stage_start) / stage.duration
                return round(previous + (stage.target - previous) * progress)
            previous = stage.target
            stage_start = stage_end
        return self.stages[-1].target

    def ticks(self, context: RunContext) -> Iterator[VuTarget]:
        """
        Yield VuTarget ticks every `tick_interval` seconds until the ramp ends.

        Returns early when `context.stop_event` is set.

        Args:
            context: The run context (clock must be started).
        """
        index = 0
        while True:
            offset = index * self.tick_interval
            if offset >= self.duration:
                return
            if context.wait_until(offset):
                logger.debug(f"{context.log_prefix} | SCHED | Stop requested, ramp interrupted at {offset:.3f}s")
                return
            yield VuTarget(elapsed=offset, target=self.target_at(offset))
            index += 1
