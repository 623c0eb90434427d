"""
Run report.

A `RunReport` is what a finished run hands back: the terminal state, the final
metric snapshot and every threshold result. It also owns the process exit
code the CLI returns and the text/JSON renderings.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loadrig._context import RunState
from loadrig._metrics import MetricSnapshot
from loadrig._scenario import ScenarioConfig
from loadrig._thresholds import ThresholdResult, all_passed
from loadrig._utils import save_json_file

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_CANCELLED = 3
EXIT_THRESHOLDS_FAILED = 99


@dataclass(frozen=True)
class RunReport:
    """
    Final result of a load test run.

    Attributes:
        run_id: Identifier of the run.
        scenario: The scenario that was run.
        state: Terminal state (COMPLETED or CANCELLED).
        snapshot: Final metric snapshot.
        thresholds: One result per declared threshold, in declaration order.
        dispatched: Iterations the scheduler asked for. Every one of them is either
            completed (`snapshot.requests`), dropped (`snapshot.dropped_iterations`)
            or interrupted.
        interrupted_iterations: Accepted iterations whose outcome never made it into
            the snapshot because they were still running when the run ended
            (abandoned after `graceful_stop`, or cut by a hard cancel).
        peak_vus: Highest number of simultaneously busy VUs.
        wall_time: Seconds from run start to report creation.
        cancel_reason: Why the run was cancelled, None when it completed.

    Example:
        >>> report = LoadTestRun(scenario).run()
        >>> print(report.render())
        >>> sys.exit(report.exit_code)
    """
    run_id: str
    scenario: ScenarioConfig
    state: RunState
    snapshot: MetricSnapshot
    thresholds: tuple[ThresholdResult, ...] = ()
    dispatched: int = 0
    interrupted_iterations: int = 0
    peak_vus: int = 0
    wall_time: float = 0.0
    cancel_reason: str | None = None

    def __post_init__(self) -> None:
        assert self.state.is_terminal, f"🌀 Sanity check | Report created for a non-terminal run ({self.state})."
        assert self.interrupted_iterations >= 0, "🌀 Sanity check | interrupted_iterations can not be negative."

    @property
    def is_cancelled(self) -> bool:
        return self.state is RunState.CANCELLED

    @property
    def thresholds_passed(self) -> bool:
        """True if every threshold passed (vacuously True when none was declared)."""
        return all_passed(self.thresholds)

    @property
    def passed(self) -> bool:
        """True if the run completed and every threshold passed."""
        return not self.is_cancelled and self.thresholds_passed

    @property
    def exit_code(self) -> int:
        """0 on pass, 99 on threshold failure, 3 when the run was cancelled."""
        if self.is_cancelled:
            return EXIT_CANCELLED
        return EXIT_OK if self.thresholds_passed else EXIT_THRESHOLDS_FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "run_id": self.run_id,
            "scenario": self.scenario.name,
            "model": str(self.scenario.model),
            "state": str(self.state),
            "passed": self.passed,
            "exit_code": self.exit_code,
            "cancel_reason": self.cancel_reason,
            "dispatched": self.dispatched,
            "interrupted_iterations": self.interrupted_iterations,
            "peak_vus": self.peak_vus,
            "wall_time": self.wall_time,
            "metrics": self.snapshot.to_dict(),
            "thresholds": [result.to_dict() for result in self.thresholds],
        }

    def render_lines(self) -> list[str]:
        """Render the report as human-readable lines."""
        snap = self.snapshot
        status = "✅ PASSED" if self.passed else ("⚠️ CANCELLED" if self.is_cancelled else "❌ FAILED")

        lines = [
            f"Scenario '{self.scenario.name}' ({self.scenario.model}) {status}",
            f"   ├ run_id             = {self.run_id}",
            f"   ├ state              = {self.state}",
        ]
        if self.cancel_reason:
            lines.append(f"   ├ cancel_reason      = {self.cancel_reason}")
        lines += [
            f"   ├ wall_time          = {self.wall_time:.2f}s",
            f"   ├ iterations         = {snap.requests} completed, {snap.dropped_iterations} dropped, "
            f"{self.interrupted_iterations} interrupted, {self.dispatched} dispatched",
            f"   ├ peak_vus           = {self.peak_vus}",
            f"   ├ request_rate       = {snap.request_rate:.2f}/s (peak {snap.peak_bucket_rate:.2f}/s)",
            f"   ├ error_rate         = {snap.error_rate:.2%}",
            f"   ├ http_req_duration  = avg={snap.latency_avg_ms:.1f}ms min={snap.latency_min_ms:.1f}ms "
            f"med={snap.latency_med_ms:.1f}ms max={snap.latency_max_ms:.1f}ms "
            f"p(90)={snap.latency_p90_ms:.1f}ms p(95)={snap.latency_p95_ms:.1f}ms p(99)={snap.latency_p99_ms:.1f}ms",
        ]
        if snap.checks_passed or snap.checks_failed:
            lines.append(f"   ├ checks             = {snap.checks_passed} passed, {snap.checks_failed} failed")

        classes = sorted(snap.by_class.items())
        statuses = sorted(snap.by_status.items())
        lines.append("   ├ by class")
        for idx, (status_class, total) in enumerate(classes):
            icon = "└" if idx == (len(classes) - 1) else "├"
            lines.append(f"   │    {icon} {status_class:<7} = {total}")
        lines.append("   ├ by status")
        for idx, (code, total) in enumerate(statuses):
            icon = "└" if idx == (len(statuses) - 1) else "├"
            lines.append(f"   │    {icon} {code:<7} = {total}")

        lines.append("   └ thresholds" + ("" if self.thresholds else " (none)"))
        for idx, result in enumerate(self.thresholds):
            icon = "└" if idx == (len(self.thresholds) - 1) else "├"
            mark = "✅" if result.passed else "❌"
            lines.append(f"        {icon} {mark} {result.spec.name} (observed: {_format_observed(result.observed)})")
        return lines

    def render(self) -> str:
        return "\n".join(self.render_lines())

    def write_to_file(self, file_path: Path) -> None:
        """
        Save the report as JSON.

        Raises:
            RuntimeError: If the file cannot be written.
        """
        save_json_file(self.to_dict(), file_path)


def _format_observed(observed: Any) -> str:
    if isinstance(observed, float):
        return f"{observed:.4g}"
    if isinstance(observed, tuple):
        return "{" + ", ".join(str(value) for value in observed) + "}"
    return str(observed)
