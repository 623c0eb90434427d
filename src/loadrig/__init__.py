"""
loadrig: a small HTTP load-generation harness.

Runs open-loop (constant arrival rate) and closed-loop (staged VU ramp)
scenarios against HTTP targets, aggregates latency/status metrics with
bounded memory, and evaluates pass/fail thresholds at the end of the run.

Quick Start:
    >>> from pathlib import Path
    >>> from loadrig import LoadTestRun, load_scenario
    >>> scenario = load_scenario(Path("scenarios/rate_limit.json"))
    >>> report = LoadTestRun(scenario).run()
    >>> print(report.render())
    >>> report.exit_code
    0

Command line:
    $ loadrig run scenarios/smoke.json --out report.json

Global Configuration:
    >>> from loadrig import LOADRIG
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> timeout = LOADRIG.config.http.request_timeout
    >>>
    >>> # Custom configuration
    >>> LOADRIG.configure(
    ...     http={"request_timeout": 10},
    ...     run={"fail_fast_consecutive_failures": 50},
    ...     metrics={"reservoir_size": 50_000},
    ... )

Main Classes:
    - LoadTestRun: Drives one scenario through its run lifecycle.
    - RunReport: Final snapshot, threshold results and exit code.
    - ScenarioConfig: Immutable description of a run.
    - RequestSpec: The request issued by an iteration.
    - MetricsAggregator: Thread-safe outcome aggregation.
    - WorkerPool: Bounded VU slots.

Configuration:
    - LOADRIG: Global harness singleton for configuration.
    - LoadrigConfig: Root configuration dataclass.
    - HttpConfig, RunConfig, MetricsConfig: Configuration sections.
    - ConfigError, ConfigEnvVarError, ConfigValidationError: Configuration errors.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("loadrig")

from loadrig._config import (
    LOADRIG,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigError,
    ConfigValidationError,
    HttpConfig,
    LoadrigConfig,
    MetricsConfig,
    RunConfig,
)
from loadrig._context import RunContext, RunState, RunStateError
from loadrig._executor import RequestExecutor
from loadrig._http import HttpClient, RequestsHttpClient
from loadrig._metrics import MetricsAggregator, MetricSnapshot
from loadrig._models import DispatchEvent, Outcome, OutcomeKind
from loadrig._pool import VuSlot, WorkerPool
from loadrig._report import RunReport
from loadrig._runner import FatalRunError, LoadTestRun
from loadrig._scenario import ArrivalModel, RequestSpec, ScenarioConfig, Stage, load_scenario
from loadrig._scheduler import ConstantArrivalRateScheduler, RampingVusScheduler, VuTarget
from loadrig._thresholds import ThresholdResult, ThresholdSpec, evaluate, parse_thresholds

__all__ = [
    "__version__",
    # Configuration
    "LOADRIG",
    "LoadrigConfig",
    "ConfigEntry",
    "ConfigError",
    "ConfigEnvVarError",
    "ConfigValidationError",
    "HttpConfig",
    "RunConfig",
    "MetricsConfig",
    # Scenario
    "ArrivalModel",
    "ScenarioConfig",
    "RequestSpec",
    "Stage",
    "load_scenario",
    # Run
    "LoadTestRun",
    "RunContext",
    "RunState",
    "RunStateError",
    "FatalRunError",
    "RunReport",
    # Scheduling and execution
    "ConstantArrivalRateScheduler",
    "RampingVusScheduler",
    "VuTarget",
    "WorkerPool",
    "VuSlot",
    "RequestExecutor",
    "DispatchEvent",
    "Outcome",
    "OutcomeKind",
    # HTTP Client
    "HttpClient",
    "RequestsHttpClient",
    # Metrics and thresholds
    "MetricsAggregator",
    "MetricSnapshot",
    "ThresholdSpec",
    "ThresholdResult",
    "evaluate",
    "parse_thresholds",
]
