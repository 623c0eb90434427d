"""
Scenario documents.

A scenario is the immutable description of one test run: the arrival model,
its rate or stages, the VU bounds, the requests to issue and the thresholds to
evaluate. It is parsed once, validated before the run starts, and read-only
for the run's lifetime.

Scenario files are JSON. Keys are accepted in k6 camelCase or snake_case.

Example (open loop, 100 req/min against a health endpoint):
    >>> scenario = ScenarioConfig.from_dict({
    ...     "model": "constant-arrival-rate",
    ...     "rate": 100, "timeUnit": "1m", "duration": "1m",
    ...     "preAllocatedVUs": 10, "maxVUs": 50,
    ...     "request": {"url": "http://localhost:8999/health"},
    ...     "checks": {"status": [200, 429]},
    ...     "sleep": "1s",
    ... })

Example (closed loop, staged ramp):
    >>> scenario = load_scenario(Path("smoke.json"))
"""

from __future__ import annotations

import enum
import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loadrig._config import LOADRIG, ConfigError, ConfigValidationError
from loadrig._thresholds import ThresholdSpec, parse_thresholds
from loadrig._utils import parse_duration

_SECTION = "scenario"


class ArrivalModel(enum.StrEnum):
    """
    How new iterations are started.

    Attributes:
        CONSTANT_ARRIVAL_RATE: Open loop. Iterations start at a fixed rate,
            whether or not earlier ones have completed.
        RAMPING_VUS: Closed loop. A staged number of VUs each run iterations back to back.
    """
    CONSTANT_ARRIVAL_RATE = "constant-arrival-rate"
    RAMPING_VUS = "ramping-vus"

    def __str__(self) -> str:
        return self.value

    @property
    def is_open_loop(self) -> bool:
        return self is ArrivalModel.CONSTANT_ARRIVAL_RATE

    @classmethod
    def parse(cls, value: str) -> ArrivalModel:
        """
        Resolve a model name, accepting common aliases.

        Raises:
            ConfigValidationError: If the name is unknown.
        """
        normalized = str(value).strip().lower().replace("_", "-")
        aliases = {
            "constant-arrival-rate": cls.CONSTANT_ARRIVAL_RATE,
            "constant-rate": cls.CONSTANT_ARRIVAL_RATE,
            "open-loop": cls.CONSTANT_ARRIVAL_RATE,
            "ramping-vus": cls.RAMPING_VUS,
            "staged-ramp": cls.RAMPING_VUS,
            "closed-loop": cls.RAMPING_VUS,
        }
        if normalized not in aliases:
            raise ConfigValidationError(
                "model", value,
                f"Must be one of: {sorted(aliases)}.", section=_SECTION
            )
        return aliases[normalized]


@dataclass(frozen=True)
class Stage:
    """
    One step of a staged ramp: move linearly to `target` VUs over `duration` seconds.

    Attributes:
        duration: Stage length in seconds (> 0).
        target: VU count reached at the end of the stage (>= 0).
    """
    duration: float
    target: int


@dataclass(frozen=True)
class RequestSpec:
    """
    The request issued by one iteration.

    Attributes:
        url: Absolute http(s) URL of the target.
        method: HTTP method (default GET).
        headers: Extra request headers.
        body: JSON-serializable request body, or None.
        timeout: Per-request timeout in seconds. None falls back to
            LOADRIG.config.http.request_timeout.
        expected_statuses: Status codes the check accepts. Empty means no check.
        name: Label used in logs and outcomes (defaults to "METHOD url").
    """
    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    timeout: float | None = None
    expected_statuses: frozenset[int] = frozenset()
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or f"{self.method} {self.url}"

    def effective_timeout(self) -> float:
        return self.timeout if self.timeout is not None else LOADRIG.config.http.request_timeout

    def check(self, status_code: int | None) -> bool | None:
        """Apply the status check. Returns None when no check is declared."""
        if not self.expected_statuses:
            return None
        return status_code is not None and status_code in self.expected_statuses


@dataclass(frozen=True)
class ScenarioConfig:
    """
    Immutable description of one test run.

    Attributes:
        name: Scenario name (used in logs and reports).
        model: Arrival model.
        requests: Requests issued by iterations, cycled round-robin.
        rate: Iterations per `time_unit` (constant-arrival-rate only).
        time_unit: Seconds the `rate` is expressed over (constant-arrival-rate only).
        duration: Total run duration in seconds. For ramping-vus this is the
            sum of the stage durations.
        stages: Ramp stages (ramping-vus only).
        start_vus: VUs at the start of the first stage (ramping-vus only).
        pre_allocated_vus: VU slots allocated up front.
        max_vus: Upper bound on concurrently active VUs.
        think_time: Pause in seconds after each iteration.
        think_time_jitter: Fraction (0-1) by which each pause randomly varies, e.g. 0.2 for +/- 20%.
        graceful_stop: Seconds in-flight iterations may keep running after `duration`.
        thresholds: Pass/fail conditions evaluated at run end.
        seed: Seed for the run's RNG (reservoir sampling, think-time jitter).
    """
    name: str
    model: ArrivalModel
    requests: tuple[RequestSpec, ...]
    rate: float = 0.0
    time_unit: float = 1.0
    duration: float = 0.0
    stages: tuple[Stage, ...] = ()
    start_vus: int = 0
    pre_allocated_vus: int = 0
    max_vus: int = 0
    think_time: float = 0.0
    think_time_jitter: float = 0.0
    graceful_stop: float = 30.0
    thresholds: tuple[ThresholdSpec, ...] = ()
    seed: int | None = None

    @property
    def interval(self) -> float:
        """Seconds between two dispatch events (constant-arrival-rate only)."""
        assert self.model.is_open_loop, "interval only applies to constant-arrival-rate scenarios."
        return self.time_unit / self.rate

    @property
    def expected_iterations(self) -> int:
        """Number of dispatch events a constant-arrival-rate run emits over its duration."""
        return math.ceil(self.duration / self.interval - 1e-9)

    def validate(self) -> ScenarioConfig:
        """
        Validate cross-field invariants.

        Raises:
            ConfigValidationError: If any invariant is broken.
        """
        if not self.requests:
            raise ConfigValidationError("requests", self.requests, "At least one request is required.", section=_SECTION)
        for request in self.requests:
            if not request.url.startswith(("http://", "https://")):
                raise ConfigValidationError(
                    "url", request.url, "Must start with 'http://' or 'https://'.", section=_SECTION
                )
            if request.timeout is not None and request.timeout <= 0:
                raise ConfigValidationError("timeout", request.timeout, "Must be greater than 0.", section=_SECTION)

        if self.pre_allocated_vus < 0:
            raise ConfigValidationError(
                "pre_allocated_vus", self.pre_allocated_vus, "Must be >= 0.", section=_SECTION
            )
        if self.max_vus < self.pre_allocated_vus:
            raise ConfigValidationError(
                "max_vus", self.max_vus,
                f"Must be >= pre_allocated_vus ({self.pre_allocated_vus}).", section=_SECTION
            )
        if self.max_vus <= 0:
            raise ConfigValidationError("max_vus", self.max_vus, "Must be greater than 0.", section=_SECTION)
        if self.think_time < 0:
            raise ConfigValidationError("think_time", self.think_time, "Must be >= 0.", section=_SECTION)
        if not 0 <= self.think_time_jitter <= 1:
            raise ConfigValidationError(
                "think_time_jitter", self.think_time_jitter, "Must be between 0 and 1.", section=_SECTION
            )
        if self.graceful_stop < 0:
            raise ConfigValidationError("graceful_stop", self.graceful_stop, "Must be >= 0.", section=_SECTION)

        if self.model.is_open_loop:
            if self.rate <= 0:
                raise ConfigValidationError("rate", self.rate, "Must be greater than 0.", section=_SECTION)
            if self.time_unit <= 0:
                raise ConfigValidationError("time_unit", self.time_unit, "Must be greater than 0.", section=_SECTION)
        else:
            if not self.stages:
                raise ConfigValidationError("stages", self.stages, "At least one stage is required.", section=_SECTION)
            for stage in self.stages:
                if stage.duration <= 0:
                    raise ConfigValidationError(
                        "stages.duration", stage.duration, "Must be greater than 0.", section=_SECTION
                    )
                if stage.target < 0:
                    raise ConfigValidationError("stages.target", stage.target, "Must be >= 0.", section=_SECTION)
            if self.start_vus < 0:
                raise ConfigValidationError("start_vus", self.start_vus, "Must be >= 0.", section=_SECTION)

        if self.duration <= 0:
            raise ConfigValidationError("duration", self.duration, "Must be greater than 0.", section=_SECTION)
        return self

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, document: Mapping[str, Any], name: str | None = None) -> ScenarioConfig:
        """
        Build and validate a scenario from a decoded document.

        Args:
            document: The decoded scenario (camelCase or snake_case keys).
            name: Fallback name when the document has none.

        Returns:
            The validated scenario.

        Raises:
            ConfigError: If the document is malformed.
        """
        if not isinstance(document, Mapping):
            raise ConfigError(f"Scenario document must be an object, got {type(document).__name__}.")

        doc = _Document(document)
        stages = tuple(_parse_stage(raw) for raw in doc.get_list("stages"))

        raw_model = doc.get("model", "executor")
        if raw_model is None:
            raw_model = ArrivalModel.RAMPING_VUS if stages else ArrivalModel.CONSTANT_ARRIVAL_RATE
        model = ArrivalModel.parse(raw_model)

        if model.is_open_loop:
            duration = doc.get_duration("duration", default=None)
            if duration is None:
                raise ConfigValidationError("duration", None, "Is required for constant-arrival-rate.", section=_SECTION)
            max_vus_default = doc.get_int("pre_allocated_vus", "preAllocatedVUs", "vus", default=1)
        else:
            duration = sum(stage.duration for stage in stages)
            max_vus_default = max([doc.get_int("start_vus", "startVUs", default=0), *(s.target for s in stages)])

        pre_allocated = doc.get_int("pre_allocated_vus", "preAllocatedVUs", "vus", default=None)
        max_vus = doc.get_int("max_vus", "maxVUs", default=None)
        if max_vus is None:
            max_vus = max(max_vus_default, pre_allocated or 0, 1)
        if pre_allocated is None:
            pre_allocated = min(max_vus, max_vus_default) if model.is_open_loop else 0

        requests = _parse_requests(doc)
        graceful_stop = doc.get_duration("graceful_stop", "gracefulStop", default=None)

        scenario = cls(
            name=str(doc.get("name", default=name) or "default"),
            model=model,
            requests=requests,
            rate=doc.get_float("rate", default=0.0),
            time_unit=doc.get_duration("time_unit", "timeUnit", default=1.0),
            duration=duration,
            stages=stages,
            start_vus=doc.get_int("start_vus", "startVUs", default=0),
            pre_allocated_vus=pre_allocated,
            max_vus=max_vus,
            think_time=doc.get_duration("think_time", "thinkTime", "sleep", default=0.0),
            think_time_jitter=doc.get_float("think_time_jitter", "thinkTimeJitter", default=0.0),
            graceful_stop=LOADRIG.config.run.graceful_stop if graceful_stop is None else graceful_stop,
            thresholds=parse_thresholds(doc.get("thresholds")),
            seed=doc.get_int("seed", default=None),
        )
        return scenario.validate()


def load_scenario(path: Path) -> ScenarioConfig:
    """
    Read and validate a JSON scenario file.

    Args:
        path: Path to the scenario file.

    Returns:
        The validated scenario. Its name defaults to the file stem.

    Raises:
        ConfigError: If the file is missing, is not valid JSON or is malformed.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read scenario file '{path}': {e}") from e
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Scenario file '{path}' is not valid JSON: {e}") from e
    return ScenarioConfig.from_dict(document, name=path.stem)


# =============================================================================
# Internals
# =============================================================================


class _Document:
    """Typed, alias-aware accessors over a decoded scenario mapping."""

    def __init__(self, raw: Mapping[str, Any]):
        self.raw = raw

    def get(self, *keys: str, default: Any = None) -> Any:
        for key in keys:
            if key in self.raw:
                return self.raw[key]
        return default

    def get_list(self, *keys: str) -> list[Any]:
        value = self.get(*keys, default=None)
        if value is None:
            return []
        if not isinstance(value, list):
            raise ConfigValidationError(keys[0], value, "Must be a list.", section=_SECTION)
        return value

    def get_int(self, *keys: str, default: int | None) -> int | None:
        value = self.get(*keys, default=None)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, int | float) or value != int(value):
            raise ConfigValidationError(keys[0], value, "Must be an integer.", section=_SECTION)
        return int(value)

    def get_float(self, *keys: str, default: float) -> float:
        value = self.get(*keys, default=None)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ConfigValidationError(keys[0], value, "Must be a number.", section=_SECTION)
        return float(value)

    def get_duration(self, *keys: str, default: float | None) -> float | None:
        value = self.get(*keys, default=None)
        if value is None:
            return default
        try:
            return parse_duration(value)
        except ValueError as e:
            raise ConfigValidationError(keys[0], value, str(e), section=_SECTION) from e


def _parse_stage(raw: Any) -> Stage:
    if not isinstance(raw, Mapping):
        raise ConfigValidationError("stages", raw, "Each stage must be an object.", section=_SECTION)
    doc = _Document(raw)
    duration = doc.get_duration("duration", default=None)
    target = doc.get_int("target", default=None)
    if duration is None or target is None:
        raise ConfigValidationError("stages", raw, "Each stage needs 'duration' and 'target'.", section=_SECTION)
    return Stage(duration=duration, target=target)


def _parse_requests(doc: _Document) -> tuple[RequestSpec, ...]:
    raw_requests = doc.get("requests", default=None)
    if raw_requests is None:
        single = doc.get("request", default=None)
        if single is None and doc.get("url") is not None:
            single = {"url": doc.get("url")}
        raw_requests = [] if single is None else [single]
    if not isinstance(raw_requests, list):
        raise ConfigValidationError("requests", raw_requests, "Must be a list.", section=_SECTION)

    default_statuses = _parse_statuses(doc.get("checks", default=None))
    return tuple(_parse_request(raw, default_statuses) for raw in raw_requests)


def _parse_request(raw: Any, default_statuses: frozenset[int]) -> RequestSpec:
    if isinstance(raw, str):
        raw = {"url": raw}
    if not isinstance(raw, Mapping):
        raise ConfigValidationError("request", raw, "Must be an object or a URL string.", section=_SECTION)
    doc = _Document(raw)

    url = doc.get("url")
    if not isinstance(url, str) or not url:
        raise ConfigValidationError("url", url, "Is required.", section=_SECTION)
    headers = doc.get("headers", default={}) or {}
    if not isinstance(headers, Mapping):
        raise ConfigValidationError("headers", headers, "Must be an object.", section=_SECTION)

    statuses = doc.get("expected_statuses", "expectedStatuses", default=None)
    checks = doc.get("checks", default=None)
    if statuses is not None:
        expected = _parse_statuses({"status": statuses})
    elif checks is not None:
        expected = _parse_statuses(checks)
    else:
        expected = default_statuses

    return RequestSpec(
        url=url,
        method=str(doc.get("method", default="GET")).upper(),
        headers={str(k): str(v) for k, v in headers.items()},
        body=doc.get("body", "json", default=None),
        timeout=doc.get_duration("timeout", default=None),
        expected_statuses=expected,
        name=str(doc.get("name", default="") or ""),
    )


def _parse_statuses(checks: Any) -> frozenset[int]:
    if checks is None:
        return frozenset()
    if not isinstance(checks, Mapping):
        raise ConfigValidationError("checks", checks, "Must be an object like {\"status\": [200, 429]}.", section=_SECTION)
    statuses = checks.get("status")
    if statuses is None:
        return frozenset()
    if isinstance(statuses, int) and not isinstance(statuses, bool):
        statuses = [statuses]
    if not isinstance(statuses, list) or not all(isinstance(s, int) and not isinstance(s, bool) for s in statuses):
        raise ConfigValidationError("checks.status", statuses, "Must be a status code or a list of them.", section=_SECTION)
    return frozenset(statuses)
