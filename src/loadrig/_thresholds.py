"""
Threshold parsing and evaluation.

A threshold is a named pass/fail predicate over a MetricSnapshot. Two
declaration styles are accepted and normalized to the same `ThresholdSpec`:

Flat keys (the value is a comparison):
    >>> parse_thresholds({"p95_latency_ms": "<500", "error_rate": "<0.01"})

k6-style metric names (the value is one expression or a list of expressions):
    >>> parse_thresholds({"http_req_duration": ["p(95)<500", "avg<200"]})

Status set membership:
    >>> parse_thresholds({"status": "in {200,429}"})
    >>> parse_thresholds(["status in {200,429}", "p95_latency_ms < 500"])

Evaluation is a pure function of the snapshot:
    >>> results = evaluate(thresholds, aggregator.snapshot())
    >>> all(r.passed for r in results)
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from loadrig._config import ConfigError
from loadrig._metrics import MetricSnapshot

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_COMPARISON_RE = re.compile(
    r"^\s*(?:(?P<agg>p\(\s*\d+(?:\.\d+)?\s*\)|avg|min|max|med|rate|count)\s*)?"
    r"(?P<op><=|>=|==|!=|<|>)\s*(?P<target>-?\d+(?:\.\d+)?)\s*$"
)
_MEMBERSHIP_RE = re.compile(r"^\s*in\s*[\{\[\(](?P<codes>[\d\s,]*)[\}\]\)]\s*$")
_PERCENTILE_KEY_RE = re.compile(r"^p(?P<pct>\d+(?:\.\d+)?)_latency_ms$")
_STATEMENT_RE = re.compile(
    r"^\s*(?P<metric>[A-Za-z_]\w*)\s*"
    r"(?P<expr>(?:in\b|[<>=!]|p\(|(?:avg|min|max|med|rate|count)\s*[<>=!]).*)$"
)

# Flat metric keys with an implied aggregation
_FLAT_KEYS: dict[str, tuple[str, str]] = {
    "min_latency_ms": ("latency", "min"),
    "max_latency_ms": ("latency", "max"),
    "avg_latency_ms": ("latency", "avg"),
    "med_latency_ms": ("latency", "med"),
    "error_rate": ("error_rate", "rate"),
    "request_rate": ("requests", "rate"),
    "requests": ("requests", "count"),
}

# k6 metric names mapped to the harness metric they read
_K6_METRICS: dict[str, str] = {
    "http_req_duration": "latency",
    "http_req_failed": "error_rate",
    "http_reqs": "requests",
    "iterations": "requests",
    "checks": "checks",
    "dropped_iterations": "dropped_iterations",
}

_DEFAULT_AGGREGATION: dict[str, str] = {
    "error_rate": "rate",
    "checks": "rate",
    "requests": "count",
    "dropped_iterations": "count",
}

_ALLOWED_AGGREGATIONS: dict[str, frozenset[str]] = {
    "latency": frozenset({"p", "avg", "min", "max", "med"}),
    "error_rate": frozenset({"rate"}),
    "checks": frozenset({"rate"}),
    "requests": frozenset({"count", "rate"}),
    "dropped_iterations": frozenset({"count"}),
}


@dataclass(frozen=True)
class ThresholdSpec:
    """
    A parsed threshold.

    Attributes:
        name: Display name, as declared (e.g. "http_req_duration: p(95)<500").
        metric: Harness metric read ("latency", "error_rate", "checks",
            "requests", "dropped_iterations" or "status").
        aggregation: How the metric is reduced ("p", "avg", "min", "max", "med",
            "rate", "count" or "in").
        operator: Comparison operator, or "in" for status membership.
        target: Numeric target, or the allowed status codes for membership.
        percentile: Percentile (0-100) when aggregation is "p".
    """

    name: str
    metric: str
    aggregation: str
    operator: str
    target: float | frozenset[int]
    percentile: float | None = None


@dataclass(frozen=True)
class ThresholdResult:
    """
    Outcome of evaluating one threshold.

    Attributes:
        spec: The evaluated threshold.
        passed: Whether the predicate held.
        observed: The value compared against the target (a tuple of the
            statuses seen for membership thresholds).
    """

    spec: ThresholdSpec
    passed: bool
    observed: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold": self.spec.name,
            "passed": self.passed,
            "observed": list(self.observed) if isinstance(self.observed, tuple) else self.observed,
        }


# =============================================================================
# Parsing
# =============================================================================


def parse_thresholds(declared: Mapping[str, Any] | Iterable[str] | None) -> tuple[ThresholdSpec, ...]:
    """
    Parse threshold declarations from a scenario document.

    Args:
        declared: A mapping of metric key to expression (or list of expressions),
            a list of "<metric> <expression>" statements, or None.

    Returns:
        The parsed thresholds, in declaration order.

    Raises:
        ConfigError: If any declaration is malformed or names an unknown metric.
    """
    if not declared:
        return ()
    if isinstance(declared, str):
        raise ConfigError(f"Thresholds must be a mapping or a list of statements, got a string: {declared!r}")

    specs: list[ThresholdSpec] = []
    if isinstance(declared, Mapping):
        for key, value in declared.items():
            key = str(key).strip()
            if _is_statement(key) and value in (True, None, ""):
                specs.append(parse_statement(key))
                continue
            expressions = value if isinstance(value, list | tuple) else [value]
            for expression in expressions:
                if not isinstance(expression, str):
                    raise ConfigError(f"Threshold expression for '{key}' must be a string, got {expression!r}.")
                specs.append(parse_threshold(key, expression))
    else:
        for statement in declared:
            if not isinstance(statement, str):
                raise ConfigError(f"Threshold statement must be a string, got {statement!r}.")
            specs.append(parse_statement(statement))
    return tuple(specs)


def _is_statement(text: str) -> bool:
    match = _STATEMENT_RE.match(text)
    return match is not None and bool(match.group("expr").strip())


def parse_statement(statement: str) -> ThresholdSpec:
    """
    Parse a single "<metric> <expression>" statement, e.g. "status in {200,429}".

    Raises:
        ConfigError: If the statement is malformed.
    """
    match = _STATEMENT_RE.match(statement)
    if match is None:
        raise ConfigError(f"Malformed threshold statement: {statement!r}.")
    return parse_threshold(match.group("metric"), match.group("expr"), name=statement.strip())


def parse_threshold(metric_key: str, expression: str, name: str | None = None) -> ThresholdSpec:
    """
    Parse one threshold declared as `metric_key: expression`.

    Args:
        metric_key: Flat key (e.g. "p95_latency_ms"), k6 metric (e.g. "http_req_duration")
            or "status".
        expression: Comparison (e.g. "<500", "p(95)<500") or membership ("in {200,429}").
        name: Display name. Defaults to "<metric_key>: <expression>".

    Raises:
        ConfigError: If the key or expression is not understood.
    """
    display = name or f"{metric_key}: {expression.strip()}"

    if metric_key == "status":
        membership = _MEMBERSHIP_RE.match(expression)
        if membership is None:
            raise ConfigError(f"Threshold '{display}': status thresholds must look like 'in {{200,429}}'.")
        codes = frozenset(int(code) for code in re.split(r"[\s,]+", membership.group("codes")) if code)
        if not codes:
            raise ConfigError(f"Threshold '{display}': the status set must not be empty.")
        return ThresholdSpec(name=display, metric="status", aggregation="in", operator="in", target=codes)

    comparison = _COMPARISON_RE.match(expression)
    if comparison is None:
        raise ConfigError(f"Threshold '{display}': malformed expression {expression!r}.")
    declared_agg = comparison.group("agg")
    op = comparison.group("op")
    target = float(comparison.group("target"))

    metric, aggregation, percentile = _resolve_metric(metric_key, declared_agg, display)
    return ThresholdSpec(
        name=display,
        metric=metric,
        aggregation=aggregation,
        operator=op,
        target=target,
        percentile=percentile,
    )


def _resolve_metric(metric_key: str, declared_agg: str | None, display: str) -> tuple[str, str, float | None]:
    implied: tuple[str, str] | None = _FLAT_KEYS.get(metric_key)
    percentile_key = _PERCENTILE_KEY_RE.match(metric_key)
    if percentile_key:
        implied = ("latency", f"p({percentile_key.group('pct')})")

    if implied is not None:
        if declared_agg is not None:
            raise ConfigError(
                f"Threshold '{display}': '{metric_key}' already implies an aggregation, "
                f"remove '{declared_agg}' from the expression."
            )
        metric, raw_agg = implied
    elif metric_key in _K6_METRICS:
        metric = _K6_METRICS[metric_key]
        raw_agg = declared_agg or _DEFAULT_AGGREGATION.get(metric)
        if raw_agg is None:
            raise ConfigError(f"Threshold '{display}': '{metric_key}' needs an aggregation such as 'p(95)' or 'avg'.")
    else:
        raise ConfigError(f"Threshold '{display}': unknown metric '{metric_key}'.")

    percentile: float | None = None
    aggregation = raw_agg.replace(" ", "")
    if aggregation.startswith("p("):
        percentile = float(aggregation[2:-1])
        aggregation = "p"
        if not 0 < percentile <= 100:
            raise ConfigError(f"Threshold '{display}': percentile {percentile:g} must be in (0, 100].")

    if aggregation not in _ALLOWED_AGGREGATIONS[metric]:
        raise ConfigError(f"Threshold '{display}': aggregation '{raw_agg}' does not apply to '{metric_key}'.")
    return metric, aggregation, percentile


# =============================================================================
# Evaluation
# =============================================================================


def evaluate(thresholds: Iterable[ThresholdSpec], snapshot: MetricSnapshot) -> list[ThresholdResult]:
    """
    Evaluate every threshold against a snapshot.

    Pure and deterministic: the same snapshot always yields the same results.

    Args:
        thresholds: Parsed thresholds.
        snapshot: The metrics to evaluate against.

    Returns:
        One ThresholdResult per threshold, in the given order.
    """
    return [_evaluate_one(spec, snapshot) for spec in thresholds]


def all_passed(results: Iterable[ThresholdResult]) -> bool:
    """Return True when every threshold passed (vacuously True for none)."""
    return all(result.passed for result in results)


def declared_percentiles(thresholds: Iterable[ThresholdSpec]) -> tuple[float, ...]:
    """Return the latency percentiles referenced by `thresholds`, sorted and deduplicated."""
    return tuple(sorted({
        spec.percentile for spec in thresholds
        if spec.metric == "latency" and spec.percentile is not None
    }))


def _evaluate_one(spec: ThresholdSpec, snapshot: MetricSnapshot) -> ThresholdResult:
    if spec.metric == "status":
        assert isinstance(spec.target, frozenset), "🌀 Sanity check | status threshold target must be a set."
        codes = tuple(sorted(snapshot.by_status))
        unclassified = tuple(sorted(c for c in ("error", "timeout") if snapshot.by_class.get(c)))
        passed = set(codes) <= spec.target and not unclassified
        return ThresholdResult(spec=spec, passed=passed, observed=codes + unclassified)

    assert isinstance(spec.target, float), "🌀 Sanity check | comparison threshold target must be a number."
    observed = _observe(spec, snapshot)
    return ThresholdResult(
        spec=spec,
        passed=_OPERATORS[spec.operator](observed, spec.target),
        observed=observed,
    )


def _observe(spec: ThresholdSpec, snapshot: MetricSnapshot) -> float:
    match (spec.metric, spec.aggregation):
        case ("latency", "p"):
            value = snapshot.latency_percentile_ms(spec.percentile or 0.0)
            assert value is not None, (
                f"🌀 Sanity check | percentile {spec.percentile:g} is not in the snapshot, "
                f"build the aggregator with declared_percentiles(thresholds)."
            )
            return value
        case ("latency", "avg"):
            return snapshot.latency_avg_ms
        case ("latency", "min"):
            return snapshot.latency_min_ms
        case ("latency", "max"):
            return snapshot.latency_max_ms
        case ("latency", "med"):
            return snapshot.latency_med_ms
        case ("error_rate", _):
            return snapshot.error_rate
        case ("checks", _):
            return snapshot.checks_rate
        case ("requests", "rate"):
            return snapshot.request_rate
        case ("requests", _):
            return float(snapshot.requests)
        case ("dropped_iterations", _):
            return float(snapshot.dropped_iterations)
    raise AssertionError(f"🌀 Sanity check | unsupported threshold {spec.metric}/{spec.aggregation}.")
