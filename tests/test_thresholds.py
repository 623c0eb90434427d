"""Tests for threshold parsing and evaluation."""

from types import MappingProxyType

import pytest

from loadrig._config import ConfigError
from loadrig._metrics import MetricSnapshot
from loadrig._thresholds import (
    ThresholdSpec,
    all_passed,
    declared_percentiles,
    evaluate,
    parse_statement,
    parse_threshold,
    parse_thresholds,
)


def make_snapshot(**overrides) -> MetricSnapshot:
    values = {
        "requests": 100,
        "successes": 99,
        "failures": 1,
        "first_started_at": 0.0,
        "last_finished_at": 10.0,
        "latency_min_ms": 10.0,
        "latency_max_ms": 900.0,
        "latency_avg_ms": 120.0,
        "latency_med_ms": 100.0,
        "latency_p90_ms": 300.0,
        "latency_p95_ms": 450.0,
        "latency_p99_ms": 800.0,
        "by_class": MappingProxyType({"2xx": 99, "5xx": 1}),
        "by_status": MappingProxyType({200: 99, 503: 1}),
    }
    values.update(overrides)
    return MetricSnapshot(**values)


# =============================================================================
# Parsing
# =============================================================================


class TestParseThreshold:
    """Tests for parse_threshold()."""

    def test_flat_percentile_key(self):
        spec = parse_threshold("p95_latency_ms", "<500")
        assert spec == ThresholdSpec(
            name="p95_latency_ms: <500", metric="latency", aggregation="p",
            operator="<", target=500.0, percentile=95.0,
        )

    def test_flat_error_rate_key(self):
        spec = parse_threshold("error_rate", "< 0.01")
        assert (spec.metric, spec.aggregation, spec.operator, spec.target) == ("error_rate", "rate", "<", 0.01)

    def test_k6_percentile_expression(self):
        spec = parse_threshold("http_req_duration", "p(95)<500")
        assert (spec.metric, spec.aggregation, spec.percentile, spec.target) == ("latency", "p", 95.0, 500.0)

    def test_any_percentile_in_range(self):
        assert parse_threshold("http_req_duration", "p(99.9)<800").percentile == 99.9
        assert parse_threshold("p42_latency_ms", "<500").percentile == 42.0
        assert parse_threshold("http_req_duration", "p(100)<900").percentile == 100.0

    def test_k6_avg_expression(self):
        spec = parse_threshold("http_req_duration", "avg<=200")
        assert (spec.aggregation, spec.operator) == ("avg", "<=")

    def test_k6_rate_metric_defaults_to_rate(self):
        spec = parse_threshold("http_req_failed", "<0.05")
        assert (spec.metric, spec.aggregation) == ("error_rate", "rate")

    def test_k6_checks_rate(self):
        spec = parse_threshold("checks", "rate>0.99")
        assert (spec.metric, spec.aggregation, spec.operator) == ("checks", "rate", ">")

    def test_status_membership(self):
        spec = parse_threshold("status", "in {200, 429}")
        assert spec.metric == "status"
        assert spec.target == frozenset({200, 429})

    def test_custom_name(self):
        assert parse_threshold("error_rate", "<0.1", name="few errors").name == "few errors"

    @pytest.mark.parametrize(
        ("key", "expression"),
        [
            ("p95_latency_ms", "fast"),
            ("p95_latency_ms", "p(95)<500"),  # aggregation already implied
            ("http_req_duration", "<500"),  # latency needs an aggregation
            ("http_req_duration", "p(0)<500"),  # percentile out of range
            ("http_req_duration", "p(101)<500"),
            ("http_req_duration", "rate<0.1"),  # aggregation does not apply
            ("unknown_metric", "<1"),
            ("status", "<500"),
            ("status", "in {}"),
        ],
    )
    def test_malformed_thresholds_raise(self, key, expression):
        with pytest.raises(ConfigError):
            parse_threshold(key, expression)


class TestParseThresholds:
    """Tests for parse_thresholds()."""

    def test_none_and_empty(self):
        assert parse_thresholds(None) == ()
        assert parse_thresholds({}) == ()

    def test_mapping_with_list_values(self):
        specs = parse_thresholds({"http_req_duration": ["p(95)<500", "p(99)<1500"]})
        assert [s.percentile for s in specs] == [95.0, 99.0]

    def test_declared_percentiles(self):
        specs = parse_thresholds({
            "http_req_duration": ["p(99.9)<800", "p(95)<500", "avg<200"],
            "p95_latency_ms": "<400",
            "error_rate": "<0.01",
        })
        assert declared_percentiles(specs) == (95.0, 99.9)
        assert declared_percentiles(()) == ()

    def test_declaration_order_is_preserved(self):
        specs = parse_thresholds({"error_rate": "<0.01", "p95_latency_ms": "<500", "status": "in {200}"})
        assert [s.metric for s in specs] == ["error_rate", "latency", "status"]

    def test_list_of_statements(self):
        specs = parse_thresholds(["status in {200,429}", "p95_latency_ms < 500"])
        assert specs[0].target == frozenset({200, 429})
        assert specs[0].name == "status in {200,429}"
        assert specs[1].percentile == 95.0

    def test_mapping_key_as_whole_statement(self):
        specs = parse_thresholds({"status in {200,429}": True})
        assert specs[0].metric == "status"

    def test_string_is_rejected(self):
        with pytest.raises(ConfigError, match="mapping or a list"):
            parse_thresholds("p95_latency_ms<500")

    def test_non_string_expression_is_rejected(self):
        with pytest.raises(ConfigError):
            parse_thresholds({"error_rate": 0.01})

    def test_malformed_statement(self):
        with pytest.raises(ConfigError, match="Malformed"):
            parse_statement("!!!")


# =============================================================================
# Evaluation
# =============================================================================


class TestEvaluate:
    """Tests for evaluate()."""

    def test_latency_percentile_pass_and_fail(self):
        snapshot = make_snapshot()
        results = evaluate(parse_thresholds({"http_req_duration": ["p(95)<500", "p(99)<500"]}), snapshot)
        assert [r.passed for r in results] == [True, False]
        assert [r.observed for r in results] == [450.0, 800.0]

    def test_declared_extra_percentile(self):
        snapshot = make_snapshot(latency_percentiles_ms=MappingProxyType({99.9: 880.0}))
        results = evaluate(parse_thresholds({"http_req_duration": ["p(99.9)<800"]}), snapshot)
        assert not results[0].passed
        assert results[0].observed == 880.0

    def test_every_latency_aggregation(self):
        snapshot = make_snapshot()
        results = evaluate(
            parse_thresholds({"http_req_duration": ["avg==120", "min==10", "max==900", "med==100", "p(90)==300"]}),
            snapshot,
        )
        assert all_passed(results)

    def test_error_rate(self):
        results = evaluate(parse_thresholds({"error_rate": "<0.05"}), make_snapshot())
        assert results[0].passed
        assert results[0].observed == pytest.approx(0.01)

    def test_request_count_and_rate(self):
        results = evaluate(parse_thresholds({"requests": ">=100", "request_rate": ">9"}), make_snapshot())
        assert all_passed(results)
        assert results[1].observed == pytest.approx(10.0)

    def test_dropped_iterations(self):
        results = evaluate(parse_thresholds({"dropped_iterations": "count==0"}), make_snapshot(dropped_iterations=3))
        assert not results[0].passed
        assert results[0].observed == 3.0

    def test_checks_rate_without_checks_is_one(self):
        results = evaluate(parse_thresholds({"checks": "rate>0.99"}), make_snapshot())
        assert results[0].passed

    def test_status_membership_pass(self):
        snapshot = make_snapshot(by_status=MappingProxyType({200: 50, 429: 50}), by_class=MappingProxyType({"2xx": 50, "4xx": 50}))
        result = evaluate(parse_thresholds({"status": "in {200,429}"}), snapshot)[0]
        assert result.passed
        assert result.observed == (200, 429)

    def test_status_membership_fails_on_unexpected_status(self):
        result = evaluate(parse_thresholds({"status": "in {200,429}"}), make_snapshot())[0]
        assert not result.passed
        assert result.observed == (200, 503)

    def test_status_membership_fails_on_network_errors(self):
        snapshot = make_snapshot(by_status=MappingProxyType({200: 10}), by_class=MappingProxyType({"2xx": 10, "timeout": 1}))
        result = evaluate(parse_thresholds({"status": "in {200}"}), snapshot)[0]
        assert not result.passed
        assert result.observed == (200, "timeout")

    def test_evaluation_is_pure(self):
        snapshot = make_snapshot()
        thresholds = parse_thresholds({"p95_latency_ms": "<500", "error_rate": "<0.001", "status": "in {200}"})
        assert evaluate(thresholds, snapshot) == evaluate(thresholds, snapshot)

    def test_empty_snapshot(self):
        results = evaluate(parse_thresholds({"p95_latency_ms": "<500", "error_rate": "<0.01"}), MetricSnapshot())
        assert all_passed(results)

    def test_all_passed_is_vacuously_true(self):
        assert all_passed([])

    def test_result_to_dict(self):
        result = evaluate(parse_thresholds({"status": "in {200}"}), make_snapshot())[0]
        assert result.to_dict() == {"threshold": "status: in {200}", "passed": False, "observed": [200, 503]}
