"""Tests for shared data models."""

import pytest
import requests

from loadrig._models import DispatchEvent, Outcome, OutcomeKind


class TestOutcomeKind:
    """Tests for outcome classification."""

    @pytest.mark.parametrize(
        ("status_code", "expected"),
        [
            (200, OutcomeKind.SUCCESS),
            (204, OutcomeKind.SUCCESS),
            (301, OutcomeKind.SUCCESS),
            (400, OutcomeKind.CLIENT_ERROR),
            (404, OutcomeKind.CLIENT_ERROR),
            (429, OutcomeKind.CLIENT_ERROR),
            (500, OutcomeKind.SERVER_ERROR),
            (503, OutcomeKind.SERVER_ERROR),
        ],
    )
    def test_from_status(self, status_code, expected):
        assert OutcomeKind.from_status(status_code) is expected

    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (requests.Timeout("timed out"), OutcomeKind.TIMEOUT),
            (requests.ReadTimeout("read timed out"), OutcomeKind.TIMEOUT),
            (TimeoutError("socket"), OutcomeKind.TIMEOUT),
            (requests.ConnectionError("refused"), OutcomeKind.NETWORK_ERROR),
            (OSError("reset"), OutcomeKind.NETWORK_ERROR),
        ],
    )
    def test_from_exception(self, exc, expected):
        assert OutcomeKind.from_exception(exc) is expected

    def test_str_is_value(self):
        assert str(OutcomeKind.CLIENT_ERROR) == "CLIENT_ERROR"


class TestDispatchEvent:
    """Tests for DispatchEvent invariants."""

    def test_is_immutable(self):
        event = DispatchEvent(sequence=1, scheduled_at=0.5)
        with pytest.raises(AttributeError):
            event.sequence = 2  # type: ignore[misc]

    def test_negative_sequence_is_rejected(self):
        with pytest.raises(AssertionError, match="sequence can not be negative"):
            DispatchEvent(sequence=-1, scheduled_at=0.0)


class TestOutcome:
    """Tests for Outcome invariants and derived values."""

    def test_status_class(self):
        outcome = Outcome(sequence=0, vu_id=0, kind=OutcomeKind.CLIENT_ERROR, status_code=429, latency=0.1, started_at=1.0)
        assert outcome.status_class == "4xx"
        assert not outcome.is_success
        assert outcome.finished_at == pytest.approx(1.1)

    def test_timeout_status_class(self):
        outcome = Outcome(sequence=0, vu_id=0, kind=OutcomeKind.TIMEOUT, status_code=None, latency=2.0, started_at=0.0)
        assert outcome.status_class == "timeout"

    def test_network_error_status_class(self):
        outcome = Outcome(sequence=0, vu_id=0, kind=OutcomeKind.NETWORK_ERROR, status_code=None, latency=0.0, started_at=0.0)
        assert outcome.status_class == "error"

    def test_status_code_must_match_kind(self):
        with pytest.raises(AssertionError, match="Sanity check"):
            Outcome(sequence=0, vu_id=0, kind=OutcomeKind.TIMEOUT, status_code=200, latency=0.1, started_at=0.0)
        with pytest.raises(AssertionError, match="Sanity check"):
            Outcome(sequence=0, vu_id=0, kind=OutcomeKind.SUCCESS, status_code=None, latency=0.1, started_at=0.0)

    def test_negative_latency_is_rejected(self):
        with pytest.raises(AssertionError, match="latency can not be negative"):
            Outcome(sequence=0, vu_id=0, kind=OutcomeKind.SUCCESS, status_code=200, latency=-0.1, started_at=0.0)
