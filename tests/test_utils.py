"""Tests for internal utilities."""

import json
import random
import threading
import time
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest
import requests
from urllib3.exceptions import ReadTimeoutError

from loadrig._utils import is_timeout_exception, parse_duration, save_json_file, sleep_with_jitter


class TestParseDuration:
    """Tests for parse_duration()."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (2, 2.0),
            (0.5, 0.5),
            ("30", 30.0),
            ("1.5", 1.5),
            ("500ms", 0.5),
            ("30s", 30.0),
            ("1m", 60.0),
            ("1m30s", 90.0),
            ("1h", 3600.0),
            ("250us", 0.00025),
            (" 2s ", 2.0),
        ],
    )
    def test_valid_durations(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "abc", "1x", "s30", "1m 30s", "-1s", True, None, [1]])
    def test_invalid_durations(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)

    def test_negative_numbers_are_rejected(self):
        with pytest.raises(ValueError, match="must not be negative"):
            parse_duration(-1)

    def test_negative_numeric_strings_are_rejected(self):
        with pytest.raises(ValueError, match="must not be negative"):
            parse_duration("-5")


class TestSleepWithJitter(unittest.TestCase):
    """Tests for sleep_with_jitter()."""

    def test_zero_seconds_returns_immediately(self):
        start = time.monotonic()
        self.assertFalse(sleep_with_jitter(0))
        self.assertLess(time.monotonic() - start, 0.05)

    def test_exact_sleep_without_jitter(self):
        start = time.monotonic()
        interrupted = sleep_with_jitter(0.05, jitter_factor=0)
        elapsed = time.monotonic() - start
        self.assertFalse(interrupted)
        self.assertGreaterEqual(elapsed, 0.045)

    def test_sleep_is_interrupted_by_stop_event(self):
        stop_event = threading.Event()
        threading.Timer(0.05, stop_event.set).start()

        start = time.monotonic()
        interrupted = sleep_with_jitter(5.0, jitter_factor=0, stop_event=stop_event)

        self.assertTrue(interrupted)
        self.assertLess(time.monotonic() - start, 2.0)

    def test_zero_seconds_reports_already_set_stop_event(self):
        stop_event = threading.Event()
        stop_event.set()
        self.assertTrue(sleep_with_jitter(0, stop_event=stop_event))

    def test_seeded_rng_is_used_for_jitter(self):
        rng = random.Random(7)
        expected_rng = random.Random(7)
        stop_event = threading.Event()
        stop_event.set()  # returns immediately, but the jitter is still drawn

        sleep_with_jitter(0.01, jitter_factor=0.5, stop_event=stop_event, rng=rng)

        expected_rng.uniform(-0.5, 0.5)
        self.assertEqual(rng.random(), expected_rng.random())


class TestSaveJsonFile(unittest.TestCase):
    """Tests for save_json_file()."""

    def test_writes_formatted_json(self):
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "report.json"
            save_json_file({"state": "COMPLETED", "count": 3}, path)
            self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {"state": "COMPLETED", "count": 3})

    def test_non_serializable_values_are_stringified(self):
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "report.json"
            save_json_file({"path": Path("a/b")}, path)
            self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {"path": "a/b"})

    def test_wraps_write_errors_in_runtime_error(self):
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "missing-dir" / "report.json"
            with self.assertRaises(RuntimeError):
                save_json_file({}, path)


class TestIsTimeoutException(unittest.TestCase):
    """Tests for is_timeout_exception()."""

    # ---- True cases ----

    def test_requests_timeout(self):
        self.assertTrue(is_timeout_exception(requests.Timeout("timed out")))

    def test_requests_read_timeout(self):
        self.assertTrue(is_timeout_exception(requests.ReadTimeout("read timed out")))

    def test_requests_connect_timeout(self):
        self.assertTrue(is_timeout_exception(requests.ConnectTimeout("connect timed out")))

    def test_python_builtin_timeout_error(self):
        self.assertTrue(is_timeout_exception(TimeoutError("socket timeout")))

    def test_read_timeout_while_downloading_the_body(self):
        # requests wraps a body read timeout in ConnectionError, not Timeout
        cause = ReadTimeoutError(None, "/health", "Read timed out.")
        self.assertTrue(is_timeout_exception(requests.ConnectionError(cause)))

    def test_read_timeout_as_implicit_context(self):
        try:
            try:
                raise ReadTimeoutError(None, "/health", "Read timed out.")
            except ReadTimeoutError:
                raise requests.ConnectionError("connection aborted")
        except requests.ConnectionError as e:
            self.assertTrue(is_timeout_exception(e))

    # ---- False cases ----

    def test_generic_exception(self):
        self.assertFalse(is_timeout_exception(Exception("boom")))

    def test_connection_error(self):
        self.assertFalse(is_timeout_exception(requests.ConnectionError("refused")))

    def test_connection_error_wrapping_another_error(self):
        self.assertFalse(is_timeout_exception(requests.ConnectionError(ConnectionRefusedError("refused"))))

    def test_runtime_error(self):
        self.assertFalse(is_timeout_exception(RuntimeError("broken pipe")))
