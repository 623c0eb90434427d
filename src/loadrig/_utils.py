"""
Utility functions for the loadrig harness.

This module provides internal helper functions used throughout the harness.
These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import json
import logging
import random
import re
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|s|m|h)")

_DURATION_UNITS: dict[str, float] = {
    "us": 0.000001,
    "µs": 0.000001,
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str | int | float) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (already in seconds) and Go/k6-style duration
    strings made of one or more `<number><unit>` parts.

    Args:
        value: A number of seconds, or a string like "500ms", "30s", "1m30s", "1h".

    Returns:
        The duration in seconds.

    Raises:
        ValueError: If the value cannot be parsed or is negative.

    Example:
        >>> parse_duration("1m30s")
        90.0
        >>> parse_duration(2)
        2.0
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")

    text = value.strip()
    if not text:
        raise ValueError("Duration must not be empty.")

    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        return parse_duration(seconds)

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text) or position == 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def sleep_with_jitter(
    seconds: float,
    jitter_factor: float = 0.1,
    stop_event: threading.Event | None = None,
    rng: random.Random | None = None,
) -> bool:
    """
    Sleep for the given duration with random jitter.

    The sleep is interruptible: when a `stop_event` is given, the call returns
    as soon as the event is set instead of sleeping out the full duration.

    Args:
        seconds: Base sleep duration in seconds.
        jitter_factor: Maximum percentage variation (default: 10%).
            For example, 0.1 means sleep time varies by +/- 10%.
            Use 0 for an exact sleep.
        stop_event: Optional event that interrupts the sleep when set.
        rng: Optional RNG (the run's seeded RNG), defaults to the `random` module.

    Returns:
        True if the sleep was interrupted by `stop_event`, False otherwise.

    Example:
        >>> sleep_with_jitter(1.0)  # Sleeps between 0.9 and 1.1 seconds
        False
        >>> sleep_with_jitter(1.0, jitter_factor=0)  # Sleeps exactly 1 second
        False
    """
    if seconds <= 0:
        return bool(stop_event and stop_event.is_set())

    jitter = (rng or random).uniform(-jitter_factor, jitter_factor) if jitter_factor else 0.0
    sleep_time = max(0.0, seconds * (1 + jitter))
    if stop_event is None:
        threading.Event().wait(sleep_time)
        return False
    return stop_event.wait(sleep_time)


def save_json_file(data: dict[str, Any], file_path: Path) -> None:
    """
    Save data as JSON to the specified file path.

    Writes a Python dict to disk as formatted JSON with UTF-8 encoding.
    Non-serializable values are converted to strings using the default=str option.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Destination path for the JSON file.

    Raises:
        RuntimeError: If the file cannot be written (wraps the original exception).

    Example:
        >>> save_json_file({"key": "value"}, Path("output/report.json"))
    """
    try:
        with file_path.open(mode="w", encoding="utf-8") as file:
            json.dump(
                data, file,
                indent=4, ensure_ascii=False, default=str
            )
    except Exception as e:
        logger.error(
            f"❌ Error while writing JSON file to disk ({file_path.name}): {e}",
            exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        raise RuntimeError(f"It's not possible to save JSON file in the disk ({file_path.name}): {e}") from e


def is_timeout_exception(exc: BaseException) -> bool:
    """
    Determine if an exception indicates a timeout condition.

    This is the single source of truth for identifying timeout exceptions
    raised while executing a request.

    Args:
        exc: The exception to check.

    Returns:
        True if the exception indicates a timeout, False otherwise.

    Supported timeout exceptions:
        - requests.Timeout: HTTP connect/read timeout
        - TimeoutError: Python built-in (socket level)
        - requests.ConnectionError wrapping urllib3's ReadTimeoutError: a read
          timeout while the body downloads, which requests does not map to Timeout
    """
    # Lazy import keeps this module importable without touching requests
    import requests
    from urllib3.exceptions import ReadTimeoutError

    if isinstance(exc, requests.Timeout | TimeoutError | ReadTimeoutError):
        return True
    if isinstance(exc, requests.ConnectionError):
        cause = exc.args[0] if exc.args else None
        return isinstance(cause, ReadTimeoutError) or isinstance(exc.__context__, ReadTimeoutError)
    return False
