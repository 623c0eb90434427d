"""
Global configuration for the loadrig harness.

This module provides a simple configuration system following Convention over Configuration (CoC).
Users can optionally call LOADRIG.configure() at application startup to customize defaults.
If not called, sensible defaults are used.

These settings are harness-wide (HTTP transport, run coordination, metrics
memory bounds). Per-test parameters such as rates, stages and thresholds live
in the scenario document instead (see `loadrig._scenario`).

Hierarchy of precedence (highest to lowest):
1. Values declared in the scenario document (e.g. per-request timeout)
2. Values set via LOADRIG.configure()
3. Environment variables (LOADRIG_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from loadrig import LOADRIG
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> timeout = LOADRIG.config.http.request_timeout
    >>>
    >>> # Custom configuration
    >>> LOADRIG.configure(
    ...     http={"request_timeout": 10},
    ...     run={"fail_fast_consecutive_failures": 50},
    ... )
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Self

# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(ValueError):
    """
    Raised when a scenario or harness setting is malformed.

    Config errors are fatal and always reported before a run starts.
    """


class ConfigEnvVarError(ConfigError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ConfigError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Utility class for reading environment variables with type conversion.

    Example:
        >>> EnvVars.get("LOADRIG_HTTP_REQUEST_TIMEOUT", type_hint=float)
        30.0
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles both actual types and string annotations (PEP 563).
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` method for creating new instances
    with partial field updates. Uses strict validation to catch
    typos and invalid field names early.

    Example:
        >>> config = HttpConfig()
        >>> custom = config.with_overrides({"request_timeout": 5.0})
        >>> custom.request_timeout
        5.0
    """

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a new instance with specified fields overridden.

        None values are filtered out, so callers can pass optional values through.

        Args:
            overrides: Dict of field names to new values.
                       Only existing fields are allowed.

        Returns:
            New instance with updated values.

        Raises:
            ConfigError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ConfigError(
                f"Unknown config fields: {sorted(invalid_fields)}. "
                f"Valid fields are: {sorted(valid_fields)}"
            )

        filtered = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Reads env vars declared in field metadata and applies them as overrides.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class HttpConfig(OverridableConfig):
    """
    HTTP transport configuration.

    Attributes:
        request_timeout: Default per-request timeout in seconds, used when a
            request in the scenario does not declare its own.
            Env var: LOADRIG_HTTP_REQUEST_TIMEOUT

        user_agent: User-Agent header sent with every request.
            Env var: LOADRIG_HTTP_USER_AGENT

        verify_tls: Whether to verify TLS certificates of the target.
            Env var: LOADRIG_HTTP_VERIFY_TLS
    """

    request_timeout: float = field(default=30.0, metadata={"env": "LOADRIG_HTTP_REQUEST_TIMEOUT"})
    user_agent: str = field(default="loadrig", metadata={"env": "LOADRIG_HTTP_USER_AGENT"})
    verify_tls: bool = field(default=True, metadata={"env": "LOADRIG_HTTP_VERIFY_TLS"})

    def validate(self) -> Self:
        """Validate HTTP configuration fields."""
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="http"
            )
        if not self.user_agent:
            raise ConfigValidationError(
                "user_agent", self.user_agent,
                "Must not be empty string.", section="http"
            )
        return self


@dataclass(frozen=True)
class RunConfig(OverridableConfig):
    """
    Run coordination configuration.

    Attributes:
        graceful_stop: Seconds in-flight iterations may keep running once the
            scenario duration has elapsed (used when the scenario omits it).
            Env var: LOADRIG_RUN_GRACEFUL_STOP

        tick_interval: Seconds between target-concurrency ticks in ramping mode.
            Env var: LOADRIG_RUN_TICK_INTERVAL

        fail_fast_consecutive_failures: Cancel the run after this many
            consecutive non-successful outcomes. Use 0 to disable.
            Env var: LOADRIG_RUN_FAIL_FAST_CONSECUTIVE_FAILURES

        log_level: Logging level used by the CLI.
            Env var: LOADRIG_LOG_LEVEL
    """

    graceful_stop: float = field(default=30.0, metadata={"env": "LOADRIG_RUN_GRACEFUL_STOP"})
    tick_interval: float = field(default=0.1, metadata={"env": "LOADRIG_RUN_TICK_INTERVAL"})
    fail_fast_consecutive_failures: int = field(
        default=0,
        metadata={"env": "LOADRIG_RUN_FAIL_FAST_CONSECUTIVE_FAILURES"},
    )
    log_level: str = field(default="INFO", metadata={"env": "LOADRIG_LOG_LEVEL"})

    def validate(self) -> Self:
        """Validate run configuration fields."""
        if self.graceful_stop < 0:
            raise ConfigValidationError(
                "graceful_stop", self.graceful_stop,
                "Must be >= 0.", section="run"
            )
        if self.tick_interval <= 0:
            raise ConfigValidationError(
                "tick_interval", self.tick_interval,
                "Must be greater than 0.", section="run"
            )
        if self.fail_fast_consecutive_failures < 0:
            raise ConfigValidationError(
                "fail_fast_consecutive_failures", self.fail_fast_consecutive_failures,
                "Must be >= 0 (0 disables fail-fast).", section="run"
            )
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigValidationError(
                "log_level", self.log_level,
                "Must be a logging level name (DEBUG, INFO, WARNING, ERROR).", section="run"
            )
        return self


@dataclass(frozen=True)
class MetricsConfig(OverridableConfig):
    """
    Metrics aggregation configuration.

    Attributes:
        reservoir_size: Maximum number of latency samples retained for
            quantile estimation. Memory stays bounded regardless of run length.
            Env var: LOADRIG_METRICS_RESERVOIR_SIZE

        bucket_size: Width in seconds of the time buckets used for
            requests-per-second over time.
            Env var: LOADRIG_METRICS_BUCKET_SIZE
    """

    reservoir_size: int = field(default=10_000, metadata={"env": "LOADRIG_METRICS_RESERVOIR_SIZE"})
    bucket_size: float = field(default=1.0, metadata={"env": "LOADRIG_METRICS_BUCKET_SIZE"})

    def validate(self) -> Self:
        """Validate metrics configuration fields."""
        if self.reservoir_size <= 0:
            raise ConfigValidationError(
                "reservoir_size", self.reservoir_size,
                "Must be greater than 0.", section="metrics"
            )
        if self.bucket_size <= 0:
            raise ConfigValidationError(
                "bucket_size", self.bucket_size,
                "Must be greater than 0.", section="metrics"
            )
        return self


@dataclass(frozen=True)
class ConfigEntry:
    """
    A single configuration value with its source, used by `explain()`.

    Attributes:
        name: Field name.
        value: Current value.
        source: Where the value came from ("default", "env:VAR_NAME" or "configure").
    """

    name: str
    value: Any
    source: str

    @property
    def formatted_value(self) -> str:
        """Return the value as a string, truncated to 50 characters."""
        text = str(self.value)
        return text if len(text) <= 50 else text[:47] + "..."


_SECTIONS = ("http", "run", "metrics")


@dataclass(frozen=True)
class LoadrigConfig:
    """
    Root configuration aggregating every section.

    Attributes:
        http: HTTP transport settings.
        run: Run coordination settings.
        metrics: Metrics aggregation settings.
        sources: Per-section map of field name to source label (for explain).
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    run: RunConfig = field(default_factory=RunConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    sources: dict[str, dict[str, str]] = field(default_factory=dict, compare=False, repr=False)

    def with_env_vars(self) -> LoadrigConfig:
        """Return a new config with LOADRIG_* environment variables applied to every section."""
        sources = _copy_sources(self.sources)
        for section_name in _SECTIONS:
            section = getattr(self, section_name)
            for f in fields(section):
                env_var = f.metadata.get("env")
                if env_var and os.environ.get(env_var):
                    sources.setdefault(section_name, {})[f.name] = f"env:{env_var}"
        return LoadrigConfig(
            http=self.http.with_env_vars(),
            run=self.run.with_env_vars(),
            metrics=self.metrics.with_env_vars(),
            sources=sources,
        )

    def with_section_overrides(
        self,
        http: dict[str, Any] | None = None,
        run: dict[str, Any] | None = None,
        metrics: dict[str, Any] | None = None,
    ) -> LoadrigConfig:
        """
        Return a new config with overrides applied per section.

        Example:
            >>> config = LoadrigConfig().with_section_overrides(http={"request_timeout": 5})
        """
        sources = _copy_sources(self.sources)
        for section_name, overrides in (("http", http), ("run", run), ("metrics", metrics)):
            for name, value in (overrides or {}).items():
                if value is not None:
                    sources.setdefault(section_name, {})[name] = "configure"
        return LoadrigConfig(
            http=self.http.with_overrides(http or {}),
            run=self.run.with_overrides(run or {}),
            metrics=self.metrics.with_overrides(metrics or {}),
            sources=sources,
        )

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """Return config values and their sources, grouped by section."""
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self.sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]
        return result


def _copy_sources(sources: dict[str, dict[str, str]]) -> dict[str, dict[str, str]]:
    return {section: dict(values) for section, values in sources.items()}


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _LOADRIG:
    """
    Singleton for harness configuration.

    Use `LOADRIG.configure()` to customize settings and `LOADRIG.config`
    to access current configuration.

    Example:
        >>> from loadrig import LOADRIG
        >>> LOADRIG.configure(http={"request_timeout": 10})
        >>> print(LOADRIG.config.http.request_timeout)
    """

    def __init__(self) -> None:
        """Initialize with defaults and environment variables."""
        self._config: LoadrigConfig = LoadrigConfig().with_env_vars()

    def configure(
        self,
        *,
        http: dict[str, Any] | None = None,
        run: dict[str, Any] | None = None,
        metrics: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> LoadrigConfig:
        """
        Configure harness settings.

        Args:
            http: HTTP config overrides (request_timeout, user_agent, verify_tls).
            run: Run config overrides (graceful_stop, tick_interval, fail-fast, log_level).
            metrics: Metrics config overrides (reservoir_size, bucket_size).
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, ignores env vars entirely.

        Returns:
            The configured LoadrigConfig instance.

        Raises:
            ConfigError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = LoadrigConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(http=http, run=run, metrics=metrics)
        return self.validate()

    @property
    def config(self) -> LoadrigConfig:
        """Access current configuration (read-only)."""
        return self._config

    def reset(self) -> LoadrigConfig:
        """
        Reset configuration to defaults + env vars.

        Useful for testing to ensure clean state between tests.
        """
        self._config = LoadrigConfig().with_env_vars()
        return self.validate()

    def validate(self) -> LoadrigConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self._config.http.validate()
        self._config.run.validate()
        self._config.metrics.validate()
        return self._config

    def explain(
        self,
        output: Callable[[str], None] = print,
    ) -> None:
        """
        Print current configuration with sources.

        Shows each config value and where it came from:

        - "default": Using hardcoded default value
        - "env:VAR_NAME": Value from environment variable
        - "configure": Value set via LOADRIG.configure()

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: `LOADRIG.explain(logger.info)`
        """
        name_width = 32
        value_width = 50
        total_width = 2 + name_width + 2 + (value_width + 2) + 1 + 8

        output("LOADRIG Configuration:")
        output("=" * total_width)
        output(f"  {'Field':<{name_width}} │ {'Value':<{value_width}} │ Source")
        output(f"--{'-' * name_width}-+{'-' * (value_width + 2)}+--------")

        for section_name, entries in self._config.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                value_padded = entry.formatted_value.ljust(value_width)
                marker = "✎" if entry.source != "default" else " "
                output(f"  {entry.name} {dots} {value_padded} {marker} {entry.source}")

        output("=" * total_width)

    def __repr__(self) -> str:
        return f"LOADRIG(config={self._config!r})"


# Global singleton instance - always reflects current configuration
LOADRIG: _LOADRIG = _LOADRIG()
