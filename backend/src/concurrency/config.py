"""
Configuration for test runs.

Provides typed configuration for:
- Retry and per-attempt timeout budgets
- Worker pool sizing
- Sharding across machines
- Global run timeout and cancellation grace period
- Environment variable support
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Self

import psutil
import structlog

from testorch.errors import ConfigurationError

logger = structlog.get_logger(__name__)


def default_worker_count() -> int:
    """Default number of workers, tied to the available cores."""
    return max(1, psutil.cpu_count(logical=True) or 1)


@dataclass(slots=True)
class RunConfig:
    """
    Configuration for a test run.

    Validated on construction; contradictory values raise
    ConfigurationError before any work is scheduled.
    """

    retries: int = 0
    """Default retry ceiling for units that do not set their own."""

    timeout_seconds: float = 30.0
    """Default attempt-0 timeout for units that do not set their own."""

    workers: int = field(default_factory=default_worker_count)
    """Number of isolated workers in the pool."""

    shard_index: int | None = None
    """1-based index of the shard this run executes."""

    shard_total: int | None = None
    """Total number of shards the suite is split into."""

    global_timeout_seconds: float | None = None
    """Wall-clock budget for the whole run."""

    backoff_unit_seconds: float = 1.0
    """Backoff before the first retry; doubles on each further retry."""

    backoff_ceiling_seconds: float = 30.0
    """Upper bound on a single backoff delay."""

    fail_on_flaky: bool = False
    """Treat flaky outcomes as blocking when computing the exit status."""

    forbid_only: bool = False
    """Reject the run at collection when any unit is annotated with only."""

    max_provisioning_attempts: int = 3
    """Consecutive context creation failures tolerated per worker."""

    grace_period_seconds: float = 5.0
    """Time allowed for in-flight work to wind down on cancellation."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate configuration values."""
        if self.retries < 0:
            raise ConfigurationError("retries must be non-negative")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("timeout_seconds must be positive")
        if self.workers < 1:
            raise ConfigurationError("workers must be at least 1")
        if (self.shard_index is None) != (self.shard_total is None):
            raise ConfigurationError(
                "shard_index and shard_total must be given together"
            )
        if self.shard_total is not None and self.shard_index is not None:
            if self.shard_total < 1:
                raise ConfigurationError("shard_total must be at least 1")
            if not 1 <= self.shard_index <= self.shard_total:
                raise ConfigurationError(
                    f"shard_index must be between 1 and {self.shard_total}, "
                    f"got {self.shard_index}"
                )
        if self.global_timeout_seconds is not None and self.global_timeout_seconds <= 0:
            raise ConfigurationError("global_timeout_seconds must be positive")
        if self.backoff_unit_seconds < 0:
            raise ConfigurationError("backoff_unit_seconds must be non-negative")
        if self.backoff_ceiling_seconds < self.backoff_unit_seconds:
            raise ConfigurationError(
                "backoff_ceiling_seconds cannot be lower than backoff_unit_seconds"
            )
        if self.max_provisioning_attempts < 1:
            raise ConfigurationError("max_provisioning_attempts must be at least 1")
        if self.grace_period_seconds < 0:
            raise ConfigurationError("grace_period_seconds must be non-negative")

    @property
    def is_sharded(self) -> bool:
        """Check whether this run executes a single shard."""
        return self.shard_total is not None

    def with_overrides(self, **overrides: Any) -> Self:
        """
        Create a new config with specified overrides.

        Returns a new instance - does not mutate the original.
        """
        values = {name: getattr(self, name) for name in self.__slots__}
        unknown = set(overrides) - set(values)
        if unknown:
            raise ConfigurationError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        values.update(overrides)
        return type(self)(**values)


def parse_shard(value: str) -> tuple[int, int]:
    """
    Parse a ``current/total`` shard value.

    Raises:
        ConfigurationError: If the value is malformed or out of range
    """
    current, sep, total = value.strip().partition("/")
    if not sep:
        raise ConfigurationError(f"Shard must look like 'current/total', got '{value}'")
    try:
        shard_index, shard_total = int(current), int(total)
    except ValueError as e:
        raise ConfigurationError(f"Shard must look like 'current/total', got '{value}'") from e
    if shard_total < 1 or not 1 <= shard_index <= shard_total:
        raise ConfigurationError(f"Shard out of range: '{value}'")
    return shard_index, shard_total


def load_run_config(
    env_prefix: str = "TESTORCH_",
    defaults: RunConfig | None = None,
) -> RunConfig:
    """
    Load run configuration from environment variables.

    Environment variables (all optional):
    - TESTORCH_RETRIES: Default retries per unit (defaults to 2 when CI is set)
    - TESTORCH_TIMEOUT: Default per-attempt timeout in seconds
    - TESTORCH_WORKERS: Number of workers
    - TESTORCH_SHARD: Shard to run, as ``current/total``
    - TESTORCH_GLOBAL_TIMEOUT: Whole-run timeout in seconds
    - TESTORCH_BACKOFF_UNIT: First retry backoff in seconds
    - TESTORCH_BACKOFF_CEILING: Maximum backoff in seconds
    - TESTORCH_FAIL_ON_FLAKY: Treat flaky units as failures
    - TESTORCH_FORBID_ONLY: Reject focused units (defaults to true when CI is set)
    - TESTORCH_GRACE_PERIOD: Cancellation grace period in seconds

    Args:
        env_prefix: Prefix for environment variables
        defaults: Default configuration to use as base

    Returns:
        Loaded and validated RunConfig
    """
    on_ci = bool(os.environ.get("CI"))
    base = defaults or RunConfig(retries=2 if on_ci else 0, forbid_only=on_ci)

    def get_int(key: str, default: int) -> int:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "Invalid integer value for config",
                key=key,
                value=value,
                using_default=default,
            )
            return default

    def get_float(key: str, default: float | None) -> float | None:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(
                "Invalid float value for config",
                key=key,
                value=value,
                using_default=default,
            )
            return default

    def get_bool(key: str, default: bool) -> bool:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    shard_index, shard_total = base.shard_index, base.shard_total
    shard_value = os.environ.get(f"{env_prefix}SHARD")
    if shard_value:
        shard_index, shard_total = parse_shard(shard_value)

    config = RunConfig(
        retries=get_int("RETRIES", base.retries),
        timeout_seconds=get_float("TIMEOUT", base.timeout_seconds),
        workers=get_int("WORKERS", base.workers),
        shard_index=shard_index,
        shard_total=shard_total,
        global_timeout_seconds=get_float("GLOBAL_TIMEOUT", base.global_timeout_seconds),
        backoff_unit_seconds=get_float("BACKOFF_UNIT", base.backoff_unit_seconds),
        backoff_ceiling_seconds=get_float("BACKOFF_CEILING", base.backoff_ceiling_seconds),
        fail_on_flaky=get_bool("FAIL_ON_FLAKY", base.fail_on_flaky),
        forbid_only=get_bool("FORBID_ONLY", base.forbid_only),
        max_provisioning_attempts=base.max_provisioning_attempts,
        grace_period_seconds=get_float("GRACE_PERIOD", base.grace_period_seconds),
    )

    logger.info(
        "Loaded run config",
        retries=config.retries,
        timeout=config.timeout_seconds,
        workers=config.workers,
        shard=f"{config.shard_index}/{config.shard_total}" if config.is_sharded else None,
        global_timeout=config.global_timeout_seconds,
    )

    return config
