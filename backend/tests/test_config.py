"""
Unit tests for run configuration.

Tests cover:
- RunConfig validation
- Overrides
- Loading from environment variables
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from testorch.concurrency.config import (
    RunConfig,
    default_worker_count,
    load_run_config,
    parse_shard,
)
from testorch.errors import ConfigurationError


class TestRunConfig:
    """Tests for RunConfig."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        config = RunConfig()

        assert config.retries == 0
        assert config.timeout_seconds == 30.0
        assert config.workers == default_worker_count()
        assert config.is_sharded is False
        assert config.global_timeout_seconds is None
        assert config.fail_on_flaky is False
        assert config.forbid_only is False

    def test_default_worker_count_positive(self) -> None:
        assert default_worker_count() >= 1

    @pytest.mark.parametrize(
        "fields",
        [
            {"retries": -1},
            {"timeout_seconds": 0},
            {"workers": 0},
            {"global_timeout_seconds": 0},
            {"shard_index": 1},
            {"shard_index": 5, "shard_total": 4},
            {"shard_index": 0, "shard_total": 4},
            {"backoff_unit_seconds": 5.0, "backoff_ceiling_seconds": 1.0},
            {"max_provisioning_attempts": 0},
            {"grace_period_seconds": -1.0},
        ],
    )
    def test_contradictory_values_rejected(self, fields: dict) -> None:
        """Test invalid combinations fail before any work is scheduled."""
        with pytest.raises(ConfigurationError):
            RunConfig(**fields)

    def test_configuration_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            RunConfig(workers=0)

    def test_with_overrides(self) -> None:
        """Test creating config with overrides."""
        original = RunConfig(workers=2)
        modified = original.with_overrides(workers=8, shard_index=1, shard_total=2)

        assert original.workers == 2
        assert modified.workers == 8
        assert modified.is_sharded is True

    def test_with_overrides_validates(self) -> None:
        """Test overrides go through validation."""
        with pytest.raises(ConfigurationError):
            RunConfig(workers=1).with_overrides(retries=-3)

    def test_with_overrides_unknown_field(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown config fields"):
            RunConfig(workers=1).with_overrides(parallelism=3)


class TestParseShard:
    """Tests for parse_shard()."""

    def test_valid(self) -> None:
        assert parse_shard("2/4") == (2, 4)
        assert parse_shard(" 1/1 ") == (1, 1)

    @pytest.mark.parametrize("value", ["2", "a/b", "0/4", "5/4", "1/0"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ConfigurationError):
            parse_shard(value)


class TestLoadRunConfig:
    """Tests for load_run_config()."""

    def test_loads_defaults_without_env_vars(self) -> None:
        """Test loading with no environment variables."""
        with patch.dict("os.environ", {}, clear=True):
            config = load_run_config()

        assert config.retries == 0
        assert config.timeout_seconds == 30.0
        assert config.is_sharded is False
        assert config.forbid_only is False

    def test_ci_enables_retries(self) -> None:
        """Test CI environments default to two retries and forbid focused units."""
        with patch.dict("os.environ", {"CI": "true"}, clear=True):
            config = load_run_config()

        assert config.retries == 2
        assert config.forbid_only is True

    def test_forbid_only_env_overrides_ci(self) -> None:
        env = {"CI": "1", "TESTORCH_FORBID_ONLY": "false"}
        with patch.dict("os.environ", env, clear=True):
            config = load_run_config()

        assert config.forbid_only is False

    def test_loads_from_env_vars(self) -> None:
        """Test loading from environment variables."""
        env = {
            "TESTORCH_RETRIES": "3",
            "TESTORCH_TIMEOUT": "12.5",
            "TESTORCH_WORKERS": "6",
            "TESTORCH_SHARD": "2/3",
            "TESTORCH_GLOBAL_TIMEOUT": "600",
            "TESTORCH_BACKOFF_UNIT": "0.5",
            "TESTORCH_BACKOFF_CEILING": "8",
            "TESTORCH_FAIL_ON_FLAKY": "yes",
            "TESTORCH_FORBID_ONLY": "1",
            "TESTORCH_GRACE_PERIOD": "2",
        }
        with patch.dict("os.environ", env, clear=True):
            config = load_run_config()

        assert config.retries == 3
        assert config.timeout_seconds == 12.5
        assert config.workers == 6
        assert (config.shard_index, config.shard_total) == (2, 3)
        assert config.global_timeout_seconds == 600.0
        assert config.backoff_unit_seconds == 0.5
        assert config.backoff_ceiling_seconds == 8.0
        assert config.fail_on_flaky is True
        assert config.forbid_only is True
        assert config.grace_period_seconds == 2.0

    def test_handles_invalid_env_values(self) -> None:
        """Test invalid values fall back to defaults."""
        env = {"TESTORCH_WORKERS": "many", "TESTORCH_TIMEOUT": "soon"}
        defaults = RunConfig(workers=3)
        with patch.dict("os.environ", env, clear=True):
            config = load_run_config(defaults=defaults)

        assert config.workers == 3
        assert config.timeout_seconds == 30.0

    def test_invalid_shard_raises(self) -> None:
        """Test a malformed shard is a configuration error, not a silent default."""
        with patch.dict("os.environ", {"TESTORCH_SHARD": "3/2"}, clear=True):
            with pytest.raises(ConfigurationError):
                load_run_config()

    def test_custom_prefix(self) -> None:
        """Test custom environment variable prefix."""
        env = {"CUSTOM_RETRIES": "4"}
        with patch.dict("os.environ", env, clear=True):
            config = load_run_config(env_prefix="CUSTOM_")

        assert config.retries == 4
