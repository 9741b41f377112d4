"""Unit tests for logging setup."""

from __future__ import annotations

from typing import Generator

import pytest
import structlog

from testorch.log import configure_logging


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_json_by_default(self) -> None:
        """Test non-verbose logging renders JSON."""
        configure_logging()

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_verbose_uses_console(self) -> None:
        """Test verbose logging renders for humans at debug level."""
        configure_logging(verbose=True)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_explicit_json_with_verbose(self) -> None:
        configure_logging(verbose=True, json_output=True)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
