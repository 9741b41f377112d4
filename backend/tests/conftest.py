"""Pytest fixtures for testorch tests."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from testorch.concurrency.config import RunConfig
from testorch.units.models import AttemptInfo, TestUnit


class FakeContext:
    """Opaque execution context handed to unit work."""

    def __init__(self, serial: int) -> None:
        self.serial = serial
        self.disposed = False
        self.state: dict[str, Any] = {}

    def __repr__(self) -> str:
        return f"FakeContext({self.serial})"


class FakeContextFactory:
    """Context factory recording every context it creates and disposes."""

    def __init__(self, fail_first: int = 0, fail_always: bool = False) -> None:
        self.fail_first = fail_first
        self.fail_always = fail_always
        self.create_calls = 0
        self.created: list[FakeContext] = []
        self.disposed: list[FakeContext] = []

    def create_context(self) -> FakeContext:
        self.create_calls += 1
        if self.fail_always or self.create_calls <= self.fail_first:
            raise RuntimeError("context backend unavailable")
        context = FakeContext(len(self.created))
        self.created.append(context)
        return context

    def dispose_context(self, context: FakeContext) -> None:
        context.disposed = True
        self.disposed.append(context)


def passing_work(context: Any, info: AttemptInfo) -> None:
    """Unit work that always succeeds."""
    return None


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test artifacts."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def context_factory() -> FakeContextFactory:
    """Context factory that always succeeds."""
    return FakeContextFactory()


@pytest.fixture
def factory_class() -> type[FakeContextFactory]:
    """The fake factory class, for tests that need custom failure modes."""
    return FakeContextFactory


@pytest.fixture
def make_unit() -> Callable[..., TestUnit]:
    """Build a test unit; work defaults to always passing."""

    def _make(unit_id: str, work: Any = passing_work, **fields: Any) -> TestUnit:
        return TestUnit(id=unit_id, work=work, **fields)

    return _make


@pytest.fixture
def fast_config() -> RunConfig:
    """Run configuration without backoff delays."""
    return RunConfig(
        retries=0,
        timeout_seconds=5.0,
        workers=2,
        backoff_unit_seconds=0.0,
        backoff_ceiling_seconds=0.0,
        grace_period_seconds=0.5,
    )
