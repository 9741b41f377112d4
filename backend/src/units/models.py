"""
Pydantic models for test units.

A test unit is the atomic piece of schedulable work: one test case with
its retry budget, timeout budget, serial group membership and the opaque
callable that performs the test against an execution context.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

SLOW_TIMEOUT_MULTIPLIER = 3
"""Multiplier applied to the base timeout of units annotated as slow."""


class UnitAnnotation(StrEnum):
    """Annotations that change how a unit is scheduled."""

    SKIP = "skip"
    """Never executed, reported as skipped."""

    FIXME = "fixme"
    """Known broken, never executed, reported as skipped."""

    SLOW = "slow"
    """Gets triple the base timeout."""

    FAIL = "fail"
    """Expected to fail: a failing attempt counts as success and a passing one as failure."""

    ONLY = "only"
    """Focused: when any collected unit carries it, only focused units run."""


@dataclass(frozen=True, slots=True)
class AttemptInfo:
    """
    Explicit per-attempt parameters handed to unit work.

    Passed alongside the execution context so work never has to consult
    ambient state to learn which retry it is on.
    """

    unit_id: str
    attempt_index: int
    timeout_seconds: float
    worker_index: int

    @property
    def retry(self) -> int:
        """Retry number of this attempt (0 on the first try)."""
        return self.attempt_index


@dataclass(frozen=True, slots=True)
class WorkResult:
    """Explicit result a unit's work may return."""

    success: bool
    diagnostics: str | None = None


UnitWork = Callable[[Any, AttemptInfo], Any]
"""
Unit work callable: ``work(context, attempt_info)``.

May be a plain function or a coroutine function. Returning ``None`` or
``True`` means success, ``False`` means failure, and a ``WorkResult`` or
``(bool, diagnostics)`` tuple carries explicit diagnostics. Raising is a
failure with the traceback as diagnostics.
"""


class TestUnit(BaseModel):
    """A single test case scheduled by the orchestrator."""

    __test__ = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1, max_length=512)
    group_id: str | None = None
    max_retries: int | None = Field(default=None, ge=0, le=100)
    base_timeout_seconds: float | None = Field(default=None, gt=0)
    annotations: frozenset[UnitAnnotation] = Field(default_factory=frozenset)
    annotation_reason: str | None = None
    tags: tuple[str, ...] = ()
    work: UnitWork | None = Field(default=None, exclude=True, repr=False)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Reject ids with leading/trailing whitespace or control characters."""
        if v != v.strip():
            raise ValueError("Unit id cannot have leading or trailing whitespace")
        if re.search(r"[\x00-\x1f]", v):
            raise ValueError("Unit id cannot contain control characters")
        return v

    @field_validator("group_id")
    @classmethod
    def validate_group_id(cls, v: str | None) -> str | None:
        """Treat blank group ids as independent units."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Normalize tags to the ``@tag`` form."""
        normalized = []
        for tag in v:
            tag = tag.strip()
            if not tag:
                continue
            normalized.append(tag if tag.startswith("@") else f"@{tag}")
        return tuple(normalized)

    @model_validator(mode="after")
    def validate_work(self) -> TestUnit:
        """Require work for every unit that will actually execute."""
        if self.work is None and not self.is_skipped_by_annotation:
            raise ValueError(f"Unit '{self.id}' has no work to execute")
        return self

    @property
    def is_independent(self) -> bool:
        """Check whether the unit belongs to no serial group."""
        return self.group_id is None

    @property
    def is_skipped_by_annotation(self) -> bool:
        """Check whether a skip or fixme annotation prevents execution."""
        return bool(self.annotations & {UnitAnnotation.SKIP, UnitAnnotation.FIXME})

    @property
    def is_slow(self) -> bool:
        """Check whether the unit is annotated as slow."""
        return UnitAnnotation.SLOW in self.annotations

    @property
    def is_expected_to_fail(self) -> bool:
        """Check whether the unit is annotated as expected to fail."""
        return UnitAnnotation.FAIL in self.annotations

    @property
    def is_focused(self) -> bool:
        """Check whether the unit is annotated with only."""
        return UnitAnnotation.ONLY in self.annotations

    @property
    def effective_base_timeout(self) -> float:
        """Attempt-0 timeout budget in seconds, with the slow multiplier applied."""
        if self.base_timeout_seconds is None:
            raise ValueError(f"Unit '{self.id}' has no base timeout; collect it first")
        if self.is_slow:
            return self.base_timeout_seconds * SLOW_TIMEOUT_MULTIPLIER
        return self.base_timeout_seconds

    @property
    def retry_budget(self) -> int:
        """Maximum number of retries for this unit."""
        if self.max_retries is None:
            raise ValueError(f"Unit '{self.id}' has no retry budget; collect it first")
        return self.max_retries

    @property
    def skip_reason(self) -> str:
        """Human-readable reason for an annotation skip."""
        annotation = (
            UnitAnnotation.FIXME
            if UnitAnnotation.FIXME in self.annotations
            else UnitAnnotation.SKIP
        )
        if self.annotation_reason:
            return f"{annotation}: {self.annotation_reason}"
        return str(annotation)

    def with_defaults(self, max_retries: int, base_timeout_seconds: float) -> TestUnit:
        """
        Fill unset retry and timeout budgets.

        Returns a new instance; values already set on the unit win.
        """
        updates: dict[str, Any] = {}
        if self.max_retries is None:
            updates["max_retries"] = max_retries
        if self.base_timeout_seconds is None:
            updates["base_timeout_seconds"] = base_timeout_seconds
        if not updates:
            return self
        return self.model_copy(update=updates)
