"""
Result models produced while executing test units.

AttemptResult and TerminalOutcome are serializable pydantic models so that
reports produced on separate machines can be shipped and merged.
RetryDecision is a plain value object that never leaves the process.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class AttemptStatus(StrEnum):
    """Status of a single attempt."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timedOut"
    ABORTED = "aborted"


class TerminalStatus(StrEnum):
    """Final status of a unit once all its attempts concluded."""

    PASSED = "passed"
    FLAKY = "flaky"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class AttemptResult(BaseModel):
    """Record of exactly one attempt of one unit."""

    model_config = ConfigDict(frozen=True)

    unit_id: str
    attempt_index: int = Field(ge=0)
    status: AttemptStatus
    duration_seconds: float = Field(ge=0.0)
    timeout_budget_seconds: float = Field(gt=0.0)
    worker_index: int | None = None
    diagnostics: str | None = None

    @property
    def succeeded(self) -> bool:
        """Check whether the attempt succeeded."""
        return self.status == AttemptStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class RetryDecision:
    """Whether and how to run the next attempt of a unit."""

    should_retry: bool
    """Run another attempt."""

    next_timeout_seconds: float
    """Timeout budget of the next attempt."""

    backoff_delay_seconds: float
    """Delay before the next attempt starts."""

    requires_cleanup: bool
    """Worker state must be fully reset before the next attempt."""


class TerminalOutcome(BaseModel):
    """Final, classified result of a unit."""

    model_config = ConfigDict(frozen=True)

    unit_id: str
    group_id: str | None = None
    final_status: TerminalStatus
    attempt_count: int = Field(ge=0)
    total_duration_seconds: float = Field(default=0.0, ge=0.0)
    attempts: tuple[AttemptResult, ...] = ()
    diagnostics: str | None = None

    @property
    def did_pass(self) -> bool:
        """Passed or flaky; both count as not blocking for pass/fail gating."""
        return self.final_status in (TerminalStatus.PASSED, TerminalStatus.FLAKY)
