"""
Run report models.

A RunReport is the structured result of a run or of one shard of a run.
It serializes to JSON so that shards executed on separate machines can be
merged into one consolidated report.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from testorch.execution.models import TerminalOutcome, TerminalStatus


class StatusCounts(BaseModel):
    """Number of outcomes per terminal status."""

    model_config = ConfigDict(frozen=True)

    passed: int = Field(default=0, ge=0)
    flaky: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    aborted: int = Field(default=0, ge=0)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[TerminalOutcome]) -> StatusCounts:
        """Count outcomes by final status."""
        counts = {status.value: 0 for status in TerminalStatus}
        for outcome in outcomes:
            counts[outcome.final_status.value] += 1
        return cls(**counts)

    @property
    def total(self) -> int:
        """Total number of outcomes."""
        return self.passed + self.flaky + self.failed + self.skipped + self.aborted

    def get(self, status: TerminalStatus) -> int:
        """Count for one status."""
        return getattr(self, status.value)

    def __add__(self, other: StatusCounts) -> StatusCounts:
        return StatusCounts(
            **{status.value: self.get(status) + other.get(status) for status in TerminalStatus}
        )


class RunReport(BaseModel):
    """Structured result of a run, a shard, or a merge of shards."""

    model_config = ConfigDict(frozen=True)

    shard_index: int | None = Field(default=None, ge=1)
    """1-based shard index, or None for a global or merged report."""

    shard_total: int | None = Field(default=None, ge=1)
    """Total number of shards the run was split into."""

    outcomes: tuple[TerminalOutcome, ...] = ()
    """Terminal outcomes sorted by unit id."""

    counts: StatusCounts = Field(default_factory=StatusCounts)
    """Outcome counts per status."""

    started_at: datetime
    """When the run started."""

    finished_at: datetime
    """When the run finished."""

    duration_seconds: float = Field(default=0.0, ge=0.0)
    """Wall-clock duration of the run."""

    aborted: bool = False
    """The run was cut short by the global timeout or an external abort."""

    @model_validator(mode="after")
    def validate_counts(self) -> Self:
        """Counts must always agree with the outcomes they summarize."""
        expected = StatusCounts.from_outcomes(self.outcomes)
        if self.counts != expected:
            raise ValueError(
                f"Report counts {self.counts.model_dump()} do not match "
                f"outcomes {expected.model_dump()}"
            )
        return self

    @classmethod
    def build(
        cls,
        outcomes: Iterable[TerminalOutcome],
        *,
        started_at: datetime,
        finished_at: datetime,
        shard_index: int | None = None,
        shard_total: int | None = None,
        aborted: bool = False,
    ) -> RunReport:
        """Build a report with sorted outcomes and recomputed counts."""
        ordered = tuple(sorted(outcomes, key=lambda outcome: outcome.unit_id))
        return cls(
            shard_index=shard_index,
            shard_total=shard_total,
            outcomes=ordered,
            counts=StatusCounts.from_outcomes(ordered),
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=max(0.0, (finished_at - started_at).total_seconds()),
            aborted=aborted,
        )

    @property
    def is_merged(self) -> bool:
        """Check whether this report is a global or merged report."""
        return self.shard_index is None

    @property
    def unit_ids(self) -> list[str]:
        """Unit ids covered by this report."""
        return [outcome.unit_id for outcome in self.outcomes]

    def outcome_for(self, unit_id: str) -> TerminalOutcome | None:
        """Look up the outcome of a unit."""
        for outcome in self.outcomes:
            if outcome.unit_id == unit_id:
                return outcome
        return None

    def with_status(self, status: TerminalStatus) -> list[TerminalOutcome]:
        """Outcomes with the given final status."""
        return [outcome for outcome in self.outcomes if outcome.final_status == status]
