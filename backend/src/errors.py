"""
Exception hierarchy for the orchestration core.

Only structural faults are raised to callers. Attempt-level faults
(assertion failures, crashes, timeouts) are captured as data on
AttemptResult and TerminalOutcome instead.
"""

from __future__ import annotations

from typing import Iterable


class OrchestrationError(Exception):
    """Base exception for orchestration errors."""


class ConfigurationError(OrchestrationError, ValueError):
    """Raised when run configuration values contradict each other."""


class CollectionError(OrchestrationError):
    """Raised when test units cannot be collected or loaded."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None) -> None:
        self.line = line
        self.column = column
        location = ""
        if line is not None:
            location = f" at line {line}"
            if column is not None:
                location += f", column {column}"
        super().__init__(f"{message}{location}")


class WorkerPoolError(OrchestrationError):
    """Base exception for worker pool errors."""


class PoolClosedError(WorkerPoolError):
    """Raised when acquiring from a pool that is not running."""


class ContextProvisioningError(WorkerPoolError):
    """Raised when an execution context could not be created for a worker."""

    def __init__(self, worker_id: str, reason: str) -> None:
        self.worker_id = worker_id
        self.reason = reason
        super().__init__(f"Failed to provision context for {worker_id}: {reason}")


class PoolProvisioningError(WorkerPoolError):
    """Raised when a worker exceeds its consecutive provisioning failure bound."""

    def __init__(self, worker_id: str, attempts: int, reason: str) -> None:
        self.worker_id = worker_id
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Worker {worker_id} could not be provisioned after {attempts} attempts: {reason}"
        )


class MergeConflictError(OrchestrationError):
    """Raised when shard reports violate the partitioning invariant."""

    def __init__(self, message: str, conflicting_ids: Iterable[str] = ()) -> None:
        self.conflicting_ids = sorted(set(conflicting_ids))
        detail = ""
        if self.conflicting_ids:
            detail = f": {', '.join(self.conflicting_ids)}"
        super().__init__(f"{message}{detail}")
