"""
testorch - test run orchestration core.

Schedules test units across a pool of isolated workers, retries failures
with escalating timeouts, classifies flaky results, shards suites across
machines and merges the per-shard reports.
"""

__version__ = "0.1.0"

from testorch.concurrency import (
    RunConfig,
    WorkerPool,
    load_run_config,
)
from testorch.errors import (
    CollectionError,
    ConfigurationError,
    ContextProvisioningError,
    MergeConflictError,
    OrchestrationError,
    PoolProvisioningError,
)
from testorch.execution import (
    AttemptExecutor,
    AttemptResult,
    AttemptStatus,
    RetryDecision,
    RetryPolicy,
    TerminalOutcome,
    TerminalStatus,
    classify,
)
from testorch.log import configure_logging
from testorch.reporting import (
    ExitStatus,
    LoggingReportSink,
    ReportSink,
    RunReport,
    StatusCounts,
    exit_status,
    merge,
)
from testorch.scheduling import RunCoordinator, Shard, partition, select_shard
from testorch.units import (
    AttemptInfo,
    TestUnit,
    UnitAnnotation,
    UnitCollector,
    WorkResult,
)

__all__ = [
    # Units
    "AttemptInfo",
    "TestUnit",
    "UnitAnnotation",
    "UnitCollector",
    "WorkResult",
    # Execution
    "AttemptExecutor",
    "AttemptResult",
    "AttemptStatus",
    "RetryDecision",
    "RetryPolicy",
    "TerminalOutcome",
    "TerminalStatus",
    "classify",
    # Concurrency
    "RunConfig",
    "WorkerPool",
    "load_run_config",
    # Scheduling
    "RunCoordinator",
    "Shard",
    "partition",
    "select_shard",
    # Reporting
    "ExitStatus",
    "LoggingReportSink",
    "ReportSink",
    "RunReport",
    "StatusCounts",
    "exit_status",
    "merge",
    # Errors
    "CollectionError",
    "ConfigurationError",
    "ContextProvisioningError",
    "MergeConflictError",
    "OrchestrationError",
    "PoolProvisioningError",
    # Logging
    "configure_logging",
    "__version__",
]
