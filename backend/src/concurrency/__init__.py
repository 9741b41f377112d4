"""
Concurrency module for parallel test execution.

Provides:
- WorkerPool of isolated workers with disposable execution contexts
- Configuration for retries, timeouts, workers and sharding
"""

from testorch.concurrency.config import (
    RunConfig,
    default_worker_count,
    load_run_config,
    parse_shard,
)
from testorch.concurrency.worker_pool import (
    ContextFactory,
    Worker,
    WorkerPool,
    WorkerState,
)

__all__ = [
    # Configuration
    "RunConfig",
    "default_worker_count",
    "load_run_config",
    "parse_shard",
    # Worker Pool
    "ContextFactory",
    "Worker",
    "WorkerPool",
    "WorkerState",
]
