"""
Fixed-size pool of isolated workers.

Provides a pool of workers, each owning one execution context, with:
- Lifecycle management (provisioning, disposal, shutdown)
- Full context disposal after any non-success attempt
- One execution thread per worker, replaced on disposal
- Bounded provisioning retries before a fatal pool error
- Async-first design with proper cleanup
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum, auto
from typing import Any, AsyncIterator, Protocol

import structlog

from testorch.errors import (
    ContextProvisioningError,
    PoolClosedError,
    PoolProvisioningError,
)

logger = structlog.get_logger(__name__)


class ContextFactory(Protocol):
    """
    Creates and destroys execution contexts.

    Both methods may be plain functions or coroutines. A context is opaque
    to the pool; it is handed to unit work as-is.
    """

    def create_context(self) -> Any: ...

    def dispose_context(self, context: Any) -> Any: ...


class WorkerState(StrEnum):
    """State of a worker in the pool."""

    AVAILABLE = auto()
    """Worker is available for acquisition."""

    IN_USE = auto()
    """Worker is running a unit or serial group."""

    DISPOSING = auto()
    """Worker context is being torn down and replaced."""

    FAILED = auto()
    """Worker has no context; the next use provisions one."""


@dataclass
class Worker:
    """
    A worker slot with a stable identity and a replaceable context.

    The identity (index, id) never changes. The context is replaced on
    every disposal.
    """

    index: int
    """Stable worker index, 0-based."""

    context: Any = None
    """Current execution context, or None when unprovisioned."""

    state: WorkerState = WorkerState.AVAILABLE
    """Current state of the worker."""

    generation: int = 0
    """Number of contexts created for this worker so far."""

    use_count: int = 0
    """Number of times this worker has been acquired."""

    provisioning_failures: int = 0
    """Consecutive context creation failures."""

    current_label: str | None = None
    """Label of the unit or group currently running, if any."""

    last_used_at: float = field(default_factory=time.time)
    """Unix timestamp when the worker was last acquired or released."""

    _thread: ThreadPoolExecutor | None = field(default=None, init=False, repr=False)

    @property
    def id(self) -> str:
        """Worker identity."""
        return f"worker-{self.index}"

    @property
    def has_context(self) -> bool:
        """Check whether the worker currently holds a context."""
        return self.context is not None

    @property
    def thread(self) -> ThreadPoolExecutor:
        """
        The worker's own execution thread for synchronous unit work.

        Created on first use. A hung attempt only ever blocks this thread,
        and disposal swaps in a new one.
        """
        if self._thread is None:
            self._thread = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix=f"testorch-{self.id}",
            )
        return self._thread

    def release_thread(self) -> None:
        """Abandon the execution thread without waiting for work still on it."""
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.shutdown(wait=False, cancel_futures=True)

    def mark_used(self, label: str | None = None) -> None:
        """Mark worker as acquired."""
        self.last_used_at = time.time()
        self.use_count += 1
        self.current_label = label
        self.state = WorkerState.IN_USE

    def mark_released(self) -> None:
        """Mark worker as released and available."""
        self.current_label = None
        self.state = WorkerState.AVAILABLE if self.has_context else WorkerState.FAILED
        self.last_used_at = time.time()


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class WorkerPool:
    """
    Pool of isolated workers for parallel test execution.

    Features:
    - Fixed number of workers with stable identities
    - At most one unit or serial group per worker at a time
    - Context disposal and replacement after failed attempts
    - Bounded provisioning retries per worker

    Usage:
        async with WorkerPool(factory, size=4) as pool:
            async with pool.acquire("my_test") as worker:
                context = await pool.ensure_context(worker)
    """

    def __init__(
        self,
        factory: ContextFactory,
        size: int,
        max_provisioning_attempts: int = 3,
        shutdown_timeout_seconds: float = 5.0,
    ) -> None:
        """
        Initialize worker pool.

        Args:
            factory: Execution context factory
            size: Number of workers
            max_provisioning_attempts: Consecutive creation failures tolerated per worker
            shutdown_timeout_seconds: Time to wait for busy workers on stop
        """
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")

        self._factory = factory
        self._size = size
        self._max_provisioning_attempts = max_provisioning_attempts
        self._shutdown_timeout = shutdown_timeout_seconds

        self._workers: list[Worker] = [Worker(index=i) for i in range(size)]
        self._available: asyncio.Queue[Worker] = asyncio.Queue()
        self._running = False
        self._closed = False

        self._log = logger.bind(component="worker_pool")

        # Statistics
        self._stats = {
            "total_created": 0,
            "total_disposed": 0,
            "total_provisioning_failures": 0,
            "total_acquisitions": 0,
            "total_releases": 0,
        }

    @property
    def size(self) -> int:
        """Get pool size."""
        return self._size

    @property
    def workers(self) -> tuple[Worker, ...]:
        """Get all workers."""
        return tuple(self._workers)

    @property
    def available_count(self) -> int:
        """Get number of available workers."""
        return self._available.qsize()

    @property
    def in_use_count(self) -> int:
        """Get number of workers in use."""
        return sum(1 for w in self._workers if w.state == WorkerState.IN_USE)

    @property
    def statistics(self) -> dict[str, Any]:
        """Get pool statistics."""
        return {
            **self._stats,
            "size": self.size,
            "available": self.available_count,
            "in_use": self.in_use_count,
        }

    async def start(self) -> None:
        """
        Start the pool and provision one context per worker.

        A worker whose context cannot be created starts empty; provisioning
        is retried when it is next used.
        """
        if self._running:
            return
        if self._closed:
            raise PoolClosedError("Pool is closed")

        self._running = True
        self._log.info("Starting worker pool", size=self._size)

        for worker in self._workers:
            try:
                await self._provision(worker)
            except ContextProvisioningError as e:
                self._log.warning(
                    "Failed to create initial context",
                    worker=worker.id,
                    error=e.reason,
                )
            except PoolProvisioningError:
                await self.stop()
                raise
            await self._available.put(worker)

        self._log.info(
            "Worker pool started",
            provisioned=sum(1 for w in self._workers if w.has_context),
        )

    async def stop(self) -> None:
        """
        Stop the pool and dispose every context.

        Waits for in-use workers to be released with timeout.
        """
        if not self._running:
            return

        self._running = False
        self._log.info("Stopping worker pool")

        start = time.monotonic()
        while self.in_use_count > 0 and (time.monotonic() - start) < self._shutdown_timeout:
            await asyncio.sleep(0.05)

        if self.in_use_count > 0:
            self._log.warning(
                "Disposing workers still in use",
                in_use=self.in_use_count,
            )

        for worker in self._workers:
            await self._teardown(worker)

        self._closed = True
        self._log.info("Worker pool stopped", stats=self._stats)

    @contextlib.asynccontextmanager
    async def acquire(self, label: str | None = None) -> AsyncIterator[Worker]:
        """
        Acquire a free worker, waiting until one is released.

        Usage:
            async with pool.acquire("checkout-flow") as worker:
                ...

        Args:
            label: Optional unit or group label for tracking

        Yields:
            The acquired worker
        """
        if not self._running:
            raise PoolClosedError("Pool is not running")

        worker = await self._available.get()
        self._stats["total_acquisitions"] += 1
        worker.mark_used(label)
        self._log.debug(
            "Worker acquired",
            worker=worker.id,
            label=label,
            use_count=worker.use_count,
        )

        try:
            yield worker
        finally:
            self._release(worker)

    def _release(self, worker: Worker) -> None:
        """Release a worker back to the pool."""
        self._stats["total_releases"] += 1
        worker.mark_released()
        self._available.put_nowait(worker)
        self._log.debug("Worker released", worker=worker.id)

    async def ensure_context(self, worker: Worker) -> Any:
        """
        Return the worker's context, provisioning one if needed.

        Raises:
            ContextProvisioningError: If creation failed; the caller records
                this as a failed attempt
            PoolProvisioningError: If the worker exceeded its consecutive
                provisioning failure bound
        """
        if worker.has_context:
            return worker.context
        return await self._provision(worker)

    async def dispose(self, worker: Worker) -> None:
        """
        Tear down a worker's context and replace it with a fresh one.

        If the replacement cannot be created the worker is left empty and
        the next ensure_context call retries.
        """
        previous_state = worker.state
        worker.state = WorkerState.DISPOSING
        self._log.debug(
            "Disposing worker context",
            worker=worker.id,
            generation=worker.generation,
        )

        await self._teardown(worker)

        try:
            await self._provision(worker)
        except ContextProvisioningError as e:
            self._log.warning(
                "Failed to replace disposed context",
                worker=worker.id,
                error=e.reason,
            )
        finally:
            worker.state = previous_state

    async def _provision(self, worker: Worker) -> Any:
        """Create a new context for a worker."""
        if worker.provisioning_failures >= self._max_provisioning_attempts:
            raise PoolProvisioningError(
                worker.id,
                worker.provisioning_failures,
                "provisioning failure bound exceeded",
            )

        try:
            context = await _maybe_await(self._factory.create_context())
            if context is None:
                raise ValueError("factory returned no context")
        except Exception as e:
            worker.provisioning_failures += 1
            self._stats["total_provisioning_failures"] += 1
            self._log.error(
                "Failed to create execution context",
                worker=worker.id,
                consecutive_failures=worker.provisioning_failures,
                error=str(e),
            )
            if worker.provisioning_failures >= self._max_provisioning_attempts:
                raise PoolProvisioningError(
                    worker.id, worker.provisioning_failures, str(e)
                ) from e
            raise ContextProvisioningError(worker.id, str(e)) from e

        worker.context = context
        worker.generation += 1
        worker.provisioning_failures = 0
        self._stats["total_created"] += 1
        self._log.debug(
            "Created execution context",
            worker=worker.id,
            generation=worker.generation,
        )
        return context

    async def _teardown(self, worker: Worker) -> None:
        """Dispose a worker's context and execution thread safely."""
        worker.release_thread()
        context, worker.context = worker.context, None
        if context is None:
            return
        self._stats["total_disposed"] += 1
        try:
            await _maybe_await(self._factory.dispose_context(context))
        except Exception as e:
            self._log.warning(
                "Error disposing context",
                worker=worker.id,
                error=str(e),
            )

    async def __aenter__(self) -> WorkerPool:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.stop()
