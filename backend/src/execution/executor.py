"""
Attempt executor.

Runs exactly one attempt of one unit inside a worker's execution context,
enforces the attempt's timeout budget and turns whatever happened into an
AttemptResult. Faults in unit work never escape; only cancellation of the
calling task propagates.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import traceback
from typing import TYPE_CHECKING, Any, Awaitable

import structlog

from testorch.execution.models import AttemptResult, AttemptStatus
from testorch.units.models import AttemptInfo, WorkResult

if TYPE_CHECKING:
    from testorch.concurrency.worker_pool import Worker
    from testorch.units.models import TestUnit

logger = structlog.get_logger(__name__)


def normalize_work_result(raw: Any) -> tuple[AttemptStatus, str | None]:
    """
    Map a unit work return value to an attempt status.

    ``None`` and ``True`` are success, ``False`` is failure. A WorkResult or
    a ``(bool, diagnostics)`` tuple carries diagnostics. Any other value is
    treated as success.
    """
    match raw:
        case WorkResult(success=success, diagnostics=diagnostics):
            return _status_of(success), diagnostics
        case (bool() as success, diagnostics):
            return _status_of(success), None if diagnostics is None else str(diagnostics)
        case bool() as success:
            return _status_of(success), None if success else "Unit work reported failure"
        case _:
            return AttemptStatus.SUCCESS, None


def _status_of(success: bool) -> AttemptStatus:
    return AttemptStatus.SUCCESS if success else AttemptStatus.FAILURE


def invert_expected_failure(
    status: AttemptStatus, diagnostics: str | None
) -> tuple[AttemptStatus, str | None]:
    """
    Swap success and failure for a unit annotated as expected to fail.

    Timeouts and aborts are never what such a unit expects, so they are
    left unchanged.
    """
    match status:
        case AttemptStatus.FAILURE:
            return AttemptStatus.SUCCESS, diagnostics
        case AttemptStatus.SUCCESS:
            return AttemptStatus.FAILURE, "Expected to fail, but passed"
        case _:
            return status, diagnostics


class AttemptExecutor:
    """
    Executes single attempts of test units.

    Coroutine work is awaited on the event loop. Plain callables run on the
    worker's own execution thread, and their timeout budget starts once the
    work is actually running there.

    Usage:
        executor = AttemptExecutor()
        result = await executor.execute(unit, 0, 30.0, worker)
    """

    def __init__(self) -> None:
        """Initialize attempt executor."""
        self._log = logger.bind(component="attempt_executor")

    async def execute(
        self,
        unit: TestUnit,
        attempt_index: int,
        timeout_budget: float,
        worker: Worker,
    ) -> AttemptResult:
        """
        Run one attempt of a unit.

        Args:
            unit: The unit to run
            attempt_index: 0-based attempt number
            timeout_budget: Seconds the attempt may take
            worker: Worker whose context and thread the work runs on

        Returns:
            The attempt result; never raises for faults in unit work

        Raises:
            asyncio.CancelledError: If the calling task is cancelled
        """
        info = AttemptInfo(
            unit_id=unit.id,
            attempt_index=attempt_index,
            timeout_seconds=timeout_budget,
            worker_index=worker.index,
        )
        start = time.monotonic()
        deadline = asyncio.timeout(timeout_budget)

        try:
            running = await self._start(unit, worker, info)
            async with deadline:
                raw = await running
                if inspect.isawaitable(raw):
                    raw = await raw
            status, diagnostics = normalize_work_result(raw)
        except TimeoutError:
            if deadline.expired():
                status = AttemptStatus.TIMED_OUT
                diagnostics = f"Attempt timed out after {timeout_budget}s"
            else:
                status = AttemptStatus.FAILURE
                diagnostics = traceback.format_exc()
        except Exception:
            status = AttemptStatus.FAILURE
            diagnostics = traceback.format_exc()

        if unit.is_expected_to_fail:
            status, diagnostics = invert_expected_failure(status, diagnostics)

        result = AttemptResult(
            unit_id=unit.id,
            attempt_index=attempt_index,
            status=status,
            duration_seconds=time.monotonic() - start,
            timeout_budget_seconds=timeout_budget,
            worker_index=worker.index,
            diagnostics=diagnostics,
        )

        log = self._log.info if result.succeeded else self._log.warning
        log(
            "Attempt finished",
            unit=unit.id,
            attempt=attempt_index,
            status=result.status,
            duration=round(result.duration_seconds, 3),
            timeout=timeout_budget,
            worker=worker.id,
        )
        return result

    async def _start(self, unit: TestUnit, worker: Worker, info: AttemptInfo) -> Awaitable[Any]:
        """
        Start the unit's work and return an awaitable for its result.

        Synchronous work is submitted to the worker's thread; this returns
        only once the thread has picked it up.
        """
        work = unit.work
        if work is None:
            raise RuntimeError(f"Unit '{unit.id}' has no work to execute")

        if inspect.iscoroutinefunction(work):
            return work(worker.context, info)

        loop = asyncio.get_running_loop()
        started = asyncio.Event()

        def run() -> Any:
            loop.call_soon_threadsafe(started.set)
            return work(worker.context, info)

        future = loop.run_in_executor(worker.thread, run)
        waiter = asyncio.ensure_future(started.wait())
        try:
            await asyncio.wait({future, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        return future

    @staticmethod
    def aborted(
        unit: TestUnit,
        attempt_index: int,
        timeout_budget: float,
        started_at: float,
        worker_index: int | None = None,
    ) -> AttemptResult:
        """Build the result of an attempt cancelled by run shutdown."""
        return AttemptResult(
            unit_id=unit.id,
            attempt_index=attempt_index,
            status=AttemptStatus.ABORTED,
            duration_seconds=max(0.0, time.monotonic() - started_at),
            timeout_budget_seconds=timeout_budget,
            worker_index=worker_index,
            diagnostics="Attempt aborted: run cancelled",
        )

    @staticmethod
    def provisioning_failure(
        unit: TestUnit,
        attempt_index: int,
        timeout_budget: float,
        error: Exception,
        worker_index: int | None = None,
    ) -> AttemptResult:
        """Build the result of an attempt whose worker context could not be created."""
        return AttemptResult(
            unit_id=unit.id,
            attempt_index=attempt_index,
            status=AttemptStatus.FAILURE,
            duration_seconds=0.0,
            timeout_budget_seconds=timeout_budget,
            worker_index=worker_index,
            diagnostics=f"Worker provisioning failed: {error}",
        )
