"""
Run coordinator.

Drives a whole run (or one shard of it):
- Collects units and selects this shard's slice
- Dispatches independent units and serial groups onto the worker pool
- Runs each unit's attempt/retry state machine
- Streams terminal outcomes to a single aggregator task
- Enforces the global run timeout and external aborts
- Produces a RunReport and hands it to report sinks
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum, auto
from typing import Callable, Iterable, Sequence

import structlog

from testorch.concurrency.config import RunConfig
from testorch.concurrency.worker_pool import ContextFactory, Worker, WorkerPool
from testorch.errors import ContextProvisioningError
from testorch.execution import classifier
from testorch.execution.executor import AttemptExecutor
from testorch.execution.models import AttemptResult, TerminalOutcome, TerminalStatus
from testorch.execution.retry import RetryPolicy
from testorch.reporting.models import RunReport
from testorch.reporting.sink import ReportSink
from testorch.scheduling.sharding import build_blocks, select_shard
from testorch.units.collector import UnitCollector
from testorch.units.models import TestUnit

logger = structlog.get_logger(__name__)


class UnitPhase(StrEnum):
    """Where a unit is in its attempt state machine."""

    PENDING = auto()
    """Not started."""

    RUNNING = auto()
    """An attempt is in flight."""

    SUCCEEDED = auto()
    """Last attempt succeeded; the unit's serial group may still be running."""

    RETRYING = auto()
    """Last attempt failed; waiting to run again."""

    TERMINAL = auto()
    """Outcome emitted."""


@dataclass
class UnitState:
    """Mutable bookkeeping for one unit during a run."""

    unit: TestUnit
    phase: UnitPhase = UnitPhase.PENDING
    history: list[AttemptResult] = field(default_factory=list)
    attempt_index: int = 0
    timeout_budget: float = 0.0
    attempt_started_at: float = 0.0
    worker_index: int | None = None


@dataclass(frozen=True, slots=True)
class DispatchItem:
    """An independent unit or a whole serial group, dispatched to one worker."""

    units: tuple[TestUnit, ...]
    group_id: str | None = None

    @property
    def label(self) -> str:
        return self.group_id if self.group_id is not None else self.units[0].id

    @property
    def is_group(self) -> bool:
        return self.group_id is not None

    @property
    def max_retries(self) -> int:
        """Retry budget; a group retries only as often as its strictest member allows."""
        return min(unit.retry_budget for unit in self.units)


class OutcomeAggregator:
    """
    Single owner of the run's outcome list and counters.

    Workers never touch the aggregate state directly; they put outcomes on
    the queue and this task applies them one at a time.
    """

    def __init__(
        self,
        queue: asyncio.Queue[TerminalOutcome | None],
        on_outcome: Callable[[TerminalOutcome], None] | None = None,
    ) -> None:
        self._queue = queue
        self._on_outcome = on_outcome
        self._outcomes: list[TerminalOutcome] = []
        self._counts = {status: 0 for status in TerminalStatus}
        self._log = logger.bind(component="outcome_aggregator")

    async def run(self) -> list[TerminalOutcome]:
        """Consume outcomes until the ``None`` sentinel arrives."""
        while True:
            outcome = await self._queue.get()
            if outcome is None:
                return self._outcomes

            self._outcomes.append(outcome)
            self._counts[outcome.final_status] += 1
            self._log.debug(
                "Outcome recorded",
                unit=outcome.unit_id,
                status=outcome.final_status,
                completed=len(self._outcomes),
                failed=self._counts[TerminalStatus.FAILED],
            )

            if self._on_outcome is not None:
                try:
                    self._on_outcome(outcome)
                except Exception as e:
                    self._log.warning(
                        "Error in outcome callback",
                        unit=outcome.unit_id,
                        error=str(e),
                    )


def build_items(units: Sequence[TestUnit]) -> list[DispatchItem]:
    """Group units into dispatch items, serial groups kept whole and in order."""
    return [
        DispatchItem(units=block.units, group_id=block.group_id)
        for block in build_blocks(units)
    ]


class RunCoordinator:
    """
    Top-level driver of a test run.

    Features:
    - Sharded or full runs over a fixed-size worker pool
    - Escalating timeouts and exponential backoff between attempts
    - Atomic retries of serial groups on a fresh worker context
    - Streaming outcome aggregation without a global barrier
    - Global timeout that still yields a well-formed report

    Usage:
        coordinator = RunCoordinator(factory, RunConfig(retries=2, workers=4))
        report = await coordinator.run(units)

    Or with sync entry point:
        report = RunCoordinator(factory).run_sync(units)
    """

    def __init__(
        self,
        factory: ContextFactory,
        config: RunConfig | None = None,
        policy: RetryPolicy | None = None,
        sinks: Iterable[ReportSink] = (),
        on_outcome: Callable[[TerminalOutcome], None] | None = None,
    ) -> None:
        """
        Initialize run coordinator.

        Args:
            factory: Execution context factory for the worker pool
            config: Run configuration (defaults to RunConfig())
            policy: Retry policy (built from the config if not provided)
            sinks: Report sinks receiving the finished report
            on_outcome: Callback when each unit reaches its terminal outcome
        """
        self._factory = factory
        self._config = config or RunConfig()
        self._policy = policy
        self._sinks = list(sinks)
        self._on_outcome = on_outcome

        self._states: dict[str, UnitState] = {}
        self._outcome_queue: asyncio.Queue[TerminalOutcome | None] | None = None
        self._abort_event: asyncio.Event | None = None
        self._abort_reason: str | None = None
        self._running = False

        self._log = logger.bind(component="run_coordinator")

    @property
    def config(self) -> RunConfig:
        """Default run configuration."""
        return self._config

    @property
    def is_running(self) -> bool:
        """Check whether a run is in progress."""
        return self._running

    def abort(self, reason: str = "external abort") -> None:
        """
        Request cancellation of the current run.

        Must be called from the event loop running the coordinator.
        Unstarted units end skipped, in-flight ones aborted, and run()
        still returns a report.
        """
        self._abort_reason = reason
        if self._abort_event is not None:
            self._abort_event.set()
        self._log.warning("Run abort requested", reason=reason)

    def run_sync(
        self,
        units: Iterable[TestUnit],
        config: RunConfig | None = None,
    ) -> RunReport:
        """
        Synchronous entry point for a run.

        Runs the async execution in a fresh event loop.
        """
        return asyncio.run(self.run(units, config))

    async def run(
        self,
        units: Iterable[TestUnit],
        config: RunConfig | None = None,
    ) -> RunReport:
        """
        Run units to completion, timeout or abort.

        Args:
            units: Declared units, in declaration order
            config: Overrides the coordinator's configuration for this run

        Returns:
            The run report (one shard's report when sharding is configured)

        Raises:
            ConfigurationError: On contradictory configuration
            CollectionError: On invalid units
            PoolProvisioningError: If workers cannot be provisioned at all
        """
        if self._running:
            raise RuntimeError("Coordinator is already running")

        config = config or self._config
        policy = self._policy or RetryPolicy.from_config(config)
        started_at = datetime.now(UTC)

        collected = UnitCollector(config).collect(units)
        if config.shard_index is not None and config.shard_total is not None:
            collected = select_shard(collected, config.shard_index, config.shard_total)

        self._running = True
        self._states = {unit.id: UnitState(unit=unit) for unit in collected}
        self._outcome_queue = asyncio.Queue()
        self._abort_event = asyncio.Event()
        if self._abort_reason is not None:
            self._abort_event.set()

        aggregator = OutcomeAggregator(self._outcome_queue, self._on_outcome)
        aggregator_task = asyncio.create_task(aggregator.run())

        self._log.info(
            "Starting run",
            units=len(collected),
            workers=config.workers,
            retries=config.retries,
            shard=f"{config.shard_index}/{config.shard_total}" if config.is_sharded else None,
            global_timeout=config.global_timeout_seconds,
        )

        runnable: list[TestUnit] = []
        for unit in collected:
            if unit.is_skipped_by_annotation:
                self._finalize(self._states[unit.id], classifier.skipped(unit, unit.skip_reason))
            else:
                runnable.append(unit)

        items = build_items(runnable)
        aborted = False
        executor = AttemptExecutor()
        pool = WorkerPool(
            self._factory,
            size=config.workers,
            max_provisioning_attempts=config.max_provisioning_attempts,
            shutdown_timeout_seconds=config.grace_period_seconds,
        )

        try:
            if items:
                async with pool:
                    aborted = await self._dispatch(items, pool, executor, policy, config)
            elif self._abort_event.is_set():
                aborted = True
        except BaseException:
            aggregator_task.cancel()
            self._running = False
            self._abort_reason = None
            raise

        self._finalize_unfinished(aborted)
        await self._outcome_queue.put(None)
        outcomes = await aggregator_task

        report = RunReport.build(
            outcomes,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            shard_index=config.shard_index,
            shard_total=config.shard_total,
            aborted=aborted,
        )

        self._running = False
        self._abort_reason = None

        self._log.info(
            "Run completed",
            total=report.counts.total,
            passed=report.counts.passed,
            flaky=report.counts.flaky,
            failed=report.counts.failed,
            skipped=report.counts.skipped,
            aborted=report.counts.aborted,
            duration=round(report.duration_seconds, 3),
            run_aborted=report.aborted,
        )

        for sink in self._sinks:
            try:
                sink.emit(report)
            except Exception as e:
                self._log.warning(
                    "Error in report sink",
                    sink=type(sink).__name__,
                    error=str(e),
                )

        return report

    async def _dispatch(
        self,
        items: Sequence[DispatchItem],
        pool: WorkerPool,
        executor: AttemptExecutor,
        policy: RetryPolicy,
        config: RunConfig,
    ) -> bool:
        """Run all items; returns True if the run was cut short."""
        tasks = [
            asyncio.create_task(self._run_item(item, pool, executor, policy))
            for item in items
        ]

        try:
            aborted, pending = await self._wait(tasks, config)
        except BaseException:
            await self._cancel(tasks, config.grace_period_seconds)
            raise

        if pending:
            self._log.warning(
                "Cancelling in-flight work",
                pending_items=len(pending),
                reason=self._abort_reason or "global timeout",
            )
            await self._cancel(pending, config.grace_period_seconds)

        return aborted

    async def _wait(
        self,
        tasks: Sequence[asyncio.Task[None]],
        config: RunConfig,
    ) -> tuple[bool, set[asyncio.Task[None]]]:
        """
        Wait for items until all finish, the deadline passes or an abort arrives.

        Re-raises the first fatal error raised by an item.
        """
        if self._abort_event is None:
            raise RuntimeError("Run not started")

        loop = asyncio.get_running_loop()
        deadline = (
            None
            if config.global_timeout_seconds is None
            else loop.time() + config.global_timeout_seconds
        )
        abort_waiter = asyncio.create_task(self._abort_event.wait())
        pending: set[asyncio.Task[None]] = set(tasks)

        try:
            while pending:
                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    {*pending, abort_waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pending -= done

                for task in done:
                    if task is abort_waiter or task.cancelled():
                        continue
                    error = task.exception()
                    if error is not None:
                        self._log.error("Fatal error during run", error=str(error))
                        raise error

                if abort_waiter in done:
                    return True, pending
                if deadline is not None and loop.time() >= deadline and pending:
                    self._log.warning(
                        "Global timeout reached",
                        timeout=config.global_timeout_seconds,
                        pending_items=len(pending),
                    )
                    return True, pending
        finally:
            abort_waiter.cancel()

        return False, pending

    @staticmethod
    async def _cancel(tasks: Iterable[asyncio.Task[None]], grace_period: float) -> None:
        """Cancel tasks and give them the grace period to unwind."""
        to_cancel = [task for task in tasks if not task.done()]
        for task in to_cancel:
            task.cancel()
        if to_cancel:
            await asyncio.wait(to_cancel, timeout=max(grace_period, 0.01))

    async def _run_item(
        self,
        item: DispatchItem,
        pool: WorkerPool,
        executor: AttemptExecutor,
        policy: RetryPolicy,
    ) -> None:
        """Acquire a worker and run an item to its terminal outcomes."""
        async with pool.acquire(item.label) as worker:
            if item.is_group:
                await self._run_group(item, worker, pool, executor, policy)
            else:
                await self._run_unit(item.units[0], worker, pool, executor, policy)

    async def _run_unit(
        self,
        unit: TestUnit,
        worker: Worker,
        pool: WorkerPool,
        executor: AttemptExecutor,
        policy: RetryPolicy,
    ) -> None:
        """Attempt/retry loop of an independent unit."""
        state = self._states[unit.id]
        base_timeout = unit.effective_base_timeout
        attempt_index = 0
        timeout = policy.timeout_for(0, base_timeout)

        while True:
            result = await self._attempt(state, attempt_index, timeout, worker, pool, executor)
            decision = policy.decide(state.history, unit.retry_budget, base_timeout)
            if not decision.should_retry:
                break

            await pool.dispose(worker)
            self._log.info(
                "Retrying unit",
                unit=unit.id,
                next_attempt=attempt_index + 1,
                backoff=decision.backoff_delay_seconds,
                next_timeout=decision.next_timeout_seconds,
            )
            await asyncio.sleep(decision.backoff_delay_seconds)
            attempt_index += 1
            timeout = decision.next_timeout_seconds

        # outcome first, so a cancellation during the disposal cannot change it
        self._finalize(state, classifier.classify(state.history, unit_id=unit.id, group_id=unit.group_id))
        if not result.succeeded:
            await pool.dispose(worker)

    async def _run_group(
        self,
        item: DispatchItem,
        worker: Worker,
        pool: WorkerPool,
        executor: AttemptExecutor,
        policy: RetryPolicy,
    ) -> None:
        """
        Attempt/retry loop of a serial group.

        Members run in declared order; the first failure ends the group
        attempt and the whole group restarts from its first member on a
        fresh context.
        """
        members = item.units
        group_history: list[AttemptResult] = []
        group_attempt = 0
        ran: list[TestUnit] = []
        failed_member: TestUnit | None = None

        while True:
            ran = []
            failed_member = None
            last_result: AttemptResult | None = None

            for member in members:
                state = self._states[member.id]
                timeout = policy.timeout_for(group_attempt, member.effective_base_timeout)
                last_result = await self._attempt(state, group_attempt, timeout, worker, pool, executor)
                ran.append(member)
                if not last_result.succeeded:
                    failed_member = member
                    break

            if last_result is not None:
                group_history.append(last_result)
            if failed_member is None:
                break

            decision = policy.decide(
                group_history,
                item.max_retries,
                members[0].effective_base_timeout,
            )
            if not decision.should_retry:
                break

            for member in members:
                state = self._states[member.id]
                if state.history:
                    state.phase = UnitPhase.RETRYING
            await pool.dispose(worker)

            self._log.info(
                "Retrying serial group",
                group=item.group_id,
                failed_unit=failed_member.id,
                next_attempt=group_attempt + 1,
                backoff=decision.backoff_delay_seconds,
            )
            await asyncio.sleep(decision.backoff_delay_seconds)
            group_attempt += 1

        ran_ids = {member.id for member in ran}
        for member in members:
            state = self._states[member.id]
            if member.id in ran_ids:
                outcome = classifier.classify(
                    state.history, unit_id=member.id, group_id=member.group_id
                )
            else:
                reason = (
                    f"serial group '{item.group_id}' stopped at failing unit "
                    f"'{failed_member.id if failed_member else '?'}'"
                )
                outcome = classifier.skipped(member, reason, state.history)
            self._finalize(state, outcome)

        if failed_member is not None:
            await pool.dispose(worker)

    async def _attempt(
        self,
        state: UnitState,
        attempt_index: int,
        timeout: float,
        worker: Worker,
        pool: WorkerPool,
        executor: AttemptExecutor,
    ) -> AttemptResult:
        """Run one attempt and record its result on the unit state."""
        state.phase = UnitPhase.RUNNING
        state.attempt_index = attempt_index
        state.timeout_budget = timeout
        state.attempt_started_at = time.monotonic()
        state.worker_index = worker.index

        try:
            await pool.ensure_context(worker)
        except ContextProvisioningError as e:
            result = executor.provisioning_failure(
                state.unit, attempt_index, timeout, e, worker.index
            )
        else:
            result = await executor.execute(state.unit, attempt_index, timeout, worker)

        state.history.append(result)
        state.phase = UnitPhase.SUCCEEDED if result.succeeded else UnitPhase.RETRYING
        return result

    def _finalize(self, state: UnitState, outcome: TerminalOutcome) -> None:
        """Emit a unit's outcome exactly once."""
        if state.phase == UnitPhase.TERMINAL:
            return
        if self._outcome_queue is None:
            raise RuntimeError("Run not started")
        state.phase = UnitPhase.TERMINAL
        self._outcome_queue.put_nowait(outcome)

    def _finalize_unfinished(self, aborted: bool) -> None:
        """Give every unit left behind by cancellation its terminal outcome."""
        for state in self._states.values():
            unit = state.unit
            match state.phase:
                case UnitPhase.TERMINAL:
                    continue
                case UnitPhase.RUNNING:
                    state.history.append(
                        AttemptExecutor.aborted(
                            unit,
                            state.attempt_index,
                            state.timeout_budget,
                            state.attempt_started_at,
                            state.worker_index,
                        )
                    )
                    outcome = classifier.classify(
                        state.history, unit_id=unit.id, group_id=unit.group_id
                    )
                case UnitPhase.SUCCEEDED:
                    outcome = classifier.classify(
                        state.history, unit_id=unit.id, group_id=unit.group_id
                    )
                case UnitPhase.RETRYING:
                    outcome = classifier.aborted(unit, state.history)
                case _ if state.history:
                    outcome = classifier.aborted(unit, state.history)
                case _:
                    outcome = classifier.skipped(unit, "not started: run aborted")

            if not aborted:
                self._log.error(
                    "Unit left unfinished by a completed run",
                    unit=unit.id,
                    phase=state.phase,
                )
            self._finalize(state, outcome)
