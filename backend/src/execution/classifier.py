"""
Terminal outcome classification.

Classification looks only at the last attempt's status and the number of
attempts. Earlier failures are carried along for diagnostics but never
change the verdict.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from testorch.execution.models import (
    AttemptResult,
    AttemptStatus,
    TerminalOutcome,
    TerminalStatus,
)

if TYPE_CHECKING:
    from testorch.units.models import TestUnit


def _total_duration(history: Sequence[AttemptResult]) -> float:
    return sum(attempt.duration_seconds for attempt in history)


def _last_diagnostics(history: Sequence[AttemptResult]) -> str | None:
    for attempt in reversed(history):
        if attempt.diagnostics:
            return attempt.diagnostics
    return None


def classify(
    history: Sequence[AttemptResult],
    *,
    unit_id: str | None = None,
    group_id: str | None = None,
) -> TerminalOutcome:
    """
    Classify the terminal status of a unit from its attempt history.

    Args:
        history: All attempt results of the unit, oldest first
        unit_id: Unit id; required when history is empty
        group_id: Serial group of the unit, if any

    Returns:
        The unit's terminal outcome
    """
    if not history:
        if unit_id is None:
            raise ValueError("unit_id is required to classify an empty history")
        return TerminalOutcome(
            unit_id=unit_id,
            group_id=group_id,
            final_status=TerminalStatus.SKIPPED,
            attempt_count=0,
        )

    last = history[-1]
    attempt_count = len(history)

    match last.status:
        case AttemptStatus.SUCCESS:
            status = TerminalStatus.PASSED if attempt_count == 1 else TerminalStatus.FLAKY
        case AttemptStatus.ABORTED:
            status = TerminalStatus.ABORTED
        case _:
            status = TerminalStatus.FAILED

    diagnostics = None if last.status == AttemptStatus.SUCCESS else _last_diagnostics(history)

    return TerminalOutcome(
        unit_id=unit_id or last.unit_id,
        group_id=group_id,
        final_status=status,
        attempt_count=attempt_count,
        total_duration_seconds=_total_duration(history),
        attempts=tuple(history),
        diagnostics=diagnostics,
    )


def skipped(
    unit: TestUnit,
    reason: str | None = None,
    history: Sequence[AttemptResult] = (),
) -> TerminalOutcome:
    """Build a skipped outcome for a unit that did not run to completion."""
    return TerminalOutcome(
        unit_id=unit.id,
        group_id=unit.group_id,
        final_status=TerminalStatus.SKIPPED,
        attempt_count=len(history),
        total_duration_seconds=_total_duration(history),
        attempts=tuple(history),
        diagnostics=reason,
    )


def aborted(
    unit: TestUnit,
    history: Sequence[AttemptResult],
    reason: str = "run aborted",
) -> TerminalOutcome:
    """Build an aborted outcome for a unit cancelled between attempts."""
    return TerminalOutcome(
        unit_id=unit.id,
        group_id=unit.group_id,
        final_status=TerminalStatus.ABORTED,
        attempt_count=len(history),
        total_duration_seconds=_total_duration(history),
        attempts=tuple(history),
        diagnostics=reason,
    )


def is_blocking(outcome: TerminalOutcome, fail_on_flaky: bool = False) -> bool:
    """
    Check whether an outcome should fail a CI run.

    Flaky outcomes pass by default; ``fail_on_flaky`` turns them into a
    hard gate.
    """
    if outcome.final_status == TerminalStatus.FAILED:
        return True
    return fail_on_flaky and outcome.final_status == TerminalStatus.FLAKY
