"""
Report sinks and exit status.

Rendering reports (HTML, JUnit, ...) is left to external sinks; the core
only hands them the finished RunReport.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Protocol, runtime_checkable

import structlog

from testorch.execution.classifier import is_blocking
from testorch.execution.models import TerminalStatus
from testorch.reporting.models import RunReport

logger = structlog.get_logger(__name__)


@runtime_checkable
class ReportSink(Protocol):
    """Receives completed run reports."""

    def emit(self, report: RunReport) -> None: ...


class ExitStatus(IntEnum):
    """Process exit status for a finished run."""

    SUCCESS = 0
    TESTS_FAILED = 1
    RUN_ABORTED = 2


def exit_status(report: RunReport, fail_on_flaky: bool = False) -> ExitStatus:
    """
    Map a report to a process exit status.

    An aborted run takes precedence over test failures so that callers can
    tell "ran out of time" from "tests failed".
    """
    if report.aborted:
        return ExitStatus.RUN_ABORTED
    if any(is_blocking(outcome, fail_on_flaky) for outcome in report.outcomes):
        return ExitStatus.TESTS_FAILED
    return ExitStatus.SUCCESS


class LoggingReportSink:
    """Logs a run summary and every non-passing outcome."""

    def __init__(self, fail_on_flaky: bool = False) -> None:
        self._fail_on_flaky = fail_on_flaky
        self._log = logger.bind(component="report_sink")

    def emit(self, report: RunReport) -> None:
        for outcome in report.outcomes:
            match outcome.final_status:
                case TerminalStatus.FAILED | TerminalStatus.ABORTED:
                    self._log.error(
                        "Unit did not pass",
                        unit=outcome.unit_id,
                        status=outcome.final_status,
                        attempts=outcome.attempt_count,
                        diagnostics=outcome.diagnostics,
                    )
                case TerminalStatus.FLAKY:
                    self._log.warning(
                        "Unit passed on retry",
                        unit=outcome.unit_id,
                        attempts=outcome.attempt_count,
                    )
                case TerminalStatus.SKIPPED:
                    self._log.info(
                        "Unit skipped",
                        unit=outcome.unit_id,
                        reason=outcome.diagnostics,
                    )

        self._log.info(
            "Run finished",
            shard=report.shard_index,
            shard_total=report.shard_total,
            total=report.counts.total,
            passed=report.counts.passed,
            flaky=report.counts.flaky,
            failed=report.counts.failed,
            skipped=report.counts.skipped,
            aborted=report.counts.aborted,
            duration=round(report.duration_seconds, 3),
            run_aborted=report.aborted,
            exit_status=exit_status(report, self._fail_on_flaky).name,
        )
