"""
Run reports, shard merging and report sinks.
"""

from testorch.reporting.merger import (
    load_report,
    load_reports,
    merge,
    merge_directory,
    save_report,
)
from testorch.reporting.models import RunReport, StatusCounts
from testorch.reporting.sink import (
    ExitStatus,
    LoggingReportSink,
    ReportSink,
    exit_status,
)

__all__ = [
    "ExitStatus",
    "LoggingReportSink",
    "ReportSink",
    "RunReport",
    "StatusCounts",
    "exit_status",
    "load_report",
    "load_reports",
    "merge",
    "merge_directory",
    "save_report",
]
