"""
Shard report merging.

Shards are disjoint by construction, so merging never deduplicates: an
overlapping unit id means the partitioning invariant was broken and the
merge fails loudly instead of picking a winner.
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Iterable, Sequence

import structlog
from pydantic import ValidationError

from testorch.errors import MergeConflictError
from testorch.reporting.models import RunReport

logger = structlog.get_logger(__name__)

REPORT_SUFFIX = ".json"


def merge(
    reports: Sequence[RunReport],
    expected_unit_ids: Iterable[str] | None = None,
) -> RunReport:
    """
    Merge per-shard reports into one consolidated report.

    The result does not depend on the order of the inputs.

    Args:
        reports: Reports to merge
        expected_unit_ids: Full unit set, to detect units no shard reported

    Returns:
        A merged report with ``shard_index`` None and recomputed counts

    Raises:
        MergeConflictError: On overlapping, missing or unexpected unit ids,
            or on shards that disagree about the shard total
    """
    if not reports:
        raise MergeConflictError("No reports to merge")

    shard_totals = {r.shard_total for r in reports if r.shard_total is not None}
    if len(shard_totals) > 1:
        raise MergeConflictError(
            f"Reports disagree on shard total: {sorted(shard_totals)}"
        )

    seen = Counter(unit_id for report in reports for unit_id in report.unit_ids)
    duplicates = [unit_id for unit_id, count in seen.items() if count > 1]
    if duplicates:
        raise MergeConflictError("Unit ids reported by more than one shard", duplicates)

    if expected_unit_ids is not None:
        expected = set(expected_unit_ids)
        missing = expected - seen.keys()
        if missing:
            raise MergeConflictError("Unit ids missing from shard reports", missing)
        unexpected = seen.keys() - expected
        if unexpected:
            raise MergeConflictError("Unit ids not part of the expected set", unexpected)

    shard_total = shard_totals.pop() if shard_totals else None
    if shard_total is not None:
        indexes = {r.shard_index for r in reports if r.shard_index is not None}
        absent = set(range(1, shard_total + 1)) - indexes
        if absent:
            logger.warning(
                "Merging without every shard",
                shard_total=shard_total,
                missing_shards=sorted(absent),
            )

    merged = RunReport.build(
        (outcome for report in reports for outcome in report.outcomes),
        started_at=min(r.started_at for r in reports),
        finished_at=max(r.finished_at for r in reports),
        shard_total=shard_total,
        aborted=any(r.aborted for r in reports),
    )

    logger.info(
        "Merged shard reports",
        reports=len(reports),
        units=merged.counts.total,
        passed=merged.counts.passed,
        flaky=merged.counts.flaky,
        failed=merged.counts.failed,
        skipped=merged.counts.skipped,
        aborted=merged.counts.aborted,
    )
    return merged


def report_filename(report: RunReport) -> str:
    """Default blob file name for a report."""
    if report.shard_index is None:
        return f"report-merged{REPORT_SUFFIX}"
    return f"report-{report.shard_index}-of-{report.shard_total}{REPORT_SUFFIX}"


def save_report(report: RunReport, path: str | Path) -> Path:
    """
    Write a report blob as JSON.

    If ``path`` is a directory the default file name is used.
    """
    target = Path(path)
    if target.is_dir():
        target = target / report_filename(report)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    logger.debug("Saved report", path=str(target), shard=report.shard_index)
    return target


def load_report(path: str | Path) -> RunReport:
    """
    Read a report blob written by save_report.

    Raises:
        MergeConflictError: If the file is missing or not a valid report
    """
    source = Path(path)
    if not source.is_file():
        raise MergeConflictError(f"Report file not found: {source}")
    try:
        return RunReport.model_validate_json(source.read_text(encoding="utf-8"))
    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  {loc}: {error['msg']}")
        raise MergeConflictError(
            f"Invalid report {source}:\n" + "\n".join(error_messages)
        ) from e


def load_reports(directory: str | Path) -> list[RunReport]:
    """Load every report blob in a directory, sorted by file name."""
    root = Path(directory)
    if not root.is_dir():
        raise MergeConflictError(f"Report directory not found: {root}")
    return [load_report(p) for p in sorted(root.glob(f"*{REPORT_SUFFIX}"))]


def merge_directory(
    directory: str | Path,
    expected_unit_ids: Iterable[str] | None = None,
) -> RunReport:
    """Load and merge every report blob in a directory."""
    return merge(load_reports(directory), expected_unit_ids=expected_unit_ids)
