"""
Unit tests for report models and shard merging.

Tests cover:
- Count consistency of reports
- Merging disjoint shard reports
- Conflict detection
- Report blob persistence
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from testorch.errors import MergeConflictError
from testorch.execution.models import TerminalOutcome, TerminalStatus
from testorch.reporting.merger import (
    load_report,
    merge,
    merge_directory,
    report_filename,
    save_report,
)
from testorch.reporting.models import RunReport, StatusCounts

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


def _outcome(unit_id: str, status: TerminalStatus = TerminalStatus.PASSED) -> TerminalOutcome:
    return TerminalOutcome(
        unit_id=unit_id,
        final_status=status,
        attempt_count=0 if status == TerminalStatus.SKIPPED else 1,
    )


def _shard(
    index: int,
    total: int,
    *unit_ids: str,
    offset: int = 0,
    aborted: bool = False,
) -> RunReport:
    return RunReport.build(
        [_outcome(u) for u in unit_ids],
        started_at=T0 + timedelta(seconds=offset),
        finished_at=T0 + timedelta(seconds=offset + 10),
        shard_index=index,
        shard_total=total,
        aborted=aborted,
    )


@pytest.fixture
def four_shards() -> list[RunReport]:
    return [
        _shard(1, 4, "u00", "u01", "u02"),
        _shard(2, 4, "u03", "u04", "u05", offset=2),
        _shard(3, 4, "u06", "u07", offset=1),
        _shard(4, 4, "u08", "u09", offset=5),
    ]


class TestRunReport:
    """Tests for RunReport."""

    def test_build_sorts_and_counts(self) -> None:
        """Test build() sorts outcomes and recomputes counts."""
        report = RunReport.build(
            [_outcome("b", TerminalStatus.FAILED), _outcome("a"), _outcome("c", TerminalStatus.FLAKY)],
            started_at=T0,
            finished_at=T0 + timedelta(seconds=3),
        )

        assert report.unit_ids == ["a", "b", "c"]
        assert report.counts == StatusCounts(passed=1, failed=1, flaky=1)
        assert report.duration_seconds == 3.0
        assert report.is_merged is True
        assert [o.unit_id for o in report.with_status(TerminalStatus.FAILED)] == ["b"]

    def test_inconsistent_counts_rejected(self) -> None:
        """Test a report whose counts disagree with its outcomes is invalid."""
        with pytest.raises(ValueError):
            RunReport(
                outcomes=(_outcome("a"),),
                counts=StatusCounts(failed=1),
                started_at=T0,
                finished_at=T0,
            )

    def test_counts_add(self) -> None:
        """Test counts can be summed."""
        total = StatusCounts(passed=2, skipped=1) + StatusCounts(passed=1, aborted=1)
        assert total == StatusCounts(passed=3, skipped=1, aborted=1)
        assert total.total == 5
        assert total.get(TerminalStatus.ABORTED) == 1


class TestMerge:
    """Tests for merge()."""

    def test_merges_four_shards(self, four_shards: list[RunReport]) -> None:
        """Test merging reproduces the full unit set."""
        merged = merge(four_shards, expected_unit_ids=[f"u{i:02d}" for i in range(10)])

        assert merged.unit_ids == [f"u{i:02d}" for i in range(10)]
        assert merged.counts.passed == 10
        assert merged.shard_index is None
        assert merged.shard_total == 4
        assert merged.started_at == T0
        assert merged.finished_at == T0 + timedelta(seconds=15)

    def test_order_independent(self, four_shards: list[RunReport]) -> None:
        """Test the merge result does not depend on input order."""
        assert merge(four_shards) == merge(list(reversed(four_shards)))

    def test_overlap_is_conflict(self) -> None:
        """Test a unit reported by two shards fails the merge."""
        reports = [_shard(1, 2, "a", "b"), _shard(2, 2, "b", "c")]

        with pytest.raises(MergeConflictError) as exc_info:
            merge(reports)

        assert exc_info.value.conflicting_ids == ["b"]

    def test_missing_units_detected(self, four_shards: list[RunReport]) -> None:
        """Test units no shard reported are a conflict."""
        with pytest.raises(MergeConflictError, match="missing"):
            merge(four_shards[:3], expected_unit_ids=[f"u{i:02d}" for i in range(10)])

    def test_unexpected_units_detected(self, four_shards: list[RunReport]) -> None:
        """Test units outside the expected set are a conflict."""
        with pytest.raises(MergeConflictError, match="not part of the expected set"):
            merge(four_shards, expected_unit_ids=["u00"])

    def test_mismatched_shard_totals(self) -> None:
        """Test shards of different splits cannot be merged."""
        with pytest.raises(MergeConflictError, match="shard total"):
            merge([_shard(1, 2, "a"), _shard(1, 3, "b")])

    def test_empty_input(self) -> None:
        """Test merging nothing is an error."""
        with pytest.raises(MergeConflictError):
            merge([])

    def test_aborted_shard_marks_merge_aborted(self) -> None:
        """Test an aborted shard makes the merged run aborted."""
        merged = merge([_shard(1, 2, "a"), _shard(2, 2, "b", aborted=True)])
        assert merged.aborted is True

    def test_partial_merge_allowed_without_expected_ids(
        self, four_shards: list[RunReport]
    ) -> None:
        """Test missing shards only warn when no expected set is given."""
        merged = merge(four_shards[:2])
        assert merged.counts.total == 6


class TestReportBlobs:
    """Tests for saving and loading report blobs."""

    def test_filename(self, four_shards: list[RunReport]) -> None:
        assert report_filename(four_shards[1]) == "report-2-of-4.json"
        assert report_filename(merge(four_shards)) == "report-merged.json"

    def test_round_trip_through_directory(
        self, temp_dir: Path, four_shards: list[RunReport]
    ) -> None:
        """Test shards written to a directory merge back into the suite."""
        for report in four_shards:
            save_report(report, temp_dir)

        merged = merge_directory(temp_dir)

        assert merged.counts.total == 10
        assert merged == merge(four_shards)

    def test_load_invalid_report(self, temp_dir: Path) -> None:
        """Test a malformed blob is reported clearly."""
        path = temp_dir / "report-1-of-2.json"
        path.write_text('{"shard_index": 0}', encoding="utf-8")

        with pytest.raises(MergeConflictError, match="Invalid report"):
            load_report(path)

    def test_load_missing_report(self, temp_dir: Path) -> None:
        with pytest.raises(MergeConflictError, match="not found"):
            load_report(temp_dir / "nope.json")
