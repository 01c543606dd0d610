"""Testwise coverage assembly.

This module provides the TestwiseCoverageAssembler class that collects
fragments and execution records from one or more coordinators (possibly
running in different processes) and merges them into a single report.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from pytest_testwise.report.models import ExecutionResult, ReportEntry, TestwiseCoverageReport


if TYPE_CHECKING:
    from pytest_testwise.report.models import CoverageFragment, TestExecutionRecord


_SEVERITY = {
    ExecutionResult.SKIPPED: 0,
    ExecutionResult.PASSED: 1,
    ExecutionResult.FAILED: 2,
    ExecutionResult.ERRORED: 3,
}


def preferred_execution(
    current: TestExecutionRecord | None,
    candidate: TestExecutionRecord | None,
) -> TestExecutionRecord | None:
    """Pick the execution record to keep for a test that ran more than once.

    The worst outcome wins, then the longest duration, then the longer
    message. The choice depends only on the two records, never on which one
    arrived first, so merged reports are the same in any merge order.

    Args:
        current: The record kept so far, if any.
        candidate: A newly seen record, if any.

    Returns:
        The record to keep.
    """
    if current is None:
        return candidate
    if candidate is None:
        return current

    def rank(record: TestExecutionRecord) -> tuple[int, float, int, str]:
        message = record.message or ''
        return _SEVERITY[record.result], record.duration_seconds, len(message), message

    return candidate if rank(candidate) > rank(current) else current


class TestwiseCoverageAssembler:
    """Merges per-test coverage into a TestwiseCoverageReport.

    Thread-safe. Entries keep the order in which their test was first seen.
    A test seen more than once (retried or re-run) gets the union of all its
    covered lines: once a line is covered for a test it stays covered. Of its
    execution records the worst outcome is kept (see preferred_execution),
    and coverage counts as complete only if every execution delivered
    coverage. The content of an entry therefore does not depend on the order
    in which fragments and reports arrive.

    Example:
        >>> from pytest_testwise.report.models import CoverageFragment
        >>> assembler = TestwiseCoverageAssembler()
        >>> assembler.add(CoverageFragment('t', {1: frozenset({1, 2})}))
        >>> assembler.add(CoverageFragment('t', {1: frozenset({2, 3})}))
        >>> assembler.build().get('t').lines
        {1: {1, 2, 3}}
    """

    __test__ = False

    def __init__(self) -> None:
        """Initialize an empty assembler."""
        self._entries: dict[str, ReportEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        """Return the number of distinct tests seen."""
        with self._lock:
            return len(self._entries)

    def add(self, fragment: CoverageFragment, execution: TestExecutionRecord | None = None) -> None:
        """Add the coverage and execution record of one test execution.

        Args:
            fragment: Coverage of the execution.
            execution: How the execution ended, if known.
        """
        with self._lock:
            entry = self._entry_for(fragment.uniform_path)
            entry.add_lines(fragment.lines, fragment.class_names)
            entry.execution = preferred_execution(entry.execution, execution)

    def add_missing_coverage(self, uniform_path: str, execution: TestExecutionRecord | None = None) -> None:
        """Record an execution whose coverage was lost.

        The test still appears in the report, flagged as incomplete, so the
        report never pretends the test covered nothing.

        Args:
            uniform_path: Identity of the test.
            execution: How the execution ended, if known.
        """
        with self._lock:
            entry = self._entry_for(uniform_path)
            entry.coverage_complete = False
            entry.execution = preferred_execution(entry.execution, execution)

    def merge(self, report: TestwiseCoverageReport) -> None:
        """Merge a complete report, e.g. one produced by another process.

        Args:
            report: The report to merge in.
        """
        with self._lock:
            for other in report:
                entry = self._entry_for(other.uniform_path)
                entry.add_lines(other.lines, other.class_names)
                entry.coverage_complete = entry.coverage_complete and other.coverage_complete
                entry.execution = preferred_execution(entry.execution, other.execution)

    def build(self) -> TestwiseCoverageReport:
        """Return a snapshot of the assembled report.

        Returns:
            A report whose entries are independent copies.
        """
        with self._lock:
            return TestwiseCoverageReport(entries=[entry.copy() for entry in self._entries.values()])

    def clear(self) -> None:
        """Forget all entries."""
        with self._lock:
            self._entries.clear()

    def _entry_for(self, uniform_path: str) -> ReportEntry:
        """Return the entry of a test, creating it. Must be called with lock held."""
        entry = self._entries.get(uniform_path)
        if entry is None:
            entry = ReportEntry(uniform_path=uniform_path)
            self._entries[uniform_path] = entry
        return entry


def merge_reports(*reports: TestwiseCoverageReport) -> TestwiseCoverageReport:
    """Merge reports of several processes into one.

    Args:
        reports: Reports in the order their entries should appear.

    Returns:
        The merged report.
    """
    assembler = TestwiseCoverageAssembler()
    for report in reports:
        assembler.merge(report)
    return assembler.build()
