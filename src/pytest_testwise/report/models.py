"""Data structures for testwise coverage.

A CoverageFragment holds the coverage of exactly one test execution. The
TestwiseCoverageReport collects one entry per executed test, in execution
order, together with the test's execution record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping


class ExecutionResult(Enum):
    """Outcome of a single test execution.

    Attributes:
        PASSED: The test passed.
        FAILED: An assertion in the test failed.
        SKIPPED: The test was skipped or deselected at runtime.
        ERRORED: The test could not run, e.g. a fixture raised.
    """

    PASSED = 'passed'
    FAILED = 'failed'
    SKIPPED = 'skipped'
    ERRORED = 'errored'


@dataclass(frozen=True)
class TestExecutionRecord:
    """How a test execution ended.

    Attributes:
        uniform_path: Identity of the test.
        duration_seconds: Wall clock duration of the test.
        result: Outcome of the test.
        message: Optional details, e.g. a failure message.
    """

    __test__ = False

    uniform_path: str
    duration_seconds: float
    result: ExecutionResult
    message: str | None = None

    def with_note(self, note: str) -> TestExecutionRecord:
        """Return a copy with a note appended to the message."""
        message = note if not self.message else f'{self.message}\n{note}'
        return TestExecutionRecord(self.uniform_path, self.duration_seconds, self.result, message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        entry: dict[str, Any] = {
            'uniform_path': self.uniform_path,
            'duration_seconds': self.duration_seconds,
            'result': self.result.value,
        }
        if self.message is not None:
            entry['message'] = self.message
        return entry

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], uniform_path: str | None = None) -> TestExecutionRecord:
        """Build a record from a dictionary produced by to_dict.

        Args:
            data: The dictionary.
            uniform_path: Overrides the uniform path found in the data.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        path = uniform_path if uniform_path is not None else data.get('uniform_path')
        if not path:
            msg = 'Test execution without uniform_path'
            raise ValueError(msg)
        try:
            duration = float(data.get('duration_seconds', 0.0))
            result = ExecutionResult(data['result'])
        except (KeyError, TypeError, ValueError) as exc:
            msg = f'Invalid test execution for {path}: {exc}'
            raise ValueError(msg) from exc
        message = data.get('message')
        return cls(uniform_path=path, duration_seconds=duration, result=result, message=message)


@dataclass(frozen=True)
class CoverageFragment:
    """Coverage attributable to exactly one test execution.

    Attributes:
        uniform_path: Identity of the test.
        lines: Covered lines per content id.
        class_names: Qualified module name per content id.
    """

    uniform_path: str
    lines: Mapping[int, frozenset[int]] = field(default_factory=dict)
    class_names: Mapping[int, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        """Return True if the test covered nothing."""
        return not self.lines

    def covered_line_count(self) -> int:
        """Return the total number of covered lines."""
        return sum(len(lines) for lines in self.lines.values())

    def union(self, other: CoverageFragment) -> CoverageFragment:
        """Combine the coverage of two dumps of the same test execution.

        Raises:
            ValueError: If the fragments belong to different tests.
        """
        if other.uniform_path != self.uniform_path:
            msg = f'Cannot combine coverage of {self.uniform_path} and {other.uniform_path}'
            raise ValueError(msg)
        lines = dict(self.lines)
        for content_id, covered in other.lines.items():
            lines[content_id] = lines.get(content_id, frozenset()) | covered
        class_names = {**other.class_names, **self.class_names}
        return CoverageFragment(uniform_path=self.uniform_path, lines=lines, class_names=class_names)


@dataclass
class ReportEntry:
    """One test in a testwise coverage report.

    Attributes:
        uniform_path: Identity of the test.
        lines: Covered lines per content id, unioned over all executions.
        class_names: Qualified module name per content id.
        execution: Execution record of the worst execution, if known.
        coverage_complete: False if coverage of any execution was lost.
    """

    uniform_path: str
    lines: dict[int, set[int]] = field(default_factory=dict)
    class_names: dict[int, str] = field(default_factory=dict)
    execution: TestExecutionRecord | None = None
    coverage_complete: bool = True

    def add_lines(self, lines: Mapping[int, Iterable[int]], class_names: Mapping[int, str]) -> None:
        """Union coverage into this entry."""
        for content_id, covered in lines.items():
            self.lines.setdefault(content_id, set()).update(covered)
        for content_id, name in class_names.items():
            self.class_names.setdefault(content_id, name)

    def copy(self) -> ReportEntry:
        """Return a deep copy of the entry."""
        return ReportEntry(
            uniform_path=self.uniform_path,
            lines={content_id: set(lines) for content_id, lines in self.lines.items()},
            class_names=dict(self.class_names),
            execution=self.execution,
            coverage_complete=self.coverage_complete,
        )


@dataclass
class TestwiseCoverageReport:
    """Ordered per-test coverage of a test run.

    Entries appear in execution order. This is the unit handed to uploaders
    and written by the JSON reporter.

    Attributes:
        entries: One entry per executed test.
    """

    __test__ = False

    entries: list[ReportEntry] = field(default_factory=list)

    def __len__(self) -> int:
        """Return the number of tests in the report."""
        return len(self.entries)

    def __iter__(self) -> Iterator[ReportEntry]:
        """Iterate over the entries in execution order."""
        return iter(self.entries)

    def get(self, uniform_path: str) -> ReportEntry | None:
        """Return the entry of a test, or None if it did not run."""
        for entry in self.entries:
            if entry.uniform_path == uniform_path:
                return entry
        return None

    def uniform_paths(self) -> list[str]:
        """Return the test identities in execution order."""
        return [entry.uniform_path for entry in self.entries]
