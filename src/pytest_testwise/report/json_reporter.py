"""JSON reporter for testwise coverage.

Produces the machine-readable form of fragments and reports, used for the
report file written at the end of a test session, for the control channel and
for uploads.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from pytest_testwise.cache.hasher import format_content_id, parse_content_id
from pytest_testwise.report.models import (
    CoverageFragment,
    ReportEntry,
    TestExecutionRecord,
    TestwiseCoverageReport,
)


if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from pathlib import Path


class JsonReporter:
    """Reporter that converts testwise coverage to and from JSON.

    JSON structure of a report:
        {
            "tests": [
                {
                    "uniform_path": "tests/test_cart.py::test_total",
                    "coverage_complete": true,
                    "execution": {
                        "uniform_path": "tests/test_cart.py::test_total",
                        "duration_seconds": 0.012,
                        "result": "passed"
                    },
                    "coverage": [
                        {
                            "content_id": "8f14e45fceea167a",
                            "class_name": "shop.cart",
                            "lines": [3, 4, 7]
                        }
                    ]
                }
            ]
        }

    Fragments use the same shape without ``execution`` and
    ``coverage_complete``.
    """

    def to_json(self, report: TestwiseCoverageReport) -> str:
        """Convert a report to a JSON string.

        Args:
            report: The report to convert.

        Returns:
            Pretty-printed JSON string.
        """
        return json.dumps(self.report_to_dict(report), indent=2)

    def write_report(self, report: TestwiseCoverageReport, output_path: Path) -> None:
        """Write a report to a JSON file, creating parent directories.

        Args:
            report: The report to write.
            output_path: Path to the output JSON file.
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(self.to_json(report))

    def report_to_dict(self, report: TestwiseCoverageReport) -> dict[str, Any]:
        """Build the JSON-ready structure of a report."""
        return {'tests': [self._build_entry(entry) for entry in report]}

    def fragment_to_dict(self, fragment: CoverageFragment) -> dict[str, Any]:
        """Build the JSON-ready structure of a fragment."""
        return {
            'uniform_path': fragment.uniform_path,
            'coverage': self._build_coverage(fragment.lines, fragment.class_names),
        }

    def report_from_dict(self, data: Mapping[str, Any]) -> TestwiseCoverageReport:
        """Rebuild a report from its JSON structure.

        Raises:
            ValueError: If the structure is not a testwise coverage report.
        """
        try:
            entries = [self._parse_entry(test) for test in data['tests']]
        except (KeyError, TypeError) as exc:
            msg = f'Invalid testwise coverage report: {exc!r}'
            raise ValueError(msg) from exc
        return TestwiseCoverageReport(entries=entries)

    def fragment_from_dict(self, data: Mapping[str, Any]) -> CoverageFragment:
        """Rebuild a fragment from its JSON structure.

        Raises:
            ValueError: If the structure is not a coverage fragment.
        """
        try:
            lines, class_names = self._parse_coverage(data['coverage'])
            return CoverageFragment(
                uniform_path=data['uniform_path'],
                lines={content_id: frozenset(covered) for content_id, covered in lines.items()},
                class_names=class_names,
            )
        except (KeyError, TypeError) as exc:
            msg = f'Invalid coverage fragment: {exc!r}'
            raise ValueError(msg) from exc

    def _build_entry(self, entry: ReportEntry) -> dict[str, Any]:
        result: dict[str, Any] = {
            'uniform_path': entry.uniform_path,
            'coverage_complete': entry.coverage_complete,
            'coverage': self._build_coverage(entry.lines, entry.class_names),
        }
        if entry.execution is not None:
            result['execution'] = entry.execution.to_dict()
        return result

    def _build_coverage(
        self,
        lines: Mapping[int, Iterable[int]],
        class_names: Mapping[int, str],
    ) -> list[dict[str, Any]]:
        # Sorted by module name so identical coverage always serializes identically
        return [
            {
                'content_id': format_content_id(content_id),
                'class_name': class_names.get(content_id, ''),
                'lines': sorted(covered),
            }
            for content_id, covered in sorted(lines.items(), key=lambda item: (class_names.get(item[0], ''), item[0]))
        ]

    def _parse_entry(self, data: Mapping[str, Any]) -> ReportEntry:
        lines, class_names = self._parse_coverage(data['coverage'])
        execution = data.get('execution')
        return ReportEntry(
            uniform_path=data['uniform_path'],
            lines={content_id: set(covered) for content_id, covered in lines.items()},
            class_names=class_names,
            execution=TestExecutionRecord.from_dict(execution) if execution is not None else None,
            coverage_complete=bool(data.get('coverage_complete', True)),
        )

    def _parse_coverage(self, coverage: Iterable[Mapping[str, Any]]) -> tuple[dict[int, list[int]], dict[int, str]]:
        lines: dict[int, list[int]] = {}
        class_names: dict[int, str] = {}
        for item in coverage:
            content_id = parse_content_id(item['content_id'])
            lines[content_id] = [int(line) for line in item['lines']]
            if item.get('class_name'):
                class_names[content_id] = item['class_name']
        return lines, class_names
