"""Console reporter for testwise coverage.

Produces a short human-readable summary of the report for terminal display,
printed at the end of a pytest session.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO


if TYPE_CHECKING:
    from pytest_testwise.report.models import TestwiseCoverageReport


class ConsoleReporter:
    """Reporter that writes a testwise coverage summary to the console.

    Produces output in the following format:

        ================== pytest-testwise coverage report ==================

        Tests: 42 (1 with incomplete coverage)
        Modules covered: 7
        Lines covered: 311

        Widest tests:
          tests/test_cart.py::test_checkout              118 lines
          tests/test_cart.py::test_total                  37 lines

        JSON report: testwise-coverage.json
        =====================================================================

    Attributes:
        output: The file-like object to write to.
    """

    BORDER_CHAR = '='
    BORDER_WIDTH = 70
    WIDEST_LIMIT = 5

    def __init__(self, output: TextIO | None = None) -> None:
        """Initialize the console reporter.

        Args:
            output: File-like object to write to. Defaults to sys.stdout.
        """
        self.output = output or sys.stdout

    def write_report(self, report: TestwiseCoverageReport, report_path: str | None = None) -> None:
        """Write the coverage summary to the output.

        Args:
            report: The report to summarize.
            report_path: Where the JSON report was written, if anywhere.
        """
        self._write_header()
        self._write_blank_line()

        if len(report) == 0:
            self._write_line('No tests recorded.')
        else:
            self._write_summary(report)
            self._write_widest(report)

        if report_path is not None:
            self._write_blank_line()
            self._write_line(f'JSON report: {report_path}')
        self._write_footer()

    def _write_header(self) -> None:
        title = ' pytest-testwise coverage report '
        border_len = (self.BORDER_WIDTH - len(title)) // 2
        self._write_line(f'{self.BORDER_CHAR * border_len}{title}{self.BORDER_CHAR * border_len}')

    def _write_footer(self) -> None:
        self._write_line(self.BORDER_CHAR * self.BORDER_WIDTH)

    def _write_summary(self, report: TestwiseCoverageReport) -> None:
        incomplete = sum(1 for entry in report if not entry.coverage_complete)
        modules = {content_id for entry in report for content_id in entry.lines}
        lines = {(content_id, line) for entry in report for content_id, covered in entry.lines.items() for line in covered}

        tests = f'Tests: {len(report)}'
        if incomplete:
            tests += f' ({incomplete} with incomplete coverage)'
        self._write_line(tests)
        self._write_line(f'Modules covered: {len(modules)}')
        self._write_line(f'Lines covered: {len(lines)}')

    def _write_widest(self, report: TestwiseCoverageReport) -> None:
        counts = [(sum(len(covered) for covered in entry.lines.values()), entry.uniform_path) for entry in report]
        widest = sorted((item for item in counts if item[0] > 0), key=lambda item: -item[0])[: self.WIDEST_LIMIT]
        if not widest:
            return

        self._write_blank_line()
        self._write_line('Widest tests:')
        for count, uniform_path in widest:
            self._write_line(f'  {uniform_path:<48} {count:>5} lines')

    def _write_blank_line(self) -> None:
        self.output.write('\n')

    def _write_line(self, text: str) -> None:
        self.output.write(text + '\n')
