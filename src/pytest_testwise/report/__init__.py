"""Reporting module for testwise coverage.

This module provides the data structures of per-test coverage, the assembler
merging fragments into a report, and the console and JSON reporters.
"""

from pytest_testwise.report.assembler import TestwiseCoverageAssembler, merge_reports, preferred_execution
from pytest_testwise.report.console import ConsoleReporter
from pytest_testwise.report.json_reporter import JsonReporter
from pytest_testwise.report.models import (
    CoverageFragment,
    ExecutionResult,
    ReportEntry,
    TestExecutionRecord,
    TestwiseCoverageReport,
)


__all__ = [
    'ConsoleReporter',
    'CoverageFragment',
    'ExecutionResult',
    'JsonReporter',
    'ReportEntry',
    'TestExecutionRecord',
    'TestwiseCoverageAssembler',
    'TestwiseCoverageReport',
    'merge_reports',
    'preferred_execution',
]
