"""Test-run orchestration for test impact analysis.

TiaClient is the entry point for test runners that want selected and
prioritized tests. It asks the selection service which tests to run, hands
out a TestRun that drives each test through a channel's start/end protocol,
and finally passes the collected report to an uploader.

The caller stays in charge of actually executing the tests::

    client = TiaClient(coordinator, selection=SelectionClient(url))
    try:
        run = client.start_run(available_tests)
        tests = run.selected_tests()
    except RunStartError:
        run = client.start_unselected_run()
        tests = all_tests
    for uniform_path in tests:
        running = run.start_test(uniform_path)
        result = execute(uniform_path)
        running.end(result)
    run.finalize(coordinator.report, metadata)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Protocol

import httpx

from pytest_testwise.agent.metadata import SessionMetadata
from pytest_testwise.errors import InvalidTransitionError, RunStartError
from pytest_testwise.report.models import ExecutionResult, TestExecutionRecord


if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from pytest_testwise.report.models import CoverageFragment, TestwiseCoverageReport
    from pytest_testwise.tia.models import ClusteredTestDetails, PrioritizableTestCluster
    from pytest_testwise.tia.selection import SelectionClient
    from pytest_testwise.tia.upload import ReportUploader


logger = logging.getLogger(__name__)

SELECTION_ATTEMPTS = 2


class CoverageChannel(Protocol):
    """The start/end protocol of a coordinator, local or remote."""

    def start_test(self, uniform_path: str) -> None:
        """Start recording coverage for a test."""
        ...

    def end_test(self, uniform_path: str, execution: TestExecutionRecord | None = None) -> CoverageFragment:
        """Stop recording coverage for a test and return it."""
        ...


class RunningTest:
    """A test whose coverage is currently being recorded."""

    __test__ = False

    def __init__(self, run: TestRun, uniform_path: str) -> None:
        self._run = run
        self.uniform_path = uniform_path
        self._started = time.monotonic()
        self._ended = False

    @property
    def elapsed(self) -> float:
        """Seconds since the test was started."""
        return time.monotonic() - self._started

    def end(self, execution: TestExecutionRecord | ExecutionResult, message: str | None = None) -> CoverageFragment:
        """End the test and collect its coverage.

        Args:
            execution: The execution record, or just the outcome, in which case
                the duration is measured since start_test.
            message: Message for the record when only an outcome is given.

        Returns:
            The coverage of the test.

        Raises:
            InvalidTransitionError: If the test was already ended.
            DumpError: If the coverage of the test is lost.
        """
        if self._ended:
            msg = f'Test {self.uniform_path} was already ended'
            raise InvalidTransitionError(msg)
        if isinstance(execution, ExecutionResult):
            execution = TestExecutionRecord(self.uniform_path, self.elapsed, execution, message)
        self._ended = True
        return self._run._end_test(self.uniform_path, execution)  # noqa: SLF001


class TestRun:
    """One run of tests whose coverage ends up in one report.

    Tests are driven one after the other through the channel. The execution
    records of all ended tests are collected in ``executions``.
    """

    __test__ = False

    def __init__(self, channel: CoverageChannel, uploader: ReportUploader | None = None) -> None:
        """Initialize the run.

        Args:
            channel: Coordinator or agent client the tests are driven through.
            uploader: Receives the report on finalize. None skips the upload.
        """
        self._channel = channel
        self._uploader = uploader
        self._lock = threading.Lock()
        self._finalized = False
        self.executions: list[TestExecutionRecord] = []

    @property
    def finalized(self) -> bool:
        """Whether finalize() was called."""
        return self._finalized

    def start_test(self, uniform_path: str) -> RunningTest:
        """Start recording coverage for a test.

        Raises:
            InvalidTransitionError: If the run is finalized or another test is active.
        """
        if self._finalized:
            msg = f'Cannot start {uniform_path}: the test run is finalized'
            raise InvalidTransitionError(msg)
        self._channel.start_test(uniform_path)
        return RunningTest(self, uniform_path)

    def finalize(self, report: TestwiseCoverageReport, metadata: SessionMetadata | None = None) -> None:
        """Hand the report of the run to the uploader.

        Args:
            report: The report of the run.
            metadata: Where the report belongs.

        Raises:
            InvalidTransitionError: If the run was already finalized.
            UploadError: If the upload fails. The run counts as finalized.
        """
        with self._lock:
            if self._finalized:
                msg = 'The test run was already finalized'
                raise InvalidTransitionError(msg)
            self._finalized = True
        if self._uploader is None:
            logger.debug('No uploader configured, keeping report of %d tests', len(report))
            return
        self._uploader.upload(report, metadata if metadata is not None else SessionMetadata())

    def _end_test(self, uniform_path: str, execution: TestExecutionRecord) -> CoverageFragment:
        try:
            return self._channel.end_test(uniform_path, execution)
        finally:
            # Recorded even when the coverage is lost
            self.executions.append(execution)


class TestRunWithSuggestions(TestRun):
    """A TestRun started with tests suggested by the selection service."""

    __test__ = False

    def __init__(
        self,
        channel: CoverageChannel,
        clusters: Sequence[PrioritizableTestCluster],
        uploader: ReportUploader | None = None,
    ) -> None:
        """Initialize the run.

        Args:
            channel: Coordinator or agent client the tests are driven through.
            clusters: Suggested clusters in execution order.
            uploader: Receives the report on finalize.
        """
        super().__init__(channel, uploader)
        self.prioritized_clusters = list(clusters)

    def selected_tests(self) -> list[str]:
        """Return the suggested test identities in execution order, without duplicates."""
        seen: dict[str, None] = {}
        for cluster in self.prioritized_clusters:
            for test in cluster.tests:
                seen.setdefault(test.uniform_path, None)
        return list(seen)


class TiaClient:
    """Starts test runs, with or without asking the selection service."""

    def __init__(
        self,
        channel: CoverageChannel,
        selection: SelectionClient | None = None,
        uploader: ReportUploader | None = None,
        *,
        include_non_impacted: bool = False,
    ) -> None:
        """Initialize the client.

        Args:
            channel: Coordinator or agent client tests are driven through.
            selection: Client of the selection service. Required for start_run.
            uploader: Receives the report of every finalized run.
            include_non_impacted: Ask for prioritization only, no selection.
        """
        self._channel = channel
        self._selection = selection
        self._uploader = uploader
        self._include_non_impacted = include_non_impacted

    def start_run(
        self,
        available_tests: Sequence[ClusteredTestDetails] | None,
        baseline: datetime | None = None,
    ) -> TestRunWithSuggestions:
        """Ask the selection service which tests to run and start a run.

        Args:
            available_tests: All tests that could run. An empty inventory selects
                nothing. None lets the service use the tests it knows about.
            baseline: Consider changes since this point in time.

        Returns:
            A run carrying the suggested clusters.

        Raises:
            RunStartError: If the selection failed twice. Fall back to running
                every test.
        """
        if self._selection is None:
            msg = 'No selection service configured'
            raise RunStartError(msg)

        baseline_ms = int(baseline.timestamp() * 1000) if baseline is not None else None
        last_error: Exception | None = None
        for attempt in range(1, SELECTION_ATTEMPTS + 1):
            try:
                clusters = self._selection.test_run_started(
                    available_tests,
                    include_non_impacted=self._include_non_impacted,
                    baseline_ms=baseline_ms,
                )
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                logger.warning('Test selection attempt %d of %d failed: %s', attempt, SELECTION_ATTEMPTS, exc)
                continue
            return TestRunWithSuggestions(self._channel, clusters, self._uploader)

        msg = f'Failed to start the test run: {last_error}'
        raise RunStartError(msg) from last_error

    def start_unselected_run(self) -> TestRun:
        """Start a run that records coverage without any selection."""
        return TestRun(self._channel, self._uploader)
