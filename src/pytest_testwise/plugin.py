"""pytest plugin for testwise coverage.

This module provides the pytest plugin hooks that record the coverage of
every test separately and, when a selection service is configured, run only
the tests impacted by a change.
"""

from __future__ import annotations

import inspect
from io import StringIO
import logging
from pathlib import Path
from typing import TYPE_CHECKING
import warnings

import pytest

from pytest_testwise.agent.bootstrap import Agent
from pytest_testwise.agent.metadata import SessionMetadata
from pytest_testwise.cache.hasher import ContentHasher, format_content_id
from pytest_testwise.config import TestwiseConfig, load_config, merge_configs
from pytest_testwise.errors import DumpError, InvalidTransitionError, RunStartError, UploadError
from pytest_testwise.report.console import ConsoleReporter
from pytest_testwise.report.json_reporter import JsonReporter
from pytest_testwise.report.models import ExecutionResult, TestExecutionRecord
from pytest_testwise.tia.client import TiaClient
from pytest_testwise.tia.models import ClusteredTestDetails
from pytest_testwise.tia.selection import SelectionClient
from pytest_testwise.tia.upload import HttpReportUploader


if TYPE_CHECKING:
    from collections.abc import Generator, Iterable

    from pytest_testwise.tia.client import RunningTest, TestRun


logger = logging.getLogger(__name__)

PLUGIN_NAME = 'testwise-session'

# Test modules keep pytest's assertion rewriting
TEST_MODULE_PATTERNS = ('conftest', '*.conftest', 'test_*', '*.test_*', '*_test', '*.*_test')


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add command-line options for pytest-testwise."""
    group = parser.getgroup('testwise', 'per-test coverage and test impact analysis')
    group.addoption(
        '--testwise',
        action='store_true',
        default=False,
        dest='testwise',
        help='Record the coverage of every test separately',
    )
    group.addoption(
        '--testwise-include',
        action='store',
        default=None,
        dest='testwise_include',
        help='Comma-separated module name patterns to instrument, e.g. "shop,shop.*"',
    )
    group.addoption(
        '--testwise-exclude',
        action='store',
        default=None,
        dest='testwise_exclude',
        help='Comma-separated module name patterns never to instrument',
    )
    group.addoption(
        '--testwise-report',
        action='store',
        default=None,
        dest='testwise_report',
        help='Path of the JSON report (default: testwise-coverage.json)',
    )
    group.addoption(
        '--testwise-selection-url',
        action='store',
        default=None,
        dest='testwise_selection_url',
        help='Base URL of the test-selection service; run only impacted tests',
    )
    group.addoption(
        '--testwise-upload-url',
        action='store',
        default=None,
        dest='testwise_upload_url',
        help='Endpoint the report is posted to at the end of the session',
    )
    group.addoption(
        '--testwise-partition',
        action='store',
        default=None,
        dest='testwise_partition',
        help='Partition the coverage is uploaded to',
    )
    group.addoption(
        '--testwise-port',
        action='store',
        type=int,
        default=None,
        dest='testwise_port',
        help='Serve the agent control channel on this port (0 picks a free port)',
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest-testwise based on command-line options."""
    if not config.option.testwise:
        return

    settings = merge_configs(
        load_config(config.rootpath),
        cli_include=config.option.testwise_include,
        cli_exclude=config.option.testwise_exclude,
        cli_report=config.option.testwise_report,
        cli_selection_url=config.option.testwise_selection_url,
        cli_upload_url=config.option.testwise_upload_url,
        cli_partition=config.option.testwise_partition,
        cli_port=config.option.testwise_port,
    )
    if not settings.include:
        config.issue_config_time_warning(
            pytest.PytestConfigWarning('testwise: no include patterns configured, no module will be instrumented'),
            stacklevel=2,
        )

    session = TestwiseSession(config, settings)
    config.pluginmanager.register(session, PLUGIN_NAME)
    session.start()


def pytest_unconfigure(config: pytest.Config) -> None:
    """Stop the agent and remove the import hook."""
    session = config.pluginmanager.get_plugin(PLUGIN_NAME)
    if session is not None:
        session.close()
        config.pluginmanager.unregister(session, PLUGIN_NAME)


class TestwiseSession:
    """State of pytest-testwise for one pytest session.

    Owns the agent of the process and the TIA test run, and drives the start
    and end of every test through it.
    """

    __test__ = False

    def __init__(self, config: pytest.Config, settings: TestwiseConfig) -> None:
        """Initialize the session.

        Args:
            config: The pytest config.
            settings: Merged pytest-testwise configuration.
        """
        self._config = config
        self.settings = settings
        self.agent = Agent(
            settings.include or (),
            (*(settings.exclude or ()), *TEST_MODULE_PATTERNS),
            metadata=SessionMetadata(partition=settings.partition),
        )
        uploader = HttpReportUploader(settings.upload_url) if settings.upload_url else None
        selection = (
            SelectionClient(settings.selection_url, timeout=settings.selection_timeout)
            if settings.selection_url
            else None
        )
        self.tia = TiaClient(
            self.agent.coordinator,
            selection,
            uploader,
            include_non_impacted=settings.include_non_impacted,
        )
        self.run: TestRun | None = None
        self.report_path = _report_path(config, settings.report)
        self._reports: dict[str, list[pytest.TestReport]] = {}

    def start(self) -> None:
        """Install the import hook and start the control server if configured."""
        self.agent.install()
        if self.settings.port is not None:
            self.agent.serve(port=self.settings.port)

    def close(self) -> None:
        """Shut the agent down."""
        self.agent.close()

    def pytest_report_header(self) -> list[str]:
        """Show what is being instrumented."""
        lines = [f'testwise: instrumenting {", ".join(self.settings.include or ()) or "nothing"}']
        if self.agent.server is not None:
            lines.append(f'testwise: control server on {self.agent.server.base_url}')
        return lines

    @pytest.hookimpl(trylast=True)
    def pytest_collection_modifyitems(self, config: pytest.Config, items: list[pytest.Item]) -> None:
        """Ask the selection service which tests to run, in which order."""
        if self.settings.selection_url is None:
            self.run = self.tia.start_unselected_run()
            return

        try:
            run = self.tia.start_run([_test_details(item) for item in items])
        except RunStartError as exc:
            warnings.warn(f'testwise: test selection failed, running all tests: {exc}', UserWarning, stacklevel=2)
            self.run = self.tia.start_unselected_run()
            return

        self.run = run
        selected, deselected = _apply_selection(items, run.selected_tests())
        if deselected:
            config.hook.pytest_deselected(items=deselected)
        items[:] = selected
        logger.info('testwise: selected %d of %d tests', len(selected), len(selected) + len(deselected))

    @pytest.hookimpl(wrapper=True)
    def pytest_runtest_protocol(self, item: pytest.Item, nextitem: pytest.Item | None) -> Generator[None, object, object]:  # noqa: ARG002
        """Record the coverage of one test, including its setup and teardown."""
        running = self._start_test(item.nodeid)
        try:
            return (yield)
        finally:
            reports = self._reports.pop(item.nodeid, [])
            if running is not None:
                self._end_test(running, _execution_record(item.nodeid, reports))

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        """Collect the phase reports of the running test."""
        self._reports.setdefault(report.nodeid, []).append(report)

    def pytest_sessionfinish(self, session: pytest.Session) -> None:  # noqa: ARG002
        """Write the report and hand it to the uploader."""
        report = self.agent.coordinator.report
        JsonReporter().write_report(report, self.report_path)

        if self.run is None:
            return
        try:
            self.run.finalize(report, self.agent.metadata.metadata)
        except UploadError as exc:
            warnings.warn(f'testwise: {exc}', UserWarning, stacklevel=2)

    def pytest_terminal_summary(self, terminalreporter: pytest.TerminalReporter) -> None:
        """Print a summary of the recorded coverage."""
        output = StringIO()
        ConsoleReporter(output).write_report(self.agent.coordinator.report, str(self.report_path))
        terminalreporter.write(output.getvalue())

    def _start_test(self, uniform_path: str) -> RunningTest | None:
        if self.run is None:
            self.run = self.tia.start_unselected_run()
        try:
            return self.run.start_test(uniform_path)
        except DumpError as exc:
            logger.warning('testwise: no coverage for %s: %s', uniform_path, exc)
            return None
        except InvalidTransitionError:
            # e.g. a control channel client still holds another test active
            logger.exception('testwise: cannot record coverage for %s', uniform_path)
            return None

    def _end_test(self, running: RunningTest, execution: TestExecutionRecord) -> None:
        try:
            running.end(execution)
        except DumpError as exc:
            logger.warning('testwise: coverage of %s is incomplete: %s', running.uniform_path, exc)
        except InvalidTransitionError:
            logger.exception('testwise: test boundaries out of sync at %s', running.uniform_path)


def _report_path(config: pytest.Config, report: str) -> Path:
    path = Path(report)
    if not path.is_absolute():
        path = config.rootpath / path
    # Every xdist worker runs its own agent and writes its own report
    worker_id = getattr(config, 'workerinput', {}).get('workerid')
    if worker_id:
        path = path.with_name(f'{path.stem}-{worker_id}{path.suffix}')
    return path


def _test_details(item: pytest.Item) -> ClusteredTestDetails:
    """Describe a collected test for the selection service."""
    source_path = item.nodeid.split('::', 1)[0]
    return ClusteredTestDetails(
        uniform_path=item.nodeid,
        cluster_id=source_path,
        source_path=source_path,
        content=_test_content(item),
    )


def _test_content(item: pytest.Item) -> str | None:
    function = getattr(item, 'obj', None)
    if function is None:
        return None
    try:
        source = inspect.getsource(function)
    except (OSError, TypeError):
        return None
    return format_content_id(ContentHasher().content_id(source.encode()))


def _apply_selection(items: list[pytest.Item], selected: Iterable[str]) -> tuple[list[pytest.Item], list[pytest.Item]]:
    """Order items like the selection and split off the ones not selected."""
    by_id = {item.nodeid: item for item in items}
    ordered: list[pytest.Item] = []
    for uniform_path in selected:
        item = by_id.pop(uniform_path, None)
        if item is None:
            logger.debug('testwise: selected test %s was not collected', uniform_path)
            continue
        ordered.append(item)
    return ordered, list(by_id.values())


def _execution_record(uniform_path: str, reports: list[pytest.TestReport]) -> TestExecutionRecord:
    """Derive the execution record of a test from its phase reports."""
    duration = sum(report.duration for report in reports)
    for report in reports:
        if report.failed:
            result = ExecutionResult.FAILED if report.when == 'call' else ExecutionResult.ERRORED
            return TestExecutionRecord(uniform_path, duration, result, report.longreprtext or None)
    for report in reports:
        if report.skipped:
            reason = report.longrepr[2] if isinstance(report.longrepr, tuple) else None
            return TestExecutionRecord(uniform_path, duration, ExecutionResult.SKIPPED, reason)
    return TestExecutionRecord(uniform_path, duration, ExecutionResult.PASSED)
