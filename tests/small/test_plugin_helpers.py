"""Tests for plugin helper functions.

These tests cover the utility functions in plugin.py that can be tested in isolation.
"""

from __future__ import annotations

import logging
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from pytest_testwise.config import TestwiseConfig
from pytest_testwise.instrumentation.import_hooks import TestwiseFinder
from pytest_testwise.instrumentation.runtime import ProbeRuntime
from pytest_testwise.plugin import (
    TEST_MODULE_PATTERNS,
    TestwiseSession,
    _apply_selection,
    _execution_record,
    _report_path,
    _test_details,
)
from pytest_testwise.report.models import ExecutionResult


if TYPE_CHECKING:
    from collections.abc import Generator


def _item(nodeid: str, obj: object = None) -> SimpleNamespace:
    return SimpleNamespace(nodeid=nodeid, obj=obj)


def _report(when: str, outcome: str, longrepr: object = None, duration: float = 0.1) -> pytest.TestReport:
    return pytest.TestReport('t', ('test_x.py', 0, 't'), {}, outcome, longrepr, when, duration=duration)


def sample_function() -> int:
    return 42


@pytest.mark.small
class TestApplySelection:
    """Tests for _apply_selection function."""

    def test_orders_items_like_the_selection(self) -> None:
        """Selected items follow the order of the selection service."""
        items = [_item('a'), _item('b'), _item('c')]

        selected, deselected = _apply_selection(items, ['c', 'a'])

        assert [item.nodeid for item in selected] == ['c', 'a']
        assert [item.nodeid for item in deselected] == ['b']

    def test_ignores_tests_that_were_not_collected(self) -> None:
        items = [_item('a')]

        selected, deselected = _apply_selection(items, ['gone', 'a'])

        assert [item.nodeid for item in selected] == ['a']
        assert deselected == []

    def test_empty_selection_deselects_everything(self) -> None:
        items = [_item('a'), _item('b')]

        selected, deselected = _apply_selection(items, [])

        assert selected == []
        assert len(deselected) == 2


@pytest.mark.small
class TestExecutionRecordFromReports:
    """Tests for _execution_record function."""

    def test_all_phases_passed(self) -> None:
        reports = [_report('setup', 'passed'), _report('call', 'passed', duration=0.5), _report('teardown', 'passed')]

        record = _execution_record('t', reports)

        assert record.result is ExecutionResult.PASSED
        assert record.duration_seconds == pytest.approx(0.7)
        assert record.message is None

    def test_failed_call_is_failure(self) -> None:
        reports = [_report('setup', 'passed'), _report('call', 'failed', 'AssertionError: assert 1 == 2')]

        record = _execution_record('t', reports)

        assert record.result is ExecutionResult.FAILED
        assert 'assert 1 == 2' in record.message

    def test_failed_setup_is_error(self) -> None:
        """A fixture that raises makes the test an error, not a failure."""
        record = _execution_record('t', [_report('setup', 'failed', 'RuntimeError: no database')])

        assert record.result is ExecutionResult.ERRORED

    def test_failed_teardown_after_passed_call_is_error(self) -> None:
        reports = [_report('setup', 'passed'), _report('call', 'passed'), _report('teardown', 'failed', 'boom')]

        assert _execution_record('t', reports).result is ExecutionResult.ERRORED

    def test_skip_reason_becomes_message(self) -> None:
        reports = [_report('setup', 'skipped', ('test_x.py', 3, 'Skipped: needs network'))]

        record = _execution_record('t', reports)

        assert record.result is ExecutionResult.SKIPPED
        assert record.message == 'Skipped: needs network'

    def test_no_reports_counts_as_passed(self) -> None:
        assert _execution_record('t', []).result is ExecutionResult.PASSED


@pytest.mark.small
class TestReportPath:
    """Tests for _report_path function."""

    def test_relative_path_is_resolved_against_rootpath(self, tmp_path: Path) -> None:
        config = SimpleNamespace(rootpath=tmp_path)

        assert _report_path(config, 'build/testwise.json') == tmp_path / 'build' / 'testwise.json'

    def test_absolute_path_is_kept(self, tmp_path: Path) -> None:
        config = SimpleNamespace(rootpath=Path('/elsewhere'))

        assert _report_path(config, str(tmp_path / 'out.json')) == tmp_path / 'out.json'

    def test_xdist_worker_gets_its_own_file(self, tmp_path: Path) -> None:
        config = SimpleNamespace(rootpath=tmp_path, workerinput={'workerid': 'gw1'})

        assert _report_path(config, 'testwise-coverage.json') == tmp_path / 'testwise-coverage-gw1.json'


@pytest.mark.small
class TestTestDetails:
    """Tests for _test_details function."""

    def test_cluster_is_the_test_file(self) -> None:
        details = _test_details(_item('tests/test_cart.py::TestCart::test_total', sample_function))

        assert details.uniform_path == 'tests/test_cart.py::TestCart::test_total'
        assert details.cluster_id == 'tests/test_cart.py'
        assert details.source_path == 'tests/test_cart.py'

    def test_content_fingerprints_the_test_source(self) -> None:
        details = _test_details(_item('t', sample_function))

        assert details.content is not None
        assert len(details.content) == 16
        assert _test_details(_item('u', sample_function)).content == details.content

    def test_content_is_none_without_source(self) -> None:
        assert _test_details(_item('t', len)).content is None
        assert _test_details(_item('t')).content is None


@pytest.mark.small
class TestTestModulePatterns:
    """Tests for the modules always left uninstrumented."""

    @pytest.mark.parametrize('name', ['conftest', 'tests.conftest', 'test_cart', 'tests.test_cart', 'cart_test', 'tests.cart_test'])
    def test_test_modules_are_excluded(self, name: str) -> None:
        finder = TestwiseFinder(ProbeRuntime(), include=['*'], exclude=TEST_MODULE_PATTERNS)

        assert finder.matches(name) is False

    def test_code_under_test_is_included(self) -> None:
        finder = TestwiseFinder(ProbeRuntime(), include=['*'], exclude=TEST_MODULE_PATTERNS)

        assert finder.matches('shop.cart') is True


@pytest.mark.small
class TestSessionStartTest:
    """Tests for starting tests while the coordinator is busy."""

    @pytest.fixture
    def session(self, tmp_path: Path) -> Generator[TestwiseSession, None, None]:
        session = TestwiseSession(SimpleNamespace(rootpath=tmp_path), TestwiseConfig(include=['shop.*']))
        yield session
        session.close()

    def test_test_held_by_another_client_runs_without_coverage(
        self, session: TestwiseSession, caplog: pytest.LogCaptureFixture
    ) -> None:
        session.agent.coordinator.start_test('held/by/control/channel')

        with caplog.at_level(logging.ERROR, logger='pytest_testwise.plugin'):
            running = session._start_test('tests/test_cart.py::test_total')  # noqa: SLF001

        assert running is None
        assert session.agent.coordinator.current_test == 'held/by/control/channel'
        assert 'cannot record coverage for tests/test_cart.py::test_total' in caplog.text

    def test_next_test_records_once_the_coordinator_is_free(self, session: TestwiseSession) -> None:
        session.agent.coordinator.start_test('held/by/control/channel')
        session._start_test('tests/test_cart.py::test_total')  # noqa: SLF001
        session.agent.coordinator.end_test('held/by/control/channel')

        running = session._start_test('tests/test_cart.py::test_count')  # noqa: SLF001

        assert running is not None
        assert session.agent.coordinator.current_test == 'tests/test_cart.py::test_count'
