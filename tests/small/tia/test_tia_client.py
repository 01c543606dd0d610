"""Tests for TiaClient and the test runs it hands out."""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from pytest_testwise.agent.metadata import SessionMetadata
from pytest_testwise.errors import DumpError, InvalidTransitionError, RunStartError
from pytest_testwise.report.models import CoverageFragment, ExecutionResult, TestExecutionRecord, TestwiseCoverageReport
from pytest_testwise.tia.client import SELECTION_ATTEMPTS, TestRun, TiaClient
from pytest_testwise.tia.models import ClusteredTestDetails, PrioritizableTest, PrioritizableTestCluster


class RecordingChannel:
    """Channel that records calls and returns empty fragments."""

    def __init__(self, fail_ends: bool = False) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_ends = fail_ends

    def start_test(self, uniform_path: str) -> None:
        self.calls.append(('start', uniform_path))

    def end_test(self, uniform_path: str, execution: TestExecutionRecord | None = None) -> CoverageFragment:
        self.calls.append(('end', uniform_path))
        if self.fail_ends:
            msg = 'coverage lost'
            raise DumpError(msg)
        return CoverageFragment(uniform_path)


class ScriptedSelection:
    """Selection client that fails a number of times before answering."""

    def __init__(self, failures: int, clusters: list[PrioritizableTestCluster] | None = None) -> None:
        self.failures = failures
        self.clusters = clusters or []
        self.calls: list[dict[str, object]] = []

    def test_run_started(self, available_tests, *, include_non_impacted=False, baseline_ms=None):
        self.calls.append(
            {'tests': available_tests, 'include_non_impacted': include_non_impacted, 'baseline_ms': baseline_ms}
        )
        if len(self.calls) <= self.failures:
            raise httpx.ConnectError('Connection refused')
        return self.clusters


class RecordingUploader:
    def __init__(self) -> None:
        self.uploads: list[tuple[TestwiseCoverageReport, SessionMetadata]] = []

    def upload(self, report: TestwiseCoverageReport, metadata: SessionMetadata) -> None:
        self.uploads.append((report, metadata))


def _cluster(cluster_id: str, *paths: str) -> PrioritizableTestCluster:
    return PrioritizableTestCluster(cluster_id, tests=tuple(PrioritizableTest(path) for path in paths))


INVENTORY = [ClusteredTestDetails('t1', 'c1'), ClusteredTestDetails('t2', 'c1')]


@pytest.mark.small
class TestStartRun:
    """Tests for TiaClient.start_run."""

    def test_returns_run_with_suggestions(self):
        clusters = [_cluster('c2', 't3'), _cluster('c1', 't1', 't2')]
        client = TiaClient(RecordingChannel(), ScriptedSelection(0, clusters))

        run = client.start_run(INVENTORY)

        assert run.prioritized_clusters == clusters
        assert run.selected_tests() == ['t3', 't1', 't2']

    def test_selected_tests_are_deduplicated(self):
        client = TiaClient(RecordingChannel(), ScriptedSelection(0, [_cluster('a', 't1', 't2'), _cluster('b', 't2')]))

        assert client.start_run(INVENTORY).selected_tests() == ['t1', 't2']

    def test_retries_once_after_failure(self):
        selection = ScriptedSelection(1, [_cluster('c1', 't1')])
        client = TiaClient(RecordingChannel(), selection)

        run = client.start_run(INVENTORY)

        assert run.selected_tests() == ['t1']
        assert len(selection.calls) == 2

    def test_two_failures_raise_run_start_error(self):
        selection = ScriptedSelection(5)
        channel = RecordingChannel()
        client = TiaClient(channel, selection)

        with pytest.raises(RunStartError, match='Connection refused') as exc_info:
            client.start_run(INVENTORY)

        assert len(selection.calls) == SELECTION_ATTEMPTS == 2
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert channel.calls == []

    def test_invalid_answer_counts_as_failure(self):
        class BrokenSelection(ScriptedSelection):
            def test_run_started(self, available_tests, **kwargs):
                super().test_run_started(available_tests, **kwargs)
                msg = 'Expected a list of test clusters, got dict'
                raise ValueError(msg)

        with pytest.raises(RunStartError, match='list of test clusters'):
            TiaClient(RecordingChannel(), BrokenSelection(0)).start_run(INVENTORY)

    def test_without_selection_service_raises_run_start_error(self):
        with pytest.raises(RunStartError, match='No selection service'):
            TiaClient(RecordingChannel()).start_run(INVENTORY)

    def test_passes_flags_and_baseline(self):
        selection = ScriptedSelection(0)
        client = TiaClient(RecordingChannel(), selection, include_non_impacted=True)

        client.start_run(None, baseline=datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc))

        assert selection.calls == [{'tests': None, 'include_non_impacted': True, 'baseline_ms': 1700000000000}]

    def test_unselected_run_asks_nobody(self):
        selection = ScriptedSelection(0)

        run = TiaClient(RecordingChannel(), selection).start_unselected_run()

        assert isinstance(run, TestRun)
        assert selection.calls == []


@pytest.mark.small
class TestTestRun:
    """Tests for driving tests through a TestRun."""

    def test_start_and_end_go_through_channel(self):
        channel = RecordingChannel()
        run = TestRun(channel)

        running = run.start_test('t1')
        fragment = running.end(ExecutionResult.PASSED)

        assert channel.calls == [('start', 't1'), ('end', 't1')]
        assert fragment.uniform_path == 't1'

    def test_end_with_outcome_builds_record(self):
        run = TestRun(RecordingChannel())

        run.start_test('t1').end(ExecutionResult.FAILED, 'assert 1 == 2')

        record = run.executions[0]
        assert record.uniform_path == 't1'
        assert record.result is ExecutionResult.FAILED
        assert record.message == 'assert 1 == 2'
        assert record.duration_seconds >= 0

    def test_end_with_full_record(self):
        run = TestRun(RecordingChannel())
        record = TestExecutionRecord('t1', 2.5, ExecutionResult.SKIPPED, 'no database')

        run.start_test('t1').end(record)

        assert run.executions == [record]

    def test_ending_twice_is_rejected(self):
        running = TestRun(RecordingChannel()).start_test('t1')
        running.end(ExecutionResult.PASSED)

        with pytest.raises(InvalidTransitionError, match='already ended'):
            running.end(ExecutionResult.PASSED)

    def test_execution_is_kept_when_coverage_is_lost(self):
        run = TestRun(RecordingChannel(fail_ends=True))

        with pytest.raises(DumpError):
            run.start_test('t1').end(ExecutionResult.PASSED)

        assert [record.uniform_path for record in run.executions] == ['t1']

    def test_finalize_uploads_report(self):
        uploader = RecordingUploader()
        run = TestRun(RecordingChannel(), uploader)
        report = TestwiseCoverageReport()
        metadata = SessionMetadata(partition='unit')

        run.finalize(report, metadata)

        assert uploader.uploads == [(report, metadata)]
        assert run.finalized

    def test_finalize_without_metadata_sends_empty_metadata(self):
        uploader = RecordingUploader()

        TestRun(RecordingChannel(), uploader).finalize(TestwiseCoverageReport())

        assert uploader.uploads[0][1] == SessionMetadata()

    def test_finalize_twice_is_rejected(self):
        uploader = RecordingUploader()
        run = TestRun(RecordingChannel(), uploader)
        run.finalize(TestwiseCoverageReport())

        with pytest.raises(InvalidTransitionError, match='already finalized'):
            run.finalize(TestwiseCoverageReport())
        assert len(uploader.uploads) == 1

    def test_no_tests_start_after_finalize(self):
        channel = RecordingChannel()
        run = TestRun(channel)
        run.finalize(TestwiseCoverageReport())

        with pytest.raises(InvalidTransitionError, match='finalized'):
            run.start_test('t1')
        assert channel.calls == []
