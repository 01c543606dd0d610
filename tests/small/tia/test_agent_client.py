"""Tests for AgentClient against the control channel routes."""

from __future__ import annotations

import httpx
import pytest
from starlette.testclient import TestClient

from pytest_testwise.agent.metadata import MetadataStore
from pytest_testwise.agent.server import create_app
from pytest_testwise.errors import DumpError, InvalidTransitionError, TestwiseError
from pytest_testwise.report.models import ExecutionResult, TestExecutionRecord
from pytest_testwise.tia.agent_client import AgentClient


@pytest.fixture
def metadata() -> MetadataStore:
    return MetadataStore()


@pytest.fixture
def agent(coordinator, metadata) -> AgentClient:
    return AgentClient('http://testserver', client=TestClient(create_app(coordinator, metadata)))


@pytest.mark.small
class TestAgentClient:
    """Tests for AgentClient driving a coordinator over HTTP."""

    def test_start_and_end_round_trip(self, agent, coordinator, fake_runtime, make_content):
        content_id = fake_runtime.load(make_content('shop.cart', 'a = 1\nb = 2\n'), probe_count=2)
        uniform_path = 'tests/test_cart.py::test_total[big cart]'

        agent.start_test(uniform_path)
        assert agent.current_test() == uniform_path
        fake_runtime.hit(content_id, 0)
        fragment = agent.end_test(uniform_path, TestExecutionRecord(uniform_path, 0.2, ExecutionResult.PASSED))

        assert fragment.lines == {content_id: frozenset({1})}
        assert fragment.class_names == {content_id: 'shop.cart'}
        assert coordinator.report.get(uniform_path).execution.result is ExecutionResult.PASSED

    def test_dump_intermediate_keeps_the_test_running(self, agent, fake_runtime, make_content):
        content_id = fake_runtime.load(make_content('shop.cart', 'a = 1\nb = 2\n'), probe_count=2)
        agent.start_test('t1')
        fake_runtime.hit(content_id, 0)

        so_far = agent.dump_intermediate()
        fake_runtime.hit(content_id, 1)
        fragment = agent.end_test('t1')

        assert so_far.lines == {content_id: frozenset({1})}
        assert fragment.lines == {content_id: frozenset({1, 2})}

    def test_dump_intermediate_when_idle_is_invalid_transition(self, agent):
        with pytest.raises(InvalidTransitionError):
            agent.dump_intermediate()

    def test_current_test_is_none_when_idle(self, agent):
        assert agent.current_test() is None

    def test_conflict_maps_to_invalid_transition(self, agent):
        agent.start_test('t1')

        with pytest.raises(InvalidTransitionError, match='t1'):
            agent.start_test('t2')

    def test_service_unavailable_maps_to_dump_error(self, agent, fake_runtime):
        agent.start_test('t1')
        fake_runtime.fail_dumps = True

        with pytest.raises(DumpError):
            agent.end_test('t1')

    def test_report(self, agent):
        agent.start_test('t1')
        agent.end_test('t1')

        assert agent.report().uniform_paths() == ['t1']

    def test_metadata(self, agent, metadata):
        agent.set_metadata('partition', 'integration')

        assert agent.get_metadata('partition') == 'integration'
        assert agent.get_metadata('revision') is None
        assert metadata.metadata.partition == 'integration'


@pytest.mark.small
class TestAgentClientErrors:
    """Tests for failures below the protocol level."""

    def test_unreachable_agent_raises_testwise_error(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('Connection refused', request=request)

        agent = AgentClient('http://127.0.0.1:1', client=httpx.Client(transport=httpx.MockTransport(refuse)))

        with pytest.raises(TestwiseError, match='not reachable'):
            agent.current_test()

    def test_unexpected_status_raises_testwise_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text='internal'))
        agent = AgentClient('http://agent', client=httpx.Client(transport=transport))

        with pytest.raises(TestwiseError, match='500'):
            agent.report()

    def test_identities_are_quoted_into_one_path_segment(self):
        paths: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.raw_path)
            return httpx.Response(204)

        agent = AgentClient('http://agent', client=httpx.Client(transport=httpx.MockTransport(handler)))

        agent.start_test('tests/a.py::test[x y]')

        assert paths == [b'/test/start/tests%2Fa.py%3A%3Atest%5Bx%20y%5D']
