"""HTTP client of an agent's control channel.

AgentClient drives a coordinator running in another process through the
routes served by ControlServer. It implements the same start_test/end_test
contract as TestBoundaryCoordinator, so a TestRun can drive a remote agent
exactly like an in-process one.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import quote

import httpx

from pytest_testwise.errors import DumpError, InvalidTransitionError, TestwiseError
from pytest_testwise.report.json_reporter import JsonReporter


if TYPE_CHECKING:
    from pytest_testwise.report.models import CoverageFragment, TestExecutionRecord, TestwiseCoverageReport


logger = logging.getLogger(__name__)


class AgentClient:
    """Client of one agent's control channel.

    Example:
        >>> client = AgentClient('http://127.0.0.1:51234')
        >>> client.start_test('tests/test_cart.py::test_total')
        >>> fragment = client.end_test('tests/test_cart.py::test_total')
    """

    def __init__(self, base_url: str, *, client: httpx.Client | None = None) -> None:
        """Initialize the client.

        Args:
            base_url: URL of the agent's control server.
            client: HTTP client to use, e.g. one with a mock transport.
        """
        self._client = client if client is not None else httpx.Client(base_url=base_url)
        if client is not None:
            self._client.base_url = base_url
        self._reporter = JsonReporter()

    def current_test(self) -> str | None:
        """Return the identity of the agent's active test, or None."""
        response = self._request('GET', '/test')
        return response.text or None

    def start_test(self, uniform_path: str) -> None:
        """Start a test on the agent.

        Raises:
            InvalidTransitionError: If the agent has another test active.
            DumpError: If the agent cannot reset its runtime.
        """
        self._request('POST', f'/test/start/{_quote(uniform_path)}')

    def end_test(self, uniform_path: str, execution: TestExecutionRecord | None = None) -> CoverageFragment:
        """End a test on the agent and return its coverage.

        Raises:
            InvalidTransitionError: If the test is not the agent's active test.
            DumpError: If the agent lost the test's coverage.
        """
        body = execution.to_dict() if execution is not None else None
        response = self._request('POST', f'/test/end/{_quote(uniform_path)}', json=body)
        return self._reporter.fragment_from_dict(response.json())

    def dump_intermediate(self) -> CoverageFragment:
        """Return the coverage of the agent's active test so far, keeping it active.

        Raises:
            InvalidTransitionError: If the agent has no active test.
            DumpError: If the agent cannot read its runtime.
        """
        return self._reporter.fragment_from_dict(self._request('POST', '/dump').json())

    def report(self) -> TestwiseCoverageReport:
        """Return the report the agent accumulated so far."""
        return self._reporter.report_from_dict(self._request('GET', '/report').json())

    def get_metadata(self, name: str) -> str | None:
        """Return one metadata field of the agent, e.g. ``partition``."""
        return self._request('GET', f'/{name}').text or None

    def set_metadata(self, name: str, value: str) -> None:
        """Set one metadata field of the agent, e.g. ``partition``."""
        self._request('PUT', f'/{name}', content=value.encode())

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)  # type: ignore[arg-type]
        except httpx.HTTPError as exc:
            msg = f'Agent at {self._client.base_url} is not reachable: {exc}'
            raise TestwiseError(msg) from exc

        if response.status_code == httpx.codes.CONFLICT:
            raise InvalidTransitionError(response.text)
        if response.status_code == httpx.codes.SERVICE_UNAVAILABLE:
            raise DumpError(response.text)
        if response.is_error:
            msg = f'Agent request {method} {path} failed with {response.status_code}: {response.text}'
            raise TestwiseError(msg)
        return response


def _quote(uniform_path: str) -> str:
    # Node ids contain slashes, brackets and spaces
    return quote(uniform_path, safe='')
