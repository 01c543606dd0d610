"""HTTP client of the test-selection service.

The selection service receives the inventory of available tests and answers
with the tests that are impacted by the changes since a baseline, grouped
into clusters and ordered by priority.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from pytest_testwise.tia.models import PrioritizableTestCluster


if TYPE_CHECKING:
    from collections.abc import Sequence

    from pytest_testwise.tia.models import ClusteredTestDetails


logger = logging.getLogger(__name__)

DEFAULT_SELECTION_TIMEOUT = 30.0


class SelectionClient:
    """Client of the ``test-run-started`` endpoint of a selection service.

    A single request is made per call. Retrying is the caller's decision.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_SELECTION_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the selection service.
            timeout: Timeout of one request in seconds.
            client: HTTP client to use, e.g. one with a mock transport.
        """
        self._base_url = base_url.rstrip('/')
        self._timeout = timeout
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def test_run_started(
        self,
        available_tests: Sequence[ClusteredTestDetails] | None,
        *,
        include_non_impacted: bool = False,
        baseline_ms: int | None = None,
    ) -> list[PrioritizableTestCluster]:
        """Ask the service which tests to run.

        Args:
            available_tests: The test inventory. None leaves the inventory out
                and lets the service use the tests it already knows.
            include_non_impacted: Also return tests not impacted by changes.
            baseline_ms: Consider changes since this epoch milliseconds timestamp.

        Returns:
            Clusters of suggested tests in execution order.

        Raises:
            httpx.HTTPError: If the request fails or the status is not 2xx.
            ValueError: If the response body is not a list of clusters.
        """
        params: dict[str, str | int] = {'include-non-impacted': 'true' if include_non_impacted else 'false'}
        if baseline_ms is not None:
            params['baseline'] = baseline_ms

        url = f'{self._base_url}/test-run-started'
        if available_tests is None:
            response = self._client.post(url, params=params, timeout=self._timeout)
        else:
            body = [test.to_dict() for test in available_tests]
            response = self._client.post(url, params=params, json=body, timeout=self._timeout)
        response.raise_for_status()

        data = response.json()
        if not isinstance(data, list):
            msg = f'Expected a list of test clusters, got {type(data).__name__}'
            raise ValueError(msg)
        clusters = [PrioritizableTestCluster.from_dict(cluster) for cluster in data]
        logger.debug(
            'Selection service suggested %d tests in %d clusters',
            sum(len(cluster.tests) for cluster in clusters),
            len(clusters),
        )
        return clusters

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()
