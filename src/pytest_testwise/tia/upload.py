"""Report upload.

A ReportUploader takes a finished TestwiseCoverageReport off the test run's
hands. HttpReportUploader posts the JSON report to an HTTP endpoint, with the
session metadata as query parameters.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import httpx

from pytest_testwise.errors import UploadError
from pytest_testwise.report.json_reporter import JsonReporter


if TYPE_CHECKING:
    from pytest_testwise.agent.metadata import SessionMetadata
    from pytest_testwise.report.models import TestwiseCoverageReport


logger = logging.getLogger(__name__)


class ReportUploader(Protocol):
    """Anything that can take a finished report."""

    def upload(self, report: TestwiseCoverageReport, metadata: SessionMetadata) -> None:
        """Upload a report.

        Raises:
            UploadError: If the report could not be uploaded.
        """
        ...


class HttpReportUploader:
    """Posts reports as JSON to an HTTP endpoint."""

    def __init__(self, url: str, *, timeout: float = 60.0, client: httpx.Client | None = None) -> None:
        """Initialize the uploader.

        Args:
            url: Endpoint receiving the reports.
            timeout: Timeout of the upload request in seconds.
            client: HTTP client to use, e.g. one with a mock transport.
        """
        self._url = url
        self._timeout = timeout
        self._client = client if client is not None else httpx.Client(timeout=timeout)
        self._reporter = JsonReporter()

    def upload(self, report: TestwiseCoverageReport, metadata: SessionMetadata) -> None:
        """Post a report.

        Args:
            report: The report to upload.
            metadata: Sent as partition, message, revision and commit parameters.

        Raises:
            UploadError: If the request fails or the status is not 2xx.
        """
        try:
            response = self._client.post(
                self._url,
                params=metadata.to_params(),
                json=self._reporter.report_to_dict(report),
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f'Upload of testwise coverage to {self._url} failed: {exc}'
            raise UploadError(msg) from exc
        logger.info('Uploaded testwise coverage of %d tests to %s', len(report), self._url)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()
