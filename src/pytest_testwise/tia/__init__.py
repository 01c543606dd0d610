"""Test impact analysis client.

This module provides the test-run orchestration protocol:

- TiaClient: Starts runs with or without test selection
- TestRun / RunningTest: Drive tests through a coordinator or agent
- SelectionClient: Talks to the test-selection service
- AgentClient: Talks to an agent's control channel
- HttpReportUploader: Hands finished reports off
"""

from __future__ import annotations

from pytest_testwise.tia.agent_client import AgentClient
from pytest_testwise.tia.client import CoverageChannel, RunningTest, TestRun, TestRunWithSuggestions, TiaClient
from pytest_testwise.tia.models import ClusteredTestDetails, PrioritizableTest, PrioritizableTestCluster
from pytest_testwise.tia.selection import SelectionClient
from pytest_testwise.tia.upload import HttpReportUploader, ReportUploader


__all__ = [
    'AgentClient',
    'ClusteredTestDetails',
    'CoverageChannel',
    'HttpReportUploader',
    'PrioritizableTest',
    'PrioritizableTestCluster',
    'ReportUploader',
    'RunningTest',
    'SelectionClient',
    'TestRun',
    'TestRunWithSuggestions',
    'TiaClient',
]
