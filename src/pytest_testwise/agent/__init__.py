"""Agent module: the per-process side of testwise coverage.

This module provides the components that run inside the process executing
the tests:

- RuntimeController: Serialized access to the coverage runtime
- TestBoundaryCoordinator: Correlates probe snapshots with test identities
- ControlServer: HTTP control channel on a dynamic port
- Agent: Wires all of the above for one process
"""

from __future__ import annotations

from pytest_testwise.agent.bootstrap import Agent
from pytest_testwise.agent.controller import CoverageRuntime, RuntimeController
from pytest_testwise.agent.coordinator import CoordinatorState, TestBoundaryCoordinator
from pytest_testwise.agent.metadata import MetadataStore, SessionMetadata
from pytest_testwise.agent.server import ControlServer, create_app


__all__ = [
    'Agent',
    'ControlServer',
    'CoordinatorState',
    'CoverageRuntime',
    'MetadataStore',
    'RuntimeController',
    'SessionMetadata',
    'TestBoundaryCoordinator',
    'create_app',
]
