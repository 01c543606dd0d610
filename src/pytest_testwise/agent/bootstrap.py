"""Agent bootstrap: everything one process needs to record testwise coverage.

An Agent owns exactly one ProbeRuntime and wires the rest around it: the
import hook that instruments code under test, the controller, the probe
cache, the coordinator and, on demand, the control server.

Example:
    >>> agent = Agent(include=['shop', 'shop.*'])
    >>> agent.install()
    >>> import shop.cart  # instrumented
    >>> agent.coordinator.start_test('tests/test_cart.py::test_total')
    >>> # ... run the test ...
    >>> fragment = agent.coordinator.end_test('tests/test_cart.py::test_total')
    >>> agent.close()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pytest_testwise.agent.controller import RuntimeController
from pytest_testwise.agent.coordinator import TestBoundaryCoordinator
from pytest_testwise.agent.metadata import MetadataStore, SessionMetadata
from pytest_testwise.agent.server import ControlServer, create_app
from pytest_testwise.cache import ContentHasher, ProbeCache, StructuralAnalyzer
from pytest_testwise.instrumentation.import_hooks import (
    TestwiseFinder,
    register_import_hooks,
    unregister_import_hooks,
)
from pytest_testwise.instrumentation.runtime import ProbeRuntime


if TYPE_CHECKING:
    from collections.abc import Iterable


logger = logging.getLogger(__name__)


class Agent:
    """The testwise coverage agent of one process."""

    def __init__(
        self,
        include: Iterable[str],
        exclude: Iterable[str] = (),
        *,
        metadata: SessionMetadata | None = None,
        reset_on_dump: bool = True,
    ) -> None:
        """Create an agent. Nothing is installed until install() is called.

        Args:
            include: Module name patterns to instrument.
            exclude: Module name patterns never to instrument.
            metadata: Initial session metadata.
            reset_on_dump: Zero the probes as part of every dump.
        """
        self.runtime = ProbeRuntime()
        self.finder = TestwiseFinder(self.runtime, include, exclude, ContentHasher())
        self.controller = RuntimeController(self.runtime, reset_on_dump=reset_on_dump)
        self.cache = ProbeCache(StructuralAnalyzer())
        self.coordinator = TestBoundaryCoordinator(self.controller, self.cache)
        self.metadata = MetadataStore(metadata)
        self._server: ControlServer | None = None
        self._installed = False

    @property
    def server(self) -> ControlServer | None:
        """The running control server, if any."""
        return self._server

    def install(self) -> None:
        """Put the import hook in place. Modules imported afterwards are instrumented."""
        if not self._installed:
            register_import_hooks(self.finder)
            self._installed = True

    def serve(self, host: str = '127.0.0.1', port: int = 0) -> int:
        """Start the control server.

        Args:
            host: Interface to bind to.
            port: Port to bind to. 0 picks a free port.

        Returns:
            The port the server listens on.
        """
        if self._server is None:
            self._server = ControlServer(create_app(self.coordinator, self.metadata), host, port)
            self._server.start()
        return self._server.port

    def close(self) -> None:
        """Stop the server, remove the import hook and shut the runtime down."""
        if self._server is not None:
            self._server.stop()
            self._server = None
        if self._installed:
            unregister_import_hooks()
            self._installed = False
        self.runtime.shutdown()
        logger.debug('Agent closed, probe cache stats: %s', self.cache.get_stats())
