"""Runtime controller: typed access to a coverage runtime.

The RuntimeController is the only component that talks to the coverage
runtime. It turns the runtime's loosely typed operations into the
reset/dump/session calls the coordinator needs and serializes them, so a
reset can never interleave with a dump of the same runtime.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from pytest_testwise.errors import DumpError


logger = logging.getLogger(__name__)


class CoverageRuntime(Protocol):
    """Operations a coverage runtime must offer.

    ProbeRuntime implements this protocol; tests use in-memory fakes.
    """

    def reset(self) -> None:
        """Zero all probes of all loaded modules."""
        ...

    def dump(self, reset: bool) -> dict[int, bytes]:
        """Return a probe snapshot per content id, optionally resetting."""
        ...

    def get_session_id(self) -> str | None:
        """Return the current session id."""
        ...

    def set_session_id(self, session_id: str | None) -> None:
        """Set or clear the current session id."""
        ...

    def get_class_content(self, content_id: int) -> bytes:
        """Return the content buffer of a loaded module."""
        ...


class RuntimeController:
    """Serialized facade over one coverage runtime.

    One controller owns one runtime. Every call takes the controller's lock,
    so concurrent callers observe reset, dump and session changes in some
    total order.

    Example:
        >>> from pytest_testwise.instrumentation.runtime import ProbeRuntime
        >>> controller = RuntimeController(ProbeRuntime())
        >>> controller.set_session('tests/test_cart.py::test_total')
        >>> controller.get_session()
        'tests/test_cart.py::test_total'
    """

    def __init__(self, runtime: CoverageRuntime, *, reset_on_dump: bool = True) -> None:
        """Initialize the controller.

        Args:
            runtime: The coverage runtime to control.
            reset_on_dump: Zero the probes as part of every dump.
        """
        self._runtime = runtime
        self._reset_on_dump = reset_on_dump
        self._lock = threading.Lock()

    @property
    def reset_on_dump(self) -> bool:
        """Whether dump() also zeroes the probes."""
        return self._reset_on_dump

    def set_session(self, session_id: str | None) -> None:
        """Set the session id, or clear it with None."""
        with self._lock:
            self._runtime.set_session_id(session_id)

    def get_session(self) -> str | None:
        """Return the current session id, or None."""
        with self._lock:
            return self._runtime.get_session_id()

    def reset(self) -> None:
        """Zero all probes of all loaded modules.

        Raises:
            DumpError: If the runtime cannot be reached.
        """
        with self._lock:
            try:
                self._runtime.reset()
            except (RuntimeError, OSError) as exc:
                msg = f'Could not reset coverage runtime: {exc}'
                raise DumpError(msg) from exc

    def dump(self) -> dict[int, bytes]:
        """Read the probes of all loaded modules.

        Reading and (when reset_on_dump is set) zeroing happen as one
        operation: no probe hit can fall between the two.

        Returns:
            Mapping of content id to probe snapshot.

        Raises:
            DumpError: If the runtime cannot be reached.
        """
        with self._lock:
            try:
                snapshots = self._runtime.dump(self._reset_on_dump)
            except (RuntimeError, OSError) as exc:
                msg = f'Could not dump coverage runtime: {exc}'
                raise DumpError(msg) from exc
        logger.debug('Dumped %d module snapshots', len(snapshots))
        return snapshots

    def class_content(self, content_id: int) -> bytes:
        """Return the content buffer of a loaded module.

        Raises:
            KeyError: If no module with this content id is loaded.
        """
        with self._lock:
            return self._runtime.get_class_content(content_id)
