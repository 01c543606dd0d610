"""Embedded probe runtime.

The ProbeRuntime is the coverage runtime of one process. It owns the probe
array of every instrumented module, the raw content buffer each array was
created from, and the session slot naming the test currently running.

Instrumented code writes into the probe arrays without any locking; the
runtime itself only offers the coarse operations (reset, dump, session) that
the RuntimeController serializes.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging


logger = logging.getLogger(__name__)


@dataclass
class LoadedClass:
    """A module registered with the runtime.

    Attributes:
        content_id: Content id of the module's content buffer.
        content: The content buffer.
        probes: One byte per probe, set to 1 when the probe executes.
    """

    content_id: int
    content: bytes
    probes: bytearray


class ProbeRuntime:
    """Probe counters and session state for one process.

    Example:
        >>> runtime = ProbeRuntime()
        >>> probes = runtime.register(42, b'# testwise: module m\\nx = 1\\n', probe_count=1)
        >>> probes[0] = 1
        >>> runtime.dump(reset=True)
        {42: b'\\x01'}
        >>> runtime.dump(reset=False)
        {42: b'\\x00'}
    """

    def __init__(self) -> None:
        """Create a runtime with no modules loaded and no session."""
        self._classes: dict[int, LoadedClass] = {}
        self._session_id: str | None = None
        self._shut_down = False

    def register(self, content_id: int, content: bytes, probe_count: int) -> bytearray:
        """Register an instrumented module and return its probe array.

        Modules with identical content share one probe array, just like they
        share one probe layout.

        Args:
            content_id: Content id of the buffer.
            content: The content buffer.
            probe_count: Number of probes the instrumenter inserted.

        Returns:
            The probe array to inject into the module namespace.
        """
        loaded = self._classes.get(content_id)
        if loaded is None:
            loaded = LoadedClass(content_id, content, bytearray(probe_count))
            self._classes[content_id] = loaded
        elif len(loaded.probes) != probe_count:
            msg = (
                f'Content id {content_id:016x} registered with {len(loaded.probes)} probes, '
                f'now {probe_count}'
            )
            raise ValueError(msg)
        return loaded.probes

    def get_class_content(self, content_id: int) -> bytes:
        """Return the content buffer registered under a content id.

        Raises:
            KeyError: If no module with this content id was registered.
        """
        return self._classes[content_id].content

    def reset(self) -> None:
        """Zero the probes of every registered module."""
        self._check_alive()
        for loaded in list(self._classes.values()):
            loaded.probes[:] = bytes(len(loaded.probes))

    def dump(self, reset: bool) -> dict[int, bytes]:
        """Copy the probe arrays of every registered module.

        Args:
            reset: Zero the probes after copying them.

        Returns:
            Mapping of content id to probe snapshot.
        """
        self._check_alive()
        snapshots: dict[int, bytes] = {}
        for content_id, loaded in list(self._classes.items()):
            snapshots[content_id] = bytes(loaded.probes)
            if reset:
                loaded.probes[:] = bytes(len(loaded.probes))
        return snapshots

    def get_session_id(self) -> str | None:
        """Return the id of the current session, if any."""
        return self._session_id

    def set_session_id(self, session_id: str | None) -> None:
        """Set or clear the current session id."""
        self._session_id = session_id

    def shutdown(self) -> None:
        """Stop serving resets and dumps.

        The probe arrays stay valid so instrumented code keeps running, but
        their content can no longer be read.
        """
        if not self._shut_down:
            logger.debug('Shutting down probe runtime with %d modules', len(self._classes))
        self._shut_down = True

    def __len__(self) -> int:
        """Return the number of registered modules."""
        return len(self._classes)

    def _check_alive(self) -> None:
        if self._shut_down:
            msg = 'Probe runtime has been shut down'
            raise RuntimeError(msg)
