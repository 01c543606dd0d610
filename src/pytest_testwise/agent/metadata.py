"""Session metadata of an agent.

Metadata describes where the coverage of a test run belongs: the partition
of the upload target and the revision, commit and message the tests ran
against. It is set by the test runner or over the control channel and sent
along with every upload.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
import threading


FIELDS = ('partition', 'message', 'revision', 'commit')


@dataclass(frozen=True)
class SessionMetadata:
    """Metadata attached to an uploaded report.

    Attributes:
        partition: Partition the coverage is uploaded to.
        message: Free text message describing the upload.
        revision: Revision of the code under test.
        commit: Commit of the code under test, e.g. ``main:1700000000000``.
    """

    partition: str | None = None
    message: str | None = None
    revision: str | None = None
    commit: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        """Convert to a JSON-ready dictionary."""
        return asdict(self)

    def to_params(self) -> dict[str, str]:
        """Return the fields that are set, e.g. as query parameters."""
        return {name: value for name, value in asdict(self).items() if value}


class MetadataStore:
    """Thread-safe holder of the current SessionMetadata."""

    def __init__(self, metadata: SessionMetadata | None = None) -> None:
        self._metadata = metadata if metadata is not None else SessionMetadata()
        self._lock = threading.Lock()

    @property
    def metadata(self) -> SessionMetadata:
        """The current metadata."""
        with self._lock:
            return self._metadata

    def get(self, name: str) -> str | None:
        """Return one metadata field.

        Raises:
            KeyError: If the field does not exist.
        """
        if name not in FIELDS:
            raise KeyError(name)
        with self._lock:
            return getattr(self._metadata, name)

    def set(self, name: str, value: str | None) -> None:
        """Set one metadata field. Empty values clear the field.

        Raises:
            KeyError: If the field does not exist.
        """
        if name not in FIELDS:
            raise KeyError(name)
        with self._lock:
            self._metadata = replace(self._metadata, **{name: value or None})
