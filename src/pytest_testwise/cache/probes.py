"""Content-addressed cache of probe layouts.

The ProbeCache maps content ids to probe layouts. Report generation touches
the same modules in thousands of per-test snapshots; the cache makes sure the
structural analysis of a module body is paid once per distinct content, not
once per test.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import TYPE_CHECKING, Protocol

from pytest_testwise.errors import MalformedClassError


if TYPE_CHECKING:
    from collections.abc import Iterator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Probe:
    """What one probe stands for.

    Attributes:
        lines: Source lines covered when the probe executes.
        branch: True if the probe marks the entry of a branch.
    """

    lines: frozenset[int]
    branch: bool = False


@dataclass(frozen=True)
class ProbeLayout:
    """Probe index to source line mapping of one module body.

    Layouts are immutable and shared read-only by every consumer.

    Attributes:
        content_id: Content id the layout was computed from.
        class_name: Fully qualified module name.
        probes: One entry per probe index.
    """

    content_id: int
    class_name: str
    probes: tuple[Probe, ...]

    def __len__(self) -> int:
        """Return the number of probes."""
        return len(self.probes)

    def covered_lines(self, snapshot: bytes) -> frozenset[int]:
        """Return the lines covered by the probes set in a snapshot.

        Args:
            snapshot: One byte per probe, non-zero if the probe executed.

        Returns:
            The union of the lines of all executed probes.

        Raises:
            ValueError: If the snapshot does not have one entry per probe.
        """
        if len(snapshot) != len(self.probes):
            msg = (
                f'Snapshot of {self.class_name} has {len(snapshot)} probes, '
                f'layout has {len(self.probes)}'
            )
            raise ValueError(msg)
        lines: set[int] = set()
        for probe, hit in zip(self.probes, snapshot, strict=True):
            if hit:
                lines.update(probe.lines)
        return frozenset(lines)

    def branch_probes(self) -> Iterator[int]:
        """Yield the indices of probes that mark a branch entry."""
        for index, probe in enumerate(self.probes):
            if probe.branch:
                yield index


class Analyzer(Protocol):
    """Anything that can turn a content buffer into a probe layout."""

    def analyze(self, content_id: int, raw: bytes) -> ProbeLayout | None:
        """Analyze a content buffer."""
        ...


class _Slot:
    """One cache entry, filled exactly once by the first caller."""

    def __init__(self) -> None:
        self._ready = threading.Event()
        self._layout: ProbeLayout | None = None
        self._error: BaseException | None = None

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def fill(self, layout: ProbeLayout | None, error: BaseException | None = None) -> None:
        self._layout = layout
        self._error = error
        self._ready.set()

    def get(self) -> ProbeLayout | None:
        self._ready.wait()
        if self._error is not None:
            raise self._error
        return self._layout


class ProbeCache:
    """Content id to probe layout store with at-most-once population.

    Lookups of present ids never take a lock. Populating an unseen id takes a
    short global lock only to claim the id's slot; the analysis itself runs
    outside of it, so different ids never wait for each other. Callers that
    race on the same unseen id wait for the first caller's result.

    Example:
        >>> from pytest_testwise.cache.analyzer import StructuralAnalyzer
        >>> cache = ProbeCache(StructuralAnalyzer())
        >>> raw = b'# testwise: module shop.cart\\nx = 1\\n'
        >>> cache.lookup_or_analyze(7, raw).class_name
        'shop.cart'
        >>> cache.contains(7)
        True
    """

    def __init__(self, analyzer: Analyzer) -> None:
        """Create an empty cache.

        Args:
            analyzer: Analyzer used to populate missing entries.
        """
        self._analyzer = analyzer
        self._slots: dict[int, _Slot] = {}
        self._claim_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        """Return the number of populated entries."""
        return sum(1 for slot in list(self._slots.values()) if slot.ready)

    def contains(self, content_id: int) -> bool:
        """Check whether a layout (or "no layout") is stored for a content id.

        Never blocks: an entry that is still being analyzed counts as absent.
        """
        slot = self._slots.get(content_id)
        return slot is not None and slot.ready

    def lookup_or_analyze(self, content_id: int, raw: bytes) -> ProbeLayout | None:
        """Return the layout for a content id, analyzing the buffer on first sight.

        Args:
            content_id: Content id of the module.
            raw: The module's content buffer. Not read if the id is cached.

        Returns:
            The probe layout, or None for modules without a layout.

        Raises:
            MalformedClassError: If the buffer cannot be analyzed. The failure
                is cached and raised again for later lookups of the same id,
                like any other Exception of the analyzer. KeyboardInterrupt
                and other BaseExceptions are raised but not cached.
        """
        slot = self._slots.get(content_id)
        owner = False
        if slot is None:
            with self._claim_lock:
                slot = self._slots.get(content_id)
                if slot is None:
                    slot = _Slot()
                    self._slots[content_id] = slot
                    owner = True

        if owner:
            self._populate(slot, content_id, raw)
        else:
            with self._stats_lock:
                self._hits += 1
        return slot.get()

    def get_stats(self) -> dict[str, int]:
        """Get cache statistics.

        Returns:
            Dictionary with hits, misses (analyzer runs) and entries counts.
        """
        with self._stats_lock:
            return {
                'hits': self._hits,
                'misses': self._misses,
                'entries': len(self),
            }

    def _populate(self, slot: _Slot, content_id: int, raw: bytes) -> None:
        with self._stats_lock:
            self._misses += 1
        try:
            layout = self._analyzer.analyze(content_id, raw)
        except MalformedClassError as exc:
            logger.warning('Skipping module with malformed content: %s', exc)
            slot.fill(None, exc)
            return
        except Exception as exc:
            slot.fill(None, exc)
            raise
        except BaseException as exc:
            # Not cached: the next lookup of the id analyzes it again
            with self._claim_lock:
                if self._slots.get(content_id) is slot:
                    del self._slots[content_id]
            slot.fill(None, exc)
            raise
        slot.fill(layout)
