"""Test boundary coordinator.

The coordinator correlates the probe counters of the runtime with the identity
of the test that produced them. It is a two state machine::

    IDLE --start_test(id)--> TEST_ACTIVE(id) --end_test(id)--> IDLE

start_test zeroes the probes before the test runs, end_test dumps them, maps
every snapshot to covered lines through the probe cache and hands the result
to the assembler. Long running tests may be dumped in between with
dump_intermediate; the lines of every dump of a test end up in its one
fragment.
"""

from __future__ import annotations

from enum import Enum
import logging
import threading
from typing import TYPE_CHECKING

from pytest_testwise.errors import DumpError, InvalidTransitionError, MalformedClassError
from pytest_testwise.report.assembler import TestwiseCoverageAssembler
from pytest_testwise.report.models import CoverageFragment


if TYPE_CHECKING:
    from pytest_testwise.agent.controller import RuntimeController
    from pytest_testwise.cache.probes import ProbeCache
    from pytest_testwise.report.models import TestExecutionRecord, TestwiseCoverageReport


logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    """State of a TestBoundaryCoordinator."""

    IDLE = 'idle'
    TEST_ACTIVE = 'test_active'


class TestBoundaryCoordinator:
    """Drives the runtime through the start/end protocol of each test.

    All transitions are serialized, so the coordinator may be called from the
    control channel's worker threads as well as from the test runner.

    Example:
        >>> from pytest_testwise.agent.controller import RuntimeController
        >>> from pytest_testwise.cache import ProbeCache, StructuralAnalyzer
        >>> from pytest_testwise.instrumentation.runtime import ProbeRuntime
        >>> coordinator = TestBoundaryCoordinator(
        ...     RuntimeController(ProbeRuntime()), ProbeCache(StructuralAnalyzer())
        ... )
        >>> coordinator.start_test('tests/test_cart.py::test_total')
        >>> coordinator.end_test('tests/test_cart.py::test_total').is_empty
        True
    """

    __test__ = False

    def __init__(
        self,
        controller: RuntimeController,
        cache: ProbeCache,
        assembler: TestwiseCoverageAssembler | None = None,
    ) -> None:
        """Initialize an idle coordinator.

        Args:
            controller: Controller of the runtime to read probes from.
            cache: Cache mapping content ids to probe layouts.
            assembler: Assembler receiving every fragment. Defaults to a new one.
        """
        self._controller = controller
        self._cache = cache
        self._assembler = assembler if assembler is not None else TestwiseCoverageAssembler()
        self._lock = threading.Lock()
        self._current: str | None = None
        self._pending: CoverageFragment | None = None
        self._pending_lost: str | None = None

    @property
    def state(self) -> CoordinatorState:
        """The current state."""
        with self._lock:
            return CoordinatorState.IDLE if self._current is None else CoordinatorState.TEST_ACTIVE

    @property
    def current_test(self) -> str | None:
        """Identity of the active test, or None when idle."""
        with self._lock:
            return self._current

    @property
    def report(self) -> TestwiseCoverageReport:
        """Snapshot of the report accumulated so far."""
        return self._assembler.build()

    def drain_report(self) -> TestwiseCoverageReport:
        """Return the accumulated report and start a new one."""
        with self._lock:
            report = self._assembler.build()
            self._assembler.clear()
            return report

    def start_test(self, uniform_path: str) -> None:
        """Start recording coverage for a test.

        Args:
            uniform_path: Identity of the test.

        Raises:
            ValueError: If the identity is empty.
            InvalidTransitionError: If another test is active.
            DumpError: If the runtime cannot be reset. The coordinator stays idle.
        """
        if not uniform_path:
            msg = 'Test identity must not be empty'
            raise ValueError(msg)
        with self._lock:
            if self._current is not None:
                msg = f'Cannot start {uniform_path}: test {self._current} is still active'
                raise InvalidTransitionError(msg)
            self._controller.reset()
            self._controller.set_session(uniform_path)
            self._current = uniform_path
            self._pending = CoverageFragment(uniform_path)
            self._pending_lost = None
        logger.debug('Started test %s', uniform_path)

    def dump_intermediate(self) -> CoverageFragment:
        """Collect the coverage of the active test without ending it.

        The lines are kept and become part of the fragment end_test returns.

        Returns:
            The coverage of the active test collected so far, all dumps included.

        Raises:
            InvalidTransitionError: If no test is active.
            DumpError: If the probes cannot be read. The test stays active and
                its coverage is reported as incomplete.
        """
        with self._lock:
            if self._current is None or self._pending is None:
                msg = 'Cannot dump coverage: no test is active'
                raise InvalidTransitionError(msg)
            uniform_path = self._current
            try:
                fragment = self._collect(uniform_path)
            except DumpError as exc:
                self._pending_lost = str(exc)
                logger.warning('Intermediate coverage of %s is lost: %s', uniform_path, exc)
                raise
            self._pending = self._pending.union(fragment)
            pending = self._pending
        logger.debug('Dumped test %s covering %d lines so far', uniform_path, pending.covered_line_count())
        return pending

    def end_test(self, uniform_path: str, execution: TestExecutionRecord | None = None) -> CoverageFragment:
        """Stop recording coverage for a test and collect it.

        Args:
            uniform_path: Identity of the test; must be the active one.
            execution: How the test ended, if known.

        Returns:
            The coverage of the test. Empty if the test covered nothing.

        Raises:
            InvalidTransitionError: If no test or a different test is active.
                The state is left unchanged.
            DumpError: If the coverage cannot be collected. The coordinator is
                idle afterwards and the execution is recorded without coverage.
        """
        with self._lock:
            if self._current is None:
                msg = f'Cannot end {uniform_path}: no test is active'
                raise InvalidTransitionError(msg)
            if self._current != uniform_path:
                msg = f'Cannot end {uniform_path}: active test is {self._current}'
                raise InvalidTransitionError(msg)

            pending = self._pending if self._pending is not None else CoverageFragment(uniform_path)
            pending_lost = self._pending_lost
            try:
                fragment = pending.union(self._collect(uniform_path))
            except DumpError as exc:
                logger.warning('Coverage of %s is lost: %s', uniform_path, exc)
                if execution is not None:
                    execution = execution.with_note(f'Coverage missing: {exc}')
                self._assembler.add_missing_coverage(uniform_path, execution)
                raise
            finally:
                self._finish()

            if pending_lost is not None and execution is not None:
                execution = execution.with_note(f'Coverage missing: {pending_lost}')
            self._assembler.add(fragment, execution)
            if pending_lost is not None:
                self._assembler.add_missing_coverage(uniform_path)
        logger.debug('Ended test %s covering %d lines', uniform_path, fragment.covered_line_count())
        return fragment

    def _collect(self, uniform_path: str) -> CoverageFragment:
        """Dump the probes and map them to lines. Must be called with lock held.

        Raises:
            DumpError: If the probes cannot be read or mapped to lines.
        """
        snapshots = self._controller.dump()
        try:
            return self._build_fragment(uniform_path, snapshots)
        except DumpError:
            raise
        except Exception as exc:
            # The probes are already consumed, so the lines cannot be recovered
            logger.exception('Cannot map the probes of %s to lines', uniform_path)
            msg = f'Cannot map probes to lines: {exc!r}'
            raise DumpError(msg) from exc

    def _finish(self) -> None:
        """Return to IDLE. Must be called with lock held."""
        self._current = None
        self._pending = None
        self._pending_lost = None
        try:
            self._controller.set_session(None)
        except (RuntimeError, OSError):
            logger.debug('Could not clear session of the coverage runtime', exc_info=True)

    def _build_fragment(self, uniform_path: str, snapshots: dict[int, bytes]) -> CoverageFragment:
        lines: dict[int, frozenset[int]] = {}
        class_names: dict[int, str] = {}
        for content_id, snapshot in snapshots.items():
            if not any(snapshot):
                continue
            try:
                layout = self._cache.lookup_or_analyze(content_id, self._controller.class_content(content_id))
            except MalformedClassError:
                logger.debug('Skipping malformed module %016x', content_id)
                continue
            except KeyError:
                logger.warning('No content for module %016x, skipping', content_id)
                continue
            if layout is None:
                continue
            try:
                covered = layout.covered_lines(snapshot)
            except ValueError as exc:
                logger.warning('Skipping %s: %s', layout.class_name, exc)
                continue
            if covered:
                lines[content_id] = covered
                class_names[content_id] = layout.class_name
        return CoverageFragment(uniform_path=uniform_path, lines=lines, class_names=class_names)
