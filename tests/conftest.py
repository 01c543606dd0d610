"""Shared fixtures for pytest-testwise tests: a fake coverage runtime and a coordinator over it."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from pytest_testwise.agent.controller import RuntimeController
from pytest_testwise.agent.coordinator import TestBoundaryCoordinator
from pytest_testwise.cache import ContentHasher, ProbeCache, StructuralAnalyzer
from pytest_testwise.instrumentation.content import ContentKind, build_content


if TYPE_CHECKING:
    from collections.abc import Callable

    from pytest_testwise.cache.probes import ProbeLayout


class FakeRuntime:
    """In-memory coverage runtime with failure injection.

    Records every call in ``calls`` so tests can check the order in which
    the controller talks to the runtime.
    """

    def __init__(self) -> None:
        self.classes: dict[int, tuple[bytes, bytearray]] = {}
        self.session_id: str | None = None
        self.calls: list[str] = []
        self.fail_dumps = False
        self.fail_resets = False

    def load(self, content: bytes, probe_count: int) -> int:
        """Load a module and return its content id."""
        content_id = ContentHasher().content_id(content)
        self.classes[content_id] = (content, bytearray(probe_count))
        return content_id

    def hit(self, content_id: int, *probes: int) -> None:
        """Mark probes of a loaded module as executed."""
        for probe in probes:
            self.classes[content_id][1][probe] = 1

    def reset(self) -> None:
        self.calls.append('reset')
        if self.fail_resets:
            msg = 'runtime is gone'
            raise RuntimeError(msg)
        for _, probes in self.classes.values():
            probes[:] = bytes(len(probes))

    def dump(self, reset: bool) -> dict[int, bytes]:
        self.calls.append('dump')
        if self.fail_dumps:
            msg = 'runtime is gone'
            raise RuntimeError(msg)
        snapshots = {content_id: bytes(probes) for content_id, (_, probes) in self.classes.items()}
        if reset:
            for _, probes in self.classes.values():
                probes[:] = bytes(len(probes))
        return snapshots

    def get_session_id(self) -> str | None:
        return self.session_id

    def set_session_id(self, session_id: str | None) -> None:
        self.calls.append(f'session:{session_id}')
        self.session_id = session_id

    def get_class_content(self, content_id: int) -> bytes:
        return self.classes[content_id][0]


class CountingAnalyzer:
    """StructuralAnalyzer that counts how often each content id is analyzed."""

    def __init__(self) -> None:
        self._analyzer = StructuralAnalyzer()
        self.calls: dict[int, int] = {}

    def analyze(self, content_id: int, raw: bytes) -> ProbeLayout | None:
        self.calls[content_id] = self.calls.get(content_id, 0) + 1
        return self._analyzer.analyze(content_id, raw)


@pytest.fixture
def make_content() -> Callable[..., bytes]:
    """Factory fixture for content buffers."""

    def _make_content(name: str, source: str, kind: ContentKind = ContentKind.MODULE) -> bytes:
        return build_content(kind, name, source)

    return _make_content


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    """A fresh in-memory coverage runtime."""
    return FakeRuntime()


@pytest.fixture
def counting_analyzer() -> CountingAnalyzer:
    """An analyzer that counts its invocations."""
    return CountingAnalyzer()


@pytest.fixture
def coordinator(fake_runtime: FakeRuntime, counting_analyzer: CountingAnalyzer) -> TestBoundaryCoordinator:
    """A coordinator over the fake runtime and the counting analyzer."""
    return TestBoundaryCoordinator(RuntimeController(fake_runtime), ProbeCache(counting_analyzer))
