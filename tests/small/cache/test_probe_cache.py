"""Tests for the content-addressed probe cache."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import threading

import pytest

from pytest_testwise.cache.probes import Analyzer, Probe, ProbeCache, ProbeLayout
from pytest_testwise.errors import MalformedClassError
from pytest_testwise.instrumentation.content import ContentKind, build_content


MODULE = build_content(ContentKind.MODULE, 'shop.cart', 'x = 1\ny = 2\n')


class BlockingAnalyzer:
    """Analyzer that waits for a release event before returning, per content id."""

    def __init__(self, blocked: set[int]) -> None:
        self.blocked = blocked
        self.release = threading.Event()
        self.entered = threading.Event()
        self.calls: list[int] = []
        self._lock = threading.Lock()

    def analyze(self, content_id: int, raw: bytes) -> ProbeLayout:  # noqa: ARG002
        with self._lock:
            self.calls.append(content_id)
        if content_id in self.blocked:
            self.entered.set()
            assert self.release.wait(timeout=5)
        return ProbeLayout(content_id, f'm{content_id}', (Probe(frozenset({1})),))


class FailingAnalyzer:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    def analyze(self, content_id: int, raw: bytes) -> ProbeLayout:  # noqa: ARG002
        self.calls += 1
        raise self.error


class InterruptedOnceAnalyzer:
    """Analyzer interrupted on its first call, delegating afterwards."""

    def __init__(self, analyzer: Analyzer) -> None:
        self.analyzer = analyzer
        self.interrupted = False

    def analyze(self, content_id: int, raw: bytes) -> ProbeLayout | None:
        if not self.interrupted:
            self.interrupted = True
            raise KeyboardInterrupt
        return self.analyzer.analyze(content_id, raw)


@pytest.mark.small
class TestLookupOrAnalyze:
    """Tests for populating and reading the cache."""

    def test_returns_layout_of_buffer(self, counting_analyzer):
        cache = ProbeCache(counting_analyzer)

        layout = cache.lookup_or_analyze(1, MODULE)

        assert layout is not None
        assert layout.class_name == 'shop.cart'
        assert len(layout) == 2

    def test_analyzes_each_id_once(self, counting_analyzer):
        cache = ProbeCache(counting_analyzer)

        first = cache.lookup_or_analyze(1, MODULE)
        second = cache.lookup_or_analyze(1, MODULE)

        assert first is second
        assert counting_analyzer.calls == {1: 1}

    def test_cached_lookup_does_not_read_buffer(self, counting_analyzer):
        cache = ProbeCache(counting_analyzer)
        cache.lookup_or_analyze(1, MODULE)

        layout = cache.lookup_or_analyze(1, b'garbage that would not parse')

        assert layout is not None
        assert layout.class_name == 'shop.cart'

    def test_stores_no_layout_for_synthetic_content(self, counting_analyzer):
        cache = ProbeCache(counting_analyzer)
        synthetic = build_content(ContentKind.SYNTHETIC, '<string>', 'x = 1\n')

        assert cache.lookup_or_analyze(2, synthetic) is None
        assert cache.lookup_or_analyze(2, synthetic) is None
        assert cache.contains(2)
        assert counting_analyzer.calls == {2: 1}

    def test_malformed_content_is_cached_and_raised_again(self, counting_analyzer):
        cache = ProbeCache(counting_analyzer)

        with pytest.raises(MalformedClassError):
            cache.lookup_or_analyze(3, b'no header')
        with pytest.raises(MalformedClassError):
            cache.lookup_or_analyze(3, b'no header')

        assert counting_analyzer.calls == {3: 1}

    def test_unexpected_analyzer_error_is_raised_to_every_caller(self):
        analyzer = FailingAnalyzer(RuntimeError('boom'))
        cache = ProbeCache(analyzer)

        with pytest.raises(RuntimeError, match='boom'):
            cache.lookup_or_analyze(4, MODULE)
        with pytest.raises(RuntimeError, match='boom'):
            cache.lookup_or_analyze(4, MODULE)

        assert analyzer.calls == 1

    def test_interrupted_analysis_is_not_cached(self, counting_analyzer):
        analyzer = InterruptedOnceAnalyzer(counting_analyzer)
        cache = ProbeCache(analyzer)

        with pytest.raises(KeyboardInterrupt):
            cache.lookup_or_analyze(5, MODULE)

        assert not cache.contains(5)
        assert cache.lookup_or_analyze(5, MODULE).class_name == 'shop.cart'
        assert cache.contains(5)
        assert counting_analyzer.calls == {5: 1}


@pytest.mark.small
class TestContains:
    """Tests for the non-blocking membership check."""

    def test_false_before_population(self, counting_analyzer):
        assert not ProbeCache(counting_analyzer).contains(1)

    def test_true_after_population(self, counting_analyzer):
        cache = ProbeCache(counting_analyzer)
        cache.lookup_or_analyze(1, MODULE)

        assert cache.contains(1)

    def test_false_while_analysis_is_running(self):
        analyzer = BlockingAnalyzer(blocked={1})
        cache = ProbeCache(analyzer)

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(cache.lookup_or_analyze, 1, MODULE)
            assert analyzer.entered.wait(timeout=5)

            assert not cache.contains(1)

            analyzer.release.set()
            future.result(timeout=5)

        assert cache.contains(1)


@pytest.mark.small
class TestConcurrency:
    """Tests for at-most-once population under concurrent lookups."""

    def test_racing_lookups_analyze_once_and_share_the_layout(self):
        analyzer = BlockingAnalyzer(blocked={1})
        cache = ProbeCache(analyzer)

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(cache.lookup_or_analyze, 1, MODULE) for _ in range(8)]
            assert analyzer.entered.wait(timeout=5)
            analyzer.release.set()
            layouts = [future.result(timeout=5) for future in futures]

        assert analyzer.calls == [1]
        assert all(layout is layouts[0] for layout in layouts)

    def test_different_ids_do_not_block_each_other(self):
        analyzer = BlockingAnalyzer(blocked={1})
        cache = ProbeCache(analyzer)

        with ThreadPoolExecutor(max_workers=1) as pool:
            slow = pool.submit(cache.lookup_or_analyze, 1, MODULE)
            assert analyzer.entered.wait(timeout=5)

            # Completes while id 1 is still being analyzed
            fast = cache.lookup_or_analyze(2, MODULE)

            assert fast is not None
            assert not slow.done()
            analyzer.release.set()
            slow.result(timeout=5)


@pytest.mark.small
class TestStats:
    """Tests for cache statistics."""

    def test_counts_hits_misses_and_entries(self, counting_analyzer):
        cache = ProbeCache(counting_analyzer)
        cache.lookup_or_analyze(1, MODULE)
        cache.lookup_or_analyze(1, MODULE)
        cache.lookup_or_analyze(2, MODULE)

        assert cache.get_stats() == {'hits': 1, 'misses': 2, 'entries': 2}
        assert len(cache) == 2
