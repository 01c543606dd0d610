"""Root pytest configuration for pytest-testwise.

Registers the size markers and applies them by directory for every test.
The tests/conftest.py holds the fake runtime and coordinator fixtures.
"""

from __future__ import annotations

from pathlib import Path
import sys
from typing import TYPE_CHECKING

import pytest

from pytest_testwise.instrumentation.import_hooks import TestwiseFinder, unregister_import_hooks


if TYPE_CHECKING:
    from collections.abc import Generator


pytest_plugins = ['pytester']

SIZE_MARKERS = {
    'small': 'Fast, isolated unit tests (< 100ms)',
    'medium': 'Integration tests with real resources (< 10s)',
    'large': 'End-to-end system tests (< 60s)',
}


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    for name, description in SIZE_MARKERS.items():
        config.addinivalue_line('markers', f'{name}: {description}')


@pytest.hookimpl(tryfirst=True)
def pytest_collection_modifyitems(
    config: pytest.Config,  # noqa: ARG001
    items: list[pytest.Item],
) -> None:
    """Apply the size marker of the directory a test lives in.

    Tests that already have a size marker are not modified.
    """
    for item in items:
        if any(marker.name in SIZE_MARKERS for marker in item.iter_markers()):
            continue
        size = next((part for part in Path(str(item.path)).parts if part in SIZE_MARKERS), None)
        if size is not None:
            item.add_marker(getattr(pytest.mark, size))


@pytest.fixture(autouse=True)
def _no_leaked_import_hooks() -> Generator[None, None, None]:
    """Fail loudly if a test leaves a testwise finder on sys.meta_path."""
    yield
    leaked = any(isinstance(finder, TestwiseFinder) for finder in sys.meta_path)
    unregister_import_hooks()
    assert not leaked, 'test left a TestwiseFinder installed on sys.meta_path'
