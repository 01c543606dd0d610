"""Structural analysis of module content buffers.

The StructuralAnalyzer turns the instrumented form of a module into a
ProbeLayout: which source lines each probe index stands for. Parsing is the
expensive step of report generation, which is why analyzers are only ever
called through the ProbeCache.
"""

from __future__ import annotations

import ast
import logging

from pytest_testwise.cache.probes import Probe, ProbeLayout
from pytest_testwise.errors import MalformedClassError
from pytest_testwise.instrumentation.content import ContentKind, parse_content
from pytest_testwise.instrumentation.probes import find_probe_sites


logger = logging.getLogger(__name__)

_SKIPPED_KINDS = frozenset((ContentKind.SYNTHETIC, ContentKind.PACKAGE_MARKER))


class StructuralAnalyzer:
    """Builds probe layouts from content buffers.

    The analyzer has no state and no side effects. Calling it twice for the
    same buffer yields equal layouts.

    Example:
        >>> analyzer = StructuralAnalyzer()
        >>> layout = analyzer.analyze(7, b'# testwise: module shop.cart\\nx = 1\\ny = 2\\n')
        >>> layout.class_name, [sorted(p.lines) for p in layout.probes]
        ('shop.cart', [[1], [2]])
    """

    def analyze(self, content_id: int, raw: bytes) -> ProbeLayout | None:
        """Analyze one content buffer.

        Args:
            content_id: Content id of the buffer.
            raw: The content buffer.

        Returns:
            The probe layout, or None for synthetic code and package markers.

        Raises:
            MalformedClassError: If the buffer is not in the instrumentation format.
        """
        try:
            content = parse_content(raw)
        except ValueError as exc:
            msg = f'Cannot read content {content_id:016x}: {exc}'
            raise MalformedClassError(msg) from exc

        if content.kind in _SKIPPED_KINDS:
            logger.debug('Skipping %s module %s', content.kind.value, content.name)
            return None

        try:
            tree = ast.parse(content.source, filename=content.name)
        except (SyntaxError, ValueError) as exc:
            msg = f'Cannot parse source of {content.name} ({content_id:016x}): {exc}'
            raise MalformedClassError(msg) from exc

        probes = tuple(Probe(lines=site.lines, branch=site.branch) for site in find_probe_sites(tree))
        return ProbeLayout(content_id=content_id, class_name=content.name, probes=probes)
