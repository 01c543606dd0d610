"""Content buffers: the instrumented form of a module.

The runtime keeps one content buffer per loaded module. The buffer is the
module's source prefixed with a one-line header that names the module and
says what kind of code it holds::

    # testwise: module shop.cart
    def total(items):
        ...

The buffer is what gets hashed into a content id and what the structural
analyzer parses back into a probe layout, so both sides must agree on this
format.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re


HEADER_PREFIX = '# testwise:'
_HEADER_PATTERN = re.compile(r'^# testwise: (?P<kind>[a-z-]+) (?P<name>\S+)$')


class ContentKind(Enum):
    """What kind of code a content buffer holds.

    Attributes:
        MODULE: A regular module backed by a source file.
        SYNTHETIC: Generated code without a source file (e.g. ``<string>``).
        PACKAGE_MARKER: A package ``__init__`` without executable statements.
    """

    MODULE = 'module'
    SYNTHETIC = 'synthetic'
    PACKAGE_MARKER = 'package-marker'


@dataclass(frozen=True)
class ModuleContent:
    """A content buffer split into its parts.

    Attributes:
        kind: The kind of code in the buffer.
        name: Fully qualified module name.
        source: The module source, without the header line.
    """

    kind: ContentKind
    name: str
    source: str


def build_content(kind: ContentKind, name: str, source: str) -> bytes:
    """Build the content buffer for a module.

    Args:
        kind: The kind of code.
        name: Fully qualified module name. Must not contain whitespace.
        source: The module source.

    Returns:
        The UTF-8 encoded content buffer.
    """
    if not name or any(c.isspace() for c in name):
        msg = f'Invalid module name for content header: {name!r}'
        raise ValueError(msg)
    return f'{HEADER_PREFIX} {kind.value} {name}\n{source}'.encode()


def parse_content(content: bytes) -> ModuleContent:
    """Split a content buffer into header fields and source.

    Args:
        content: A buffer produced by build_content.

    Returns:
        The parsed ModuleContent.

    Raises:
        ValueError: If the buffer is not UTF-8 or has no valid header.
    """
    text = content.decode('utf-8')
    header, _, source = text.partition('\n')
    match = _HEADER_PATTERN.match(header)
    if match is None:
        msg = f'Missing or invalid content header: {header[:80]!r}'
        raise ValueError(msg)
    try:
        kind = ContentKind(match['kind'])
    except ValueError:
        msg = f'Unknown content kind: {match["kind"]!r}'
        raise ValueError(msg) from None
    return ModuleContent(kind=kind, name=match['name'], source=source)
