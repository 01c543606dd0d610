"""Content hashing for the probe cache.

Content ids identify a module by the bytes of its instrumented form rather
than by its name or location. Modules with identical content produce the same
id and therefore share one probe layout, which is what makes the id a valid
cache key.
"""

from __future__ import annotations

import hashlib


CONTENT_ID_BYTES = 8


class ContentHasher:
    """Produces 64-bit content ids for module content buffers.

    Uses BLAKE2b with an eight byte digest from hashlib. BLAKE2b is a
    cryptographic hash, stronger than the non-cryptographic 64-bit hash the
    ids only need. It is deterministic across runs and processes, and a
    module is hashed once when it is loaded, never per probe or per test.
    Content ids are rendered on the wire, so changing the algorithm changes
    every id a report refers to.

    Example:
        >>> hasher = ContentHasher()
        >>> content_id = hasher.content_id(b'# testwise: module shop.cart\\nx = 1\\n')
        >>> 0 <= content_id < 2**64
        True
        >>> len(format_content_id(content_id))
        16
    """

    def content_id(self, content: bytes) -> int:
        """Hash a content buffer into its content id.

        Args:
            content: The raw content buffer of one module.

        Returns:
            An unsigned 64-bit integer.
        """
        digest = hashlib.blake2b(content, digest_size=CONTENT_ID_BYTES).digest()
        return int.from_bytes(digest, 'big')


def format_content_id(content_id: int) -> str:
    """Render a content id as 16 lowercase hex digits."""
    return f'{content_id:016x}'


def parse_content_id(text: str) -> int:
    """Parse a content id rendered by format_content_id.

    Raises:
        ValueError: If the text is not a 64-bit hex number.
    """
    value = int(text, 16)
    if not 0 <= value < 2 ** (CONTENT_ID_BYTES * 8):
        msg = f'Content id out of range: {text!r}'
        raise ValueError(msg)
    return value
