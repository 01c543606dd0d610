"""Probe layout cache.

Provides content hashing, structural analysis of module content buffers and
the content-addressed ProbeCache that runs the analysis once per distinct
module body.
"""

from pytest_testwise.cache.analyzer import StructuralAnalyzer
from pytest_testwise.cache.hasher import ContentHasher, format_content_id, parse_content_id
from pytest_testwise.cache.probes import Probe, ProbeCache, ProbeLayout


__all__ = [
    'ContentHasher',
    'Probe',
    'ProbeCache',
    'ProbeLayout',
    'StructuralAnalyzer',
    'format_content_id',
    'parse_content_id',
]
