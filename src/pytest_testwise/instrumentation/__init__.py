"""Instrumentation module: the embedded probe runtime.

This module contains the components that make a Python process record
probes: the probe site finder, the AST transformer inserting the probes, the
content buffer format, the ProbeRuntime holding the counters and the import
hooks that load instrumented code.

Example usage:
    >>> source = '''
    ... def is_adult(age):
    ...     return age >= 18
    ... '''
    >>> tree, probe_count = instrument_source(source, 'example.py')
    >>> probe_count  # the def statement and the return statement
    2
"""

from __future__ import annotations

from pytest_testwise.instrumentation.content import ContentKind, build_content, parse_content
from pytest_testwise.instrumentation.probes import ProbeSite, find_probe_sites
from pytest_testwise.instrumentation.runtime import ProbeRuntime
from pytest_testwise.instrumentation.transformer import PROBES_NAME, instrument_source, instrument_tree


__all__ = [
    'PROBES_NAME',
    'ContentKind',
    'ProbeRuntime',
    'ProbeSite',
    'build_content',
    'find_probe_sites',
    'instrument_source',
    'instrument_tree',
    'parse_content',
]
