"""AST transformer for probe insertion.

This module embeds probes into Python source code. Every probe site gets a
statement in front of it that flags the probe in the module's probe array::

    __testwise_probes__[3] = 1
    total += price

The probe array is a bytearray owned by the runtime and injected into the
module namespace by the import hook before the module body runs.
"""

from __future__ import annotations

import ast
from typing import TYPE_CHECKING

from pytest_testwise.instrumentation.probes import find_probe_sites


if TYPE_CHECKING:
    from pytest_testwise.instrumentation.probes import ProbeSite


PROBES_NAME = '__testwise_probes__'

_BLOCK_FIELDS = ('body', 'orelse', 'finalbody')


def build_probe_statement(index: int, location: ast.stmt) -> ast.Assign:
    """Build ``__testwise_probes__[index] = 1`` located at the given statement.

    Args:
        index: The probe index.
        location: Statement whose position the probe takes over.

    Returns:
        An assignment statement with locations filled in.
    """
    probe = ast.Assign(
        targets=[
            ast.Subscript(
                value=ast.Name(id=PROBES_NAME, ctx=ast.Load()),
                slice=ast.Constant(value=index),
                ctx=ast.Store(),
            )
        ],
        value=ast.Constant(value=1),
    )
    ast.copy_location(probe, location)
    return ast.fix_missing_locations(probe)


class ProbeInsertingTransformer:
    """Inserts a probe statement in front of every probe site of a module.

    The sites must come from find_probe_sites on the very same tree: they are
    matched by node identity, so the probe numbering stays exactly the one the
    structural analyzer computes from the module source.
    """

    def __init__(self, sites: list[ProbeSite]) -> None:
        self._index_by_node = {id(site.node): site.index for site in sites}

    def transform(self, tree: ast.Module) -> ast.Module:
        """Insert probes into the tree in place.

        Args:
            tree: The module AST the sites were computed from.

        Returns:
            The same tree, instrumented.
        """
        # ast.walk queues children before yielding a node, so rewriting the
        # block lists of the yielded node does not disturb the traversal.
        for node in ast.walk(tree):
            for field in _BLOCK_FIELDS:
                block = getattr(node, field, None)
                if isinstance(block, list) and block and isinstance(block[0], ast.stmt):
                    setattr(node, field, self._with_probes(block))
        return tree

    def _with_probes(self, block: list[ast.stmt]) -> list[ast.stmt]:
        result: list[ast.stmt] = []
        for stmt in block:
            index = self._index_by_node.get(id(stmt))
            if index is not None:
                result.append(build_probe_statement(index, stmt))
            result.append(stmt)
        return result


def instrument_tree(tree: ast.Module, sites: list[ProbeSite]) -> ast.Module:
    """Insert probes for the given sites into a module AST in place.

    Args:
        tree: The module AST.
        sites: Sites found in this very tree by find_probe_sites.

    Returns:
        The instrumented tree.
    """
    return ProbeInsertingTransformer(sites).transform(tree)


def instrument_source(source: str, filename: str) -> tuple[ast.Module, int]:
    """Parse and instrument module source.

    This is the main entry point used by the import hook.

    Args:
        source: The Python source code to instrument.
        filename: File name used for syntax error messages.

    Returns:
        Tuple of (instrumented AST, number of probes).

    Raises:
        SyntaxError: If the source does not parse.
    """
    tree = ast.parse(source, filename=filename)
    sites = find_probe_sites(tree)
    instrument_tree(tree, sites)
    return tree, len(sites)
