"""Probe site finder.

A probe site is a statement in front of which the runtime inserts a probe.
The finder walks a module's statement lists in a fixed pre-order so that the
instrumenter (which inserts the probes) and the structural analyzer (which
maps probe indices back to lines) always number the probes the same way.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from collections.abc import Iterator


@dataclass(frozen=True)
class ProbeSite:
    """A statement that carries a probe.

    Attributes:
        index: Position of the probe in the module's probe array.
        node: The statement the probe is inserted in front of.
        lines: Source lines the probe stands for.
        branch: True if the statement is the first one of a branch.
    """

    index: int
    node: ast.stmt
    lines: frozenset[int]
    branch: bool


def _is_docstring(stmt: ast.stmt) -> bool:
    return (
        isinstance(stmt, ast.Expr)
        and isinstance(stmt.value, ast.Constant)
        and isinstance(stmt.value.value, str)
    )


def _is_future_import(stmt: ast.stmt) -> bool:
    return isinstance(stmt, ast.ImportFrom) and stmt.module == '__future__'


_COMPOUND_STATEMENTS = (
    ast.FunctionDef,
    ast.AsyncFunctionDef,
    ast.ClassDef,
    ast.If,
    ast.For,
    ast.AsyncFor,
    ast.While,
    ast.With,
    ast.AsyncWith,
    ast.Match,
    ast.Try,
    ast.TryStar,
)


def _statement_lines(stmt: ast.stmt) -> frozenset[int]:
    # Compound statements stand for their header line only
    if isinstance(stmt, _COMPOUND_STATEMENTS):
        return frozenset((stmt.lineno,))
    end = stmt.end_lineno if stmt.end_lineno is not None else stmt.lineno
    return frozenset(range(stmt.lineno, end + 1))


def _child_blocks(stmt: ast.stmt) -> Iterator[tuple[list[ast.stmt], bool, bool]]:
    """Yield (statements, is_branch, may_have_docstring) for nested blocks."""
    if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
        yield stmt.body, False, True
    elif isinstance(stmt, (ast.If, ast.For, ast.AsyncFor, ast.While)):
        yield stmt.body, True, False
        yield stmt.orelse, True, False
    elif isinstance(stmt, (ast.With, ast.AsyncWith)):
        yield stmt.body, False, False
    elif isinstance(stmt, ast.Match):
        for case in stmt.cases:
            yield case.body, True, False
    elif isinstance(stmt, (ast.Try, ast.TryStar)):
        yield stmt.body, False, False
        for handler in stmt.handlers:
            yield handler.body, True, False
        yield stmt.orelse, True, False
        yield stmt.finalbody, False, False


class ProbeSiteFinder:
    """Collects probe sites from a module AST in instrumentation order.

    Every statement of every statement list becomes a site, except docstrings
    and ``from __future__`` imports, which must stay where they are.
    """

    def __init__(self) -> None:
        self.sites: list[ProbeSite] = []

    def visit_module(self, tree: ast.Module) -> list[ProbeSite]:
        """Collect the sites of a whole module.

        Args:
            tree: The parsed module.

        Returns:
            The sites, ordered by probe index.
        """
        self._visit_block(tree.body, branch=False, may_have_docstring=True)
        return self.sites

    def _visit_block(self, stmts: list[ast.stmt], *, branch: bool, may_have_docstring: bool) -> None:
        first = True
        for position, stmt in enumerate(stmts):
            if (position == 0 and may_have_docstring and _is_docstring(stmt)) or _is_future_import(stmt):
                continue
            self.sites.append(
                ProbeSite(
                    index=len(self.sites),
                    node=stmt,
                    lines=_statement_lines(stmt),
                    branch=branch and first,
                )
            )
            first = False
            for block, is_branch, docstring in _child_blocks(stmt):
                self._visit_block(block, branch=is_branch, may_have_docstring=docstring)


def find_probe_sites(tree: ast.Module) -> list[ProbeSite]:
    """Find all probe sites in a module AST.

    Args:
        tree: The module AST to search.

    Returns:
        List of probe sites ordered by probe index.
    """
    return ProbeSiteFinder().visit_module(tree)
