"""Import hooks for probe instrumentation.

This module provides the import hooks (sys.meta_path) that intercept module
imports and load instrumented code instead of the plain module. This is the
mechanism that connects the probe runtime to actual code execution.

The import hooks work as follows:
1. TestwiseFinder is registered on sys.meta_path
2. When Python imports a module, TestwiseFinder.find_spec() is called
3. If the module name matches the include patterns and it is a source
   module, return a ModuleSpec with TestwiseLoader
4. TestwiseLoader.exec_module() instruments the source, registers the
   module's content buffer with the ProbeRuntime and executes the
   instrumented AST
5. The probe array is injected as __testwise_probes__ before the body runs

Example:
    >>> from pytest_testwise.instrumentation.runtime import ProbeRuntime
    >>> finder = TestwiseFinder(ProbeRuntime(), include=['shop', 'shop.*'])
    >>> register_import_hooks(finder)
    >>> # Now importing shop.cart executes the instrumented module
    >>> unregister_import_hooks()
"""

from __future__ import annotations

from fnmatch import fnmatchcase
from importlib.abc import Loader, MetaPathFinder
from importlib.machinery import PathFinder, SourceFileLoader
import importlib.util
import logging
from pathlib import Path
import sys
from typing import TYPE_CHECKING

from pytest_testwise.cache.hasher import ContentHasher
from pytest_testwise.instrumentation.content import ContentKind, build_content
from pytest_testwise.instrumentation.transformer import PROBES_NAME, instrument_source


if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from importlib.machinery import ModuleSpec
    import types

    from pytest_testwise.instrumentation.runtime import ProbeRuntime


logger = logging.getLogger(__name__)

# Never instrument the instrumentation itself
ALWAYS_EXCLUDED = ('pytest_testwise', 'pytest_testwise.*')


class TestwiseLoader(Loader):
    """Loader that executes an instrumented copy of a source module.

    The loader reads the module source, inserts probes, registers the
    module's content buffer with the runtime and runs the instrumented code
    with the probe array in the module namespace.
    """

    __test__ = False

    def __init__(
        self,
        fullname: str,
        origin: str,
        runtime: ProbeRuntime,
        hasher: ContentHasher,
        *,
        is_package: bool = False,
    ) -> None:
        """Initialize the loader for one module.

        Args:
            fullname: The fully qualified module name.
            origin: Path of the module's source file.
            runtime: Runtime that owns the module's probe array.
            hasher: Hasher producing the module's content id.
            is_package: True if the module is a package ``__init__``.
        """
        self._fullname = fullname
        self._origin = origin
        self._runtime = runtime
        self._hasher = hasher
        self._is_package = is_package

    def create_module(self, spec: ModuleSpec) -> types.ModuleType | None:  # noqa: ARG002
        """Return None to use default module creation semantics."""
        return None

    def exec_module(self, module: types.ModuleType) -> None:
        """Instrument the module source and execute it in the module's namespace.

        Args:
            module: The module to execute code in.
        """
        source = importlib.util.decode_source(Path(self._origin).read_bytes())
        tree, probe_count = instrument_source(source, self._origin)

        kind = ContentKind.MODULE
        if self._is_package and probe_count == 0:
            kind = ContentKind.PACKAGE_MARKER
        content = build_content(kind, self._fullname, source)
        content_id = self._hasher.content_id(content)
        probes = self._runtime.register(content_id, content, probe_count)
        logger.debug('Instrumented %s with %d probes (content id %016x)', self._fullname, probe_count, content_id)

        module.__dict__[PROBES_NAME] = probes
        # The AST comes from the module's own source file; only probes were added
        code = compile(tree, self._origin, 'exec')
        exec(code, module.__dict__)  # noqa: S102


class TestwiseFinder(MetaPathFinder):
    """Finder that routes matching source modules through TestwiseLoader.

    Module names are matched with fnmatch patterns. A module is instrumented
    if it matches at least one include pattern and no exclude pattern.
    """

    __test__ = False

    def __init__(
        self,
        runtime: ProbeRuntime,
        include: Iterable[str],
        exclude: Iterable[str] = (),
        hasher: ContentHasher | None = None,
    ) -> None:
        """Initialize the finder.

        Args:
            runtime: Runtime that receives every instrumented module.
            include: Module name patterns to instrument.
            exclude: Module name patterns never to instrument.
            hasher: Hasher for content ids. Defaults to a new ContentHasher.
        """
        self._runtime = runtime
        self._include = tuple(include)
        self._exclude = (*exclude, *ALWAYS_EXCLUDED)
        self._hasher = hasher if hasher is not None else ContentHasher()

    def matches(self, fullname: str) -> bool:
        """Return True if the module should be instrumented."""
        if not any(fnmatchcase(fullname, pattern) for pattern in self._include):
            return False
        return not any(fnmatchcase(fullname, pattern) for pattern in self._exclude)

    def find_spec(
        self,
        fullname: str,
        path: Sequence[str] | None,
        target: types.ModuleType | None = None,  # noqa: ARG002
    ) -> ModuleSpec | None:
        """Find a module spec for the given module name.

        Args:
            fullname: The fully qualified module name.
            path: The parent package's search path, or None for top-level modules.
            target: The target module (unused).

        Returns:
            ModuleSpec with TestwiseLoader if the module is instrumented, None otherwise.
        """
        if not self.matches(fullname):
            return None

        spec = PathFinder.find_spec(fullname, path)
        if spec is None or spec.origin is None or not isinstance(spec.loader, SourceFileLoader):
            # Extension modules, namespace packages and bytecode-only modules load normally
            return None

        is_package = spec.submodule_search_locations is not None
        loader = TestwiseLoader(fullname, spec.origin, self._runtime, self._hasher, is_package=is_package)
        return importlib.util.spec_from_file_location(
            fullname,
            spec.origin,
            loader=loader,
            submodule_search_locations=spec.submodule_search_locations,
        )


# Global reference to the registered finder (for cleanup)
_registered_finder: TestwiseFinder | None = None


def register_import_hooks(finder: TestwiseFinder) -> None:
    """Register a finder in front of sys.meta_path.

    Any previously registered TestwiseFinder is removed first.

    Args:
        finder: The finder to register.
    """
    global _registered_finder  # noqa: PLW0603
    unregister_import_hooks()

    _registered_finder = finder
    sys.meta_path.insert(0, finder)


def unregister_import_hooks() -> None:
    """Unregister import hooks from sys.meta_path.

    Safe to call even if no hooks are registered. Modules that were already
    imported stay instrumented.
    """
    global _registered_finder  # noqa: PLW0603

    if _registered_finder is not None and _registered_finder in sys.meta_path:
        sys.meta_path.remove(_registered_finder)

    _registered_finder = None

    sys.meta_path[:] = [f for f in sys.meta_path if not isinstance(f, TestwiseFinder)]
