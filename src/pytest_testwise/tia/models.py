"""Data exchanged with the test-selection service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Mapping


@dataclass(frozen=True)
class ClusteredTestDetails:
    """A test available for selection.

    Attributes:
        uniform_path: Identity of the test.
        cluster_id: Tests of one cluster are run together, e.g. one test file.
        source_path: Path of the file defining the test, if known.
        content: Fingerprint of the test's own code. Lets the service treat
            changed tests as impacted.
    """

    uniform_path: str
    cluster_id: str | None = None
    source_path: str | None = None
    content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format."""
        return {
            'uniform_path': self.uniform_path,
            'cluster_id': self.cluster_id,
            'source_path': self.source_path,
            'content': self.content,
        }


@dataclass(frozen=True)
class PrioritizableTest:
    """A test suggested by the selection service.

    Attributes:
        uniform_path: Identity of the test.
        selection_reason: Why the test was selected, if the service says.
    """

    uniform_path: str
    selection_reason: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PrioritizableTest:
        """Build from the wire format."""
        return cls(uniform_path=data['uniform_path'], selection_reason=data.get('selection_reason'))


@dataclass(frozen=True)
class PrioritizableTestCluster:
    """An ordered group of suggested tests.

    Attributes:
        cluster_id: Identity of the cluster.
        impacted: False for clusters only sent because non-impacted tests
            were requested.
        tests: Tests of the cluster in suggested execution order.
    """

    cluster_id: str | None
    impacted: bool = True
    tests: tuple[PrioritizableTest, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PrioritizableTestCluster:
        """Build from the wire format.

        Raises:
            ValueError: If the data is not a cluster.
        """
        try:
            tests = tuple(PrioritizableTest.from_dict(test) for test in data['tests'])
            return cls(cluster_id=data.get('cluster_id'), impacted=bool(data.get('impacted', True)), tests=tests)
        except (KeyError, TypeError, AttributeError) as exc:
            msg = f'Invalid test cluster: {exc!r}'
            raise ValueError(msg) from exc
