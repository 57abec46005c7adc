"""Resource ordering for stack runs.

Resources run strictly in declared order for build and test, and in
reverse for teardown. Later resources may read values exported by
earlier ones, so there is no parallel traversal.
"""

import logging
from dataclasses import dataclass

from manifest import ResourceDecl, StackManifest

logger = logging.getLogger(__name__)


@dataclass
class ResourceNode:
    """A resource with its position in the manifest.

    Attributes:
        resource: The underlying ResourceDecl
        index: Zero-based declaration position
    """
    resource: ResourceDecl
    index: int

    @property
    def name(self) -> str:
        return self.resource.name

    @property
    def type(self) -> str:
        return self.resource.type

    def __repr__(self) -> str:
        return f"ResourceNode({self.name}, type={self.type}, index={self.index})"


class ResourceGraph:
    """Ordered view of a manifest's resources.

    - build_order(): declared order
    - teardown_order(): reverse of build_order
    """

    def __init__(self, manifest: StackManifest):
        self.manifest = manifest
        self._nodes = [ResourceNode(resource=r, index=i) for i, r in enumerate(manifest.resources)]
        self._by_name = {node.name: node for node in self._nodes}

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, name: str) -> ResourceNode:
        """Get a ResourceNode by name.

        Raises:
            KeyError: If resource name not found
        """
        return self._by_name[name]

    def build_order(self) -> list[ResourceNode]:
        """Return resources in declared order."""
        return list(self._nodes)

    def teardown_order(self) -> list[ResourceNode]:
        """Return resources in teardown order (last declared first)."""
        return list(reversed(self.build_order()))
