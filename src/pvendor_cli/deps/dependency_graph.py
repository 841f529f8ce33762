"""Data structures for dependency tree representation and resolution."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

from ..models.source import SourceDescriptor

if TYPE_CHECKING:
    from .fetcher import MaterializedSource

ROOT_ID = 0


@dataclass
class DependencyNode:
    """A single dependency in the tree.

    Nodes reference each other by index into ``DependencyTree.nodes`` rather
    than by object, so the tree can be walked, namespaced and handed to the
    lockfile codec without shared mutable links.
    """
    node_id: int
    name: str
    descriptor: SourceDescriptor
    depth: int = 0
    parent_id: Optional[int] = None
    child_ids: List[int] = field(default_factory=list)
    source: Optional["MaterializedSource"] = None

    def get_id(self) -> str:
        """Equivalence key of the declared source."""
        return self.descriptor.key

    def get_display_name(self) -> str:
        """Get display name for this dependency."""
        return f"{self.name} ({self.descriptor.get_display_name()})"

    def is_root(self) -> bool:
        return self.parent_id is None


@dataclass
class CircularRef:
    """Represents a circular dependency reference."""
    cycle_path: List[str]  # Names along the resolution path, ending at the repeated one
    detected_at_depth: int

    def _format_complete_cycle(self) -> str:
        """
        Return a string representation of the cycle, ensuring it is visually complete.
        If the cycle path does not end at the starting node, append the start to the end.
        """
        if not self.cycle_path:
            return "(empty path)"
        cycle_display = " -> ".join(self.cycle_path)
        if len(self.cycle_path) > 1 and self.cycle_path[0] != self.cycle_path[-1]:
            cycle_display += f" -> {self.cycle_path[0]}"
        return cycle_display

    def __str__(self) -> str:
        """String representation of the circular dependency."""
        return f"Circular dependency detected: {self._format_complete_cycle()}"


@dataclass
class DependencyTree:
    """Arena of dependency nodes rooted at the profile being vendored."""
    root_name: str
    root_path: Path
    nodes: List[DependencyNode] = field(default_factory=list)
    max_depth: int = 0

    def __post_init__(self) -> None:
        if not self.nodes:
            self.nodes.append(DependencyNode(
                node_id=ROOT_ID,
                name=self.root_name,
                descriptor=SourceDescriptor.local(self.root_path),
            ))

    @property
    def root(self) -> DependencyNode:
        return self.nodes[ROOT_ID]

    def add_node(self, name: str, descriptor: SourceDescriptor, parent_id: int) -> DependencyNode:
        """Append a child of ``parent_id`` and return it.

        Children keep the order in which they were added, which is the
        declaration order of the parent's metadata.
        """
        parent = self.nodes[parent_id]
        node = DependencyNode(
            node_id=len(self.nodes),
            name=name,
            descriptor=descriptor,
            depth=parent.depth + 1,
            parent_id=parent_id,
        )
        self.nodes.append(node)
        parent.child_ids.append(node.node_id)
        self.max_depth = max(self.max_depth, node.depth)
        return node

    def get_node(self, node_id: int) -> DependencyNode:
        """Get a node by its arena index."""
        return self.nodes[node_id]

    def children(self, node_id: int) -> List[DependencyNode]:
        """Children of a node in declaration order."""
        return [self.nodes[child_id] for child_id in self.nodes[node_id].child_ids]

    def top_level(self) -> List[DependencyNode]:
        """Direct dependencies of the root profile."""
        return self.children(ROOT_ID)

    def walk(self, node_id: int = ROOT_ID) -> Iterator[DependencyNode]:
        """Pre-order walk below ``node_id`` (excluding it), in declaration order."""
        for child in self.children(node_id):
            yield child
            yield from self.walk(child.node_id)

    def path_names(self, node_id: int) -> List[str]:
        """Names from the first-level ancestor down to the node."""
        names: List[str] = []
        node = self.nodes[node_id]
        while node.parent_id is not None:
            names.append(node.name)
            node = self.nodes[node.parent_id]
        return list(reversed(names))

    def qualified_name(self, node_id: int) -> str:
        """Name namespaced under its parents, e.g. ``parent/child``."""
        return "/".join(self.path_names(node_id))

    def unique_keys(self) -> Dict[str, List[int]]:
        """Group non-root nodes by descriptor equivalence key."""
        groups: Dict[str, List[int]] = {}
        for node in self.walk():
            groups.setdefault(node.get_id(), []).append(node.node_id)
        return groups

    def total_dependencies(self) -> int:
        return len(self.nodes) - 1
