"""Profile dependency resolution with recursive resolution and cycle detection."""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List

from ..errors import CyclicDependency, FetchFailed, InvalidProfile, VendorError
from ..models.profile import METADATA_FILE, ProfileMetadata
from ..models.source import SourceDescriptor
from .dependency_graph import ROOT_ID, CircularRef, DependencyNode, DependencyTree
from .fetcher import FetchSession

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Builds the dependency tree of a profile, fetching nested profiles on the way."""

    def __init__(self, session: FetchSession, max_depth: int = 50, jobs: int = 4):
        """Initialize the resolver.

        Args:
            session: Fetch session used to materialize every dependency
            max_depth: Maximum nesting depth before resolution is aborted
            jobs: Upper bound on concurrent sibling fetches
        """
        self.session = session
        self.max_depth = max_depth
        self.jobs = max(1, jobs)

    def resolve(self, profile_root: Path) -> DependencyTree:
        """Resolve all dependencies of a profile recursively.

        Dependencies are visited depth-first in declaration order. The direct
        dependencies of one profile are checked for cycles before any of them
        is fetched, then fetched concurrently, then recursed into one by one.

        Args:
            profile_root: Directory containing the profile's inspec.yml

        Returns:
            DependencyTree: Tree rooted at the profile, every node materialized

        Raises:
            InvalidProfile: If a metadata file is missing or malformed
            CyclicDependency: If a source is reachable from itself
            VendorError: Any fetch or extraction failure
        """
        metadata = ProfileMetadata.from_inspec_yml(Path(profile_root) / METADATA_FILE)
        tree = DependencyTree(root_name=metadata.name, root_path=Path(profile_root))

        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="pvendor-fetch") as pool:
            self._resolve_children(
                tree,
                ROOT_ID,
                metadata,
                path_keys=[tree.root.get_id()],
                path_names=[metadata.name],
                pool=pool,
            )

        logger.debug("Resolved %d dependencies for %s (max depth %d)",
                     tree.total_dependencies(), metadata.name, tree.max_depth)
        return tree

    def _resolve_children(self, tree: DependencyTree, parent_id: int, metadata: ProfileMetadata,
                          path_keys: List[str], path_names: List[str],
                          pool: ThreadPoolExecutor) -> None:
        parent = tree.get_node(parent_id)
        if metadata.depends and parent.depth >= self.max_depth:
            raise InvalidProfile(
                f"Dependency nesting exceeds the maximum depth of {self.max_depth}",
                dependency=parent.name,
            )

        children: List[DependencyNode] = []
        for declaration in metadata.depends:
            key = _path_key(declaration.descriptor)
            if key in path_keys:
                start = path_keys.index(key)
                circular = CircularRef(
                    cycle_path=path_names[start:] + [declaration.name],
                    detected_at_depth=parent.depth + 1,
                )
                logger.debug("%s", circular)
                raise CyclicDependency(
                    circular.cycle_path,
                    dependency=declaration.name,
                    descriptor=declaration.descriptor,
                )
            children.append(tree.add_node(declaration.name, declaration.descriptor, parent_id))

        self._materialize_all(tree, children, pool)

        for child in children:
            try:
                child_metadata = ProfileMetadata.load_optional(child.source.directory)
            except VendorError as e:
                raise e.with_context(dependency=tree.qualified_name(child.node_id))
            if child_metadata is None or not child_metadata.depends:
                continue
            self._resolve_children(
                tree,
                child.node_id,
                child_metadata,
                path_keys=path_keys + [_path_key(child.descriptor)],
                path_names=path_names + [child.name],
                pool=pool,
            )

    def _materialize_all(self, tree: DependencyTree, nodes: List[DependencyNode],
                         pool: ThreadPoolExecutor) -> None:
        """Fetch sibling nodes concurrently and attach the results.

        Every future is awaited before an error is raised, and the first
        failure in declaration order wins so errors are deterministic.
        """
        futures = [pool.submit(self.session.materialize, node.descriptor) for node in nodes]
        first_error = None
        for node, future in zip(nodes, futures):
            try:
                node.source = future.result()
            except VendorError as e:
                if first_error is None:
                    first_error = e.with_context(
                        dependency=tree.qualified_name(node.node_id),
                        descriptor=node.descriptor,
                    )
            except OSError as e:
                if first_error is None:
                    first_error = FetchFailed(
                        f"Failed to fetch {node.name}: {e}",
                        dependency=tree.qualified_name(node.node_id),
                        descriptor=node.descriptor,
                    )
                    first_error.__cause__ = e
        if first_error is not None:
            raise first_error


def _path_key(descriptor: SourceDescriptor) -> str:
    """Identity of a profile on the resolution path.

    Profiles in different subdirectories of one repository are distinct even
    though they share a fetch.
    """
    relative = descriptor.get_option("relative_path")
    if not relative:
        return descriptor.key
    return f"{descriptor.key}:{relative.strip('/')}"
