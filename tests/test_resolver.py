import threading
from pathlib import Path
from typing import List

import pytest

from pvendor_cli.deps.cache_store import CacheStore
from pvendor_cli.deps.fetcher import FetcherSet, FetchSession
from pvendor_cli.deps.resolver import DependencyResolver
from pvendor_cli.errors import CyclicDependency, InvalidProfile, UnresolvableSource


class RecordingFetcherSet(FetcherSet):
    """Fetcher set that remembers every source it was asked for."""

    def __init__(self, cache: CacheStore):
        super().__init__(cache, timeout=5)
        self.requested: List[str] = []
        self._lock = threading.Lock()

    def fetch(self, descriptor):
        with self._lock:
            self.requested.append(Path(descriptor.locator).name)
        return super().fetch(descriptor)


def _resolve(tmp_path: Path, root: Path, **kwargs):
    fetchers = RecordingFetcherSet(CacheStore(tmp_path / "cache"))
    session = FetchSession(fetchers)
    try:
        return DependencyResolver(session, **kwargs).resolve(root), fetchers
    finally:
        session.close()


def test_tree_follows_declaration_order(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "c", "c")
    make_profile(tmp_path / "b", "b", depends=[{"name": "c", "path": "../c"}])
    make_profile(tmp_path / "a", "a")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "b", "path": "../b"},
        {"name": "a", "path": "../a"},
    ])

    tree, _ = _resolve(tmp_path, root)

    assert [tree.qualified_name(n.node_id) for n in tree.walk()] == ["b", "b/c", "a"]
    assert [n.name for n in tree.top_level()] == ["b", "a"]
    assert tree.max_depth == 2
    assert all(node.source is not None for node in tree.walk())


def test_self_dependency_is_a_cycle_without_fetching(tmp_path: Path, make_profile) -> None:
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "me", "path": "."}])

    with pytest.raises(CyclicDependency) as excinfo:
        _resolve(tmp_path, root)

    assert excinfo.value.cycle == ["root", "me"]


def test_indirect_cycle_is_reported_with_path(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "a", "a", depends=[{"name": "b", "path": "../b"}])
    make_profile(tmp_path / "b", "b", depends=[{"name": "a", "path": "../a"}])
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "a", "path": "../a"}])
    fetchers = RecordingFetcherSet(CacheStore(tmp_path / "cache"))

    with pytest.raises(CyclicDependency) as excinfo:
        DependencyResolver(FetchSession(fetchers)).resolve(root)

    assert str(excinfo.value).startswith("Circular dependency detected: a -> b -> a")
    # The dependency closing the cycle is never fetched a second time
    assert fetchers.requested == ["a", "b"]


def test_shared_source_is_fetched_once(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "shared", "shared")
    make_profile(tmp_path / "left", "left", depends=[{"name": "shared", "path": "../shared"}])
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "shared", "path": "../shared"},
        {"name": "left", "path": "../left"},
        {"name": "shared-again", "path": "../shared/"},
    ])

    tree, fetchers = _resolve(tmp_path, root, jobs=4)

    assert sorted(fetchers.requested) == ["left", "shared"]
    assert tree.total_dependencies() == 4
    groups = tree.unique_keys()
    assert sorted(len(ids) for ids in groups.values()) == [1, 3]


def test_first_declared_failure_wins(tmp_path: Path, make_profile) -> None:
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "first", "path": "../missing-one"},
        {"name": "second", "path": "../missing-two"},
    ])

    with pytest.raises(UnresolvableSource) as excinfo:
        _resolve(tmp_path, root, jobs=2)

    assert excinfo.value.dependency == "first"


def test_nested_failure_is_namespaced(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "parent", "parent", depends=[{"name": "child", "path": "../nowhere"}])
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "parent", "path": "../parent"}])

    with pytest.raises(UnresolvableSource) as excinfo:
        _resolve(tmp_path, root)

    assert excinfo.value.dependency == "parent/child"


def test_depth_limit(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "d3", "d3")
    make_profile(tmp_path / "d2", "d2", depends=[{"name": "d3", "path": "../d3"}])
    make_profile(tmp_path / "d1", "d1", depends=[{"name": "d2", "path": "../d2"}])
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "d1", "path": "../d1"}])

    with pytest.raises(InvalidProfile, match="maximum depth of 2"):
        _resolve(tmp_path, root, max_depth=2)


def test_dependency_without_metadata_is_a_leaf(tmp_path: Path, make_profile) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    (plain / "README.md").write_text("no metadata here", encoding="utf-8")
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "plain", "path": "../plain"}])

    tree, _ = _resolve(tmp_path, root)

    assert [n.name for n in tree.walk()] == ["plain"]
