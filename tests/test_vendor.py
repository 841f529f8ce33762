import shutil
from pathlib import Path
from typing import List

import pytest

from pvendor_cli.deps.lockfile import read_lockfile
from pvendor_cli.deps.vendor import RunState, VendoringOrchestrator, vendored_dependency_paths
from pvendor_cli.errors import (
    CyclicDependency,
    FetchFailed,
    InvalidProfile,
    OutputDirectoryInvalid,
    StaleLockfile,
    UnresolvableSource,
    VendorError,
)
from pvendor_cli.utils.helpers import compute_digest

ARCHIVE_SUFFIXES = (".zip", ".tar", ".tgz", ".gz")


def _vendor(root: Path, overwrite: bool = False, **kwargs):
    messages: List[str] = []
    result = VendoringOrchestrator(root, reporter=messages.append, **kwargs).run(overwrite=overwrite)
    return result, messages


def _keyed_entries(cache: Path) -> List[Path]:
    if not cache.exists():
        return []
    return [p for p in cache.iterdir() if (p / "entry.json").is_file()]


def _leftovers(root: Path) -> List[str]:
    return sorted(p.name for p in root.iterdir() if p.name.startswith("."))


def test_vendors_local_dependencies_with_nesting(tmp_path: Path, make_profile, capsys) -> None:
    make_profile(tmp_path / "child", "child")
    make_profile(tmp_path / "parent", "parent", depends=[{"name": "child", "path": "../child"}])
    make_profile(tmp_path / "plain", "plain")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "parent", "path": "../parent"},
        {"name": "plain", "path": "../plain"},
    ])

    result, messages = _vendor(root)

    assert result.state == RunState.DONE
    assert sorted(p.name for p in (root / "vendor").iterdir()) == ["parent", "plain"]
    assert (root / "vendor" / "parent" / "vendor" / "child" / "inspec.yml").is_file()
    nested_lock = read_lockfile(root / "vendor" / "parent" / "inspec.lock")
    assert nested_lock.names() == ["child"]
    lock = read_lockfile(root / "inspec.lock")
    assert [name for name, _ in lock.walk()] == ["parent", "parent/child", "plain"]
    assert messages == [
        f"Using local dependency parent from {(tmp_path / 'parent').resolve()}",
        f"Using local dependency parent/child from {(tmp_path / 'child').resolve()}",
        f"Using local dependency plain from {(tmp_path / 'plain').resolve()}",
    ]
    out = capsys.readouterr().out
    assert f"Dependencies for profile {root} successfully vendored to {root}/vendor" in out
    assert _leftovers(root) == []


def test_profile_without_dependencies(tmp_path: Path, make_profile) -> None:
    root = make_profile(tmp_path / "root", "root")

    result, messages = _vendor(root)

    assert result.lockfile.entries == []
    assert messages == []
    assert (root / "vendor").is_dir()
    assert list((root / "vendor").iterdir()) == []
    assert read_lockfile(root / "inspec.lock").entries == []


def test_second_run_reuses_vendor_tree_without_network(tmp_path: Path, make_profile, make_git_profile) -> None:
    remote = make_git_profile("remote")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "remote", "git": str(remote.path), "branch": "main"},
    ])
    _, first_messages = _vendor(root)
    lock_bytes = (root / "inspec.lock").read_bytes()
    shutil.rmtree(remote.path)

    result, messages = _vendor(root)

    assert first_messages == [f"Fetching remote from {remote.path.resolve()}"]
    assert result.state == RunState.REUSED
    assert any("using cached dependency" in message.lower() for message in messages)
    assert (root / "inspec.lock").read_bytes() == lock_bytes


def test_vendoring_is_idempotent(tmp_path: Path, make_profile, make_archive, http_server) -> None:
    make_archive(make_profile(tmp_path / "src" / "remote", "remote"), http_server.root / "remote.tar.gz")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "remote", "url": http_server.url("remote.tar.gz")},
    ])
    _vendor(root)
    lock_bytes = (root / "inspec.lock").read_bytes()
    tree_digest = compute_digest(root / "vendor")

    _vendor(root)
    assert (root / "inspec.lock").read_bytes() == lock_bytes
    assert compute_digest(root / "vendor") == tree_digest

    # A lost vendor tree is rebuilt from the cache
    shutil.rmtree(root / "vendor")
    _, messages = _vendor(root)
    assert (root / "inspec.lock").read_bytes() == lock_bytes
    assert compute_digest(root / "vendor") == tree_digest
    assert messages == [f"Using cached dependency for remote ({http_server.url('remote.tar.gz')})"]
    assert http_server.requests == ["/remote.tar.gz"]


def test_every_source_form_is_vendored_as_a_directory(
    tmp_path: Path, make_profile, make_archive, http_server
) -> None:
    make_profile(tmp_path / "deps" / "dir-dep", "dir-dep")
    make_archive(make_profile(tmp_path / "src" / "tgz-dep", "tgz-dep"), http_server.root / "tgz-dep-1.0.tar.gz")
    make_archive(make_profile(tmp_path / "src" / "zip-dep", "zip-dep"), tmp_path / "deps" / "zip-dep-1.0.zip")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "dir-dep", "path": "../deps/dir-dep"},
        {"name": "tgz-dep", "url": http_server.url("tgz-dep-1.0.tar.gz")},
        {"name": "zip-dep", "path": "../deps/zip-dep-1.0.zip"},
    ])

    _vendor(root)

    vendor = root / "vendor"
    assert sorted(p.name for p in vendor.iterdir()) == ["dir-dep", "tgz-dep", "zip-dep"]
    for name in ("dir-dep", "tgz-dep", "zip-dep"):
        assert (vendor / name).is_dir()
        assert (vendor / name / "inspec.yml").is_file()
    assert [p for p in vendor.rglob("*") if p.name.endswith(ARCHIVE_SUFFIXES)] == []


def test_overwrite_picks_up_moved_branch(tmp_path: Path, make_profile, make_git_profile) -> None:
    remote = make_git_profile("remote")
    first = remote.head
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "remote", "git": str(remote.path), "branch": "main"},
    ])
    _vendor(root)
    second = remote.commit("controls/later.rb", "control 'later' do\nend\n")

    _vendor(root)
    assert read_lockfile(root / "inspec.lock").get("remote").resolved_ref == first

    result, messages = _vendor(root, overwrite=True)

    assert result.lockfile.get("remote").resolved_ref == second
    assert read_lockfile(root / "inspec.lock").get("remote").resolved_ref == second
    assert (root / "vendor" / "remote" / "controls" / "later.rb").is_file()
    assert messages == [f"Fetching remote from {remote.path.resolve()}"]


def test_replay_uses_locked_commit(tmp_path: Path, make_profile, make_git_profile) -> None:
    remote = make_git_profile("remote")
    first = remote.head
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "remote", "git": str(remote.path), "branch": "main"},
    ])
    _vendor(root)
    remote.commit("controls/later.rb", "control 'later' do\nend\n")
    shutil.rmtree(root / "vendor")

    result, _ = _vendor(root)

    assert result.lockfile.get("remote").resolved_ref == first
    assert not (root / "vendor" / "remote" / "controls" / "later.rb").exists()


def test_equivalent_sources_are_fetched_once(tmp_path: Path, make_profile, make_git_profile, global_cache) -> None:
    remote = make_git_profile("remote")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "one", "git": str(remote.path), "branch": "main"},
        {"name": "two", "git": str(remote.path) + "/", "branch": "main"},
    ])

    result, messages = _vendor(root)

    assert len(_keyed_entries(global_cache)) == 1
    assert result.fetched == ["one"]
    assert messages[1] == f"Using cached dependency for two ({remote.path.resolve()})"
    assert (root / "vendor" / "one" / "inspec.yml").is_file()
    assert (root / "vendor" / "two" / "inspec.yml").is_file()


def test_custom_cache_mirrors_vendor_tree(tmp_path: Path, make_profile, make_git_profile, make_archive) -> None:
    remote = make_git_profile("remote")
    make_profile(tmp_path / "local", "local")
    archive = make_archive(make_profile(tmp_path / "src" / "packed", "packed"), tmp_path / "packed.tgz")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "remote", "git": str(remote.path)},
        {"name": "local", "path": "../local"},
        {"name": "packed", "path": str(archive)},
    ])
    cache = tmp_path / "vendor-cache"

    _vendor(root, cache_dir=cache)

    assert sorted(p.name for p in cache.iterdir()) == sorted(p.name for p in (root / "vendor").iterdir())

    # The mirror serves later runs without the original source
    shutil.rmtree(root / "vendor")
    shutil.rmtree(remote.path)
    _, messages = _vendor(root, cache_dir=cache)
    assert messages[0] == f"Using cached dependency for remote ({remote.path.resolve()})"


def test_mirrored_subdirectory_serves_later_runs(tmp_path: Path, make_profile, make_git_profile) -> None:
    mono = make_git_profile("monorepo")
    mono.commit("profiles/inner/inspec.yml", "name: inner\nversion: 1.0.0\n")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "inner", "git": str(mono.path), "branch": "main", "relative_path": "profiles/inner"},
    ])
    cache = tmp_path / "vendor-cache"
    _vendor(root, cache_dir=cache)

    _vendor(root, overwrite=True, cache_dir=cache)
    assert (root / "vendor" / "inner" / "inspec.yml").is_file()
    assert not (root / "vendor" / "inner" / "profiles").exists()

    # Replaying the lock needs neither the repository nor the vendor tree
    shutil.rmtree(root / "vendor")
    shutil.rmtree(mono.path)
    _, messages = _vendor(root, cache_dir=cache)
    assert messages == [f"Using cached dependency for inner ({mono.path.resolve()})"]
    assert (root / "vendor" / "inner" / "inspec.yml").is_file()


def test_checksum_is_checked_for_cached_archives(tmp_path: Path, make_profile, make_archive, http_server) -> None:
    make_archive(make_profile(tmp_path / "src" / "packed", "packed"), http_server.root / "packed.tar.gz")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "packed", "url": http_server.url("packed.tar.gz")},
    ])
    _vendor(root)
    lock_bytes = (root / "inspec.lock").read_bytes()
    make_profile(root, "root", depends=[
        {"name": "packed", "url": http_server.url("packed.tar.gz"), "sha256": "0" * 64},
    ])

    with pytest.raises(FetchFailed, match="Checksum mismatch"):
        _vendor(root, overwrite=True)

    assert (root / "inspec.lock").read_bytes() == lock_bytes
    assert (root / "vendor" / "packed" / "inspec.yml").is_file()
    assert http_server.requests == ["/packed.tar.gz"]


def test_failed_run_keeps_previous_state(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "good", "good")
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "good", "path": "../good"}])
    _vendor(root)
    lock_bytes = (root / "inspec.lock").read_bytes()
    tree_digest = compute_digest(root / "vendor")
    make_profile(root, "root", depends=[
        {"name": "good", "path": "../good"},
        {"name": "bad", "path": "../does-not-exist"},
    ])

    with pytest.raises(UnresolvableSource) as excinfo:
        _vendor(root, overwrite=True)

    assert excinfo.value.dependency == "bad"
    assert (root / "inspec.lock").read_bytes() == lock_bytes
    assert compute_digest(root / "vendor") == tree_digest
    assert _leftovers(root) == []


def test_cycle_writes_nothing(tmp_path: Path, make_profile, global_cache) -> None:
    make_profile(tmp_path / "a", "a", depends=[{"name": "root", "path": "../root"}])
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "a", "path": "../a"}])
    orchestrator = VendoringOrchestrator(root, reporter=lambda message: None)

    with pytest.raises(CyclicDependency, match="root -> a -> root"):
        orchestrator.run()

    assert orchestrator.state == RunState.FAILED
    assert not (root / "vendor").exists()
    assert not (root / "inspec.lock").exists()
    assert _keyed_entries(global_cache) == []
    assert _leftovers(root) == []


def test_stale_lock_is_rejected(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "one", "one")
    make_profile(tmp_path / "two", "two")
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "one", "path": "../one"}])
    _vendor(root)
    make_profile(root, "root", depends=[
        {"name": "one", "path": "../one"},
        {"name": "two", "path": "../two"},
    ])

    with pytest.raises(StaleLockfile, match="two"):
        _vendor(root)

    result, _ = _vendor(root, overwrite=True)
    assert result.lockfile.names() == ["one", "two"]


def test_changed_source_makes_lock_stale(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "one", "one")
    make_profile(tmp_path / "other", "other")
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "dep", "path": "../one"}])
    _vendor(root)
    make_profile(root, "root", depends=[{"name": "dep", "path": "../other"}])

    with pytest.raises(StaleLockfile) as excinfo:
        _vendor(root)

    assert excinfo.value.dependency == "dep"


def test_reordered_depends_makes_lock_stale(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "one", "one")
    make_profile(tmp_path / "two", "two")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "one", "path": "../one"},
        {"name": "two", "path": "../two"},
    ])
    _vendor(root)
    make_profile(root, "root", depends=[
        {"name": "two", "path": "../two"},
        {"name": "one", "path": "../one"},
    ])

    with pytest.raises(StaleLockfile, match="different order"):
        _vendor(root)

    result, _ = _vendor(root, overwrite=True)
    assert read_lockfile(root / "inspec.lock").names() == ["two", "one"]
    assert result.lockfile.names() == ["two", "one"]


def test_corrupt_lock_is_replaced(tmp_path: Path, make_profile, capsys) -> None:
    make_profile(tmp_path / "one", "one")
    root = make_profile(tmp_path / "root", "root", depends=[{"name": "one", "path": "../one"}])
    (root / "inspec.lock").write_text("{{{ not yaml", encoding="utf-8")

    result, _ = _vendor(root)

    assert result.state == RunState.DONE
    assert read_lockfile(root / "inspec.lock").names() == ["one"]
    assert "Ignoring unreadable inspec.lock" in capsys.readouterr().out


def test_profile_path_forms(tmp_path: Path, make_profile, monkeypatch: pytest.MonkeyPatch) -> None:
    make_profile(tmp_path / "profiles" / "one", "one")
    make_profile(tmp_path / "profiles" / "root", "root", depends=[{"name": "one", "path": "../one"}])
    monkeypatch.chdir(tmp_path)

    result, _ = _vendor("profiles\\root")

    assert result.profile_root == (tmp_path / "profiles" / "root").resolve()
    assert (tmp_path / "profiles" / "root" / "vendor" / "one").is_dir()


def test_invalid_profile_roots(tmp_path: Path) -> None:
    (tmp_path / "empty").mkdir()
    (tmp_path / "file.txt").write_text("x", encoding="utf-8")

    with pytest.raises(InvalidProfile):
        _vendor(tmp_path / "empty")
    with pytest.raises(OutputDirectoryInvalid):
        _vendor(tmp_path / "file.txt")
    with pytest.raises(OutputDirectoryInvalid):
        _vendor(tmp_path / "missing")


def test_vendored_dependency_paths(tmp_path: Path, make_profile) -> None:
    make_profile(tmp_path / "one", "one")
    make_profile(tmp_path / "two", "two")
    root = make_profile(tmp_path / "root", "root", depends=[
        {"name": "two", "path": "../two"},
        {"name": "one", "path": "../one"},
    ])

    with pytest.raises(VendorError, match="has not been vendored"):
        vendored_dependency_paths(root)

    _vendor(root)
    paths = vendored_dependency_paths(root)

    assert list(paths) == ["two", "one"]
    assert paths["one"] == root.resolve() / "vendor" / "one"

    shutil.rmtree(root / "vendor" / "one")
    with pytest.raises(VendorError) as excinfo:
        vendored_dependency_paths(root)
    assert excinfo.value.dependency == "one"
