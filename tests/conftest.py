"""Shared test fixtures."""

import tarfile
import threading
import zipfile
from dataclasses import dataclass, field
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable, List

import pytest
import yaml
from git import Actor, Repo

AUTHOR = Actor("Profile Tester", "tester@example.invalid")


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep config and the global cache inside the test's temp directory."""
    monkeypatch.setenv("PVENDOR_CONFIG_DIR", str(tmp_path / "pvendor-config"))
    monkeypatch.setenv("PVENDOR_CACHE_DIR", str(tmp_path / "global-cache"))
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")
    for variable, value in (("GIT_AUTHOR_NAME", AUTHOR.name), ("GIT_AUTHOR_EMAIL", AUTHOR.email),
                            ("GIT_COMMITTER_NAME", AUTHOR.name), ("GIT_COMMITTER_EMAIL", AUTHOR.email)):
        monkeypatch.setenv(variable, value)
    return tmp_path / "global-cache"


@pytest.fixture
def global_cache(isolated_environment: Path) -> Path:
    return isolated_environment


def _write_profile(directory: Path, name: str, depends=None, control: str = "example") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    data = {"name": name, "version": "1.0.0", "title": f"{name} profile"}
    if depends is not None:
        data["depends"] = depends
    (directory / "inspec.yml").write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    controls = directory / "controls"
    controls.mkdir(exist_ok=True)
    (controls / f"{control}.rb").write_text(f"control '{name}-{control}' do\nend\n", encoding="utf-8")
    return directory


@pytest.fixture
def make_profile() -> Callable[..., Path]:
    """Factory writing a profile directory with an inspec.yml and one control."""
    return _write_profile


@dataclass
class GitProfileRepo:
    path: Path
    repo: Repo

    def commit(self, relative: str, content: str, message: str = "update") -> str:
        target = self.path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        self.repo.index.add([relative])
        return self.repo.index.commit(message, author=AUTHOR, committer=AUTHOR).hexsha

    @property
    def head(self) -> str:
        return self.repo.head.commit.hexsha


@pytest.fixture
def make_git_profile(tmp_path: Path) -> Callable[..., GitProfileRepo]:
    """Factory creating a git repository whose root is a profile on branch ``main``."""
    repos: List[Repo] = []

    def _factory(name: str, depends=None) -> GitProfileRepo:
        path = tmp_path / "repos" / name
        _write_profile(path, name, depends=depends)
        repo = Repo.init(path)
        repos.append(repo)
        repo.index.add(["inspec.yml", "controls/example.rb"])
        repo.index.commit("initial", author=AUTHOR, committer=AUTHOR)
        repo.git.branch("-M", "main")
        return GitProfileRepo(path=path, repo=repo)

    yield _factory
    for repo in repos:
        repo.close()


@pytest.fixture
def make_archive() -> Callable[[Path, Path], Path]:
    """Factory packing a directory into .tar/.tar.gz/.tgz/.zip under a single top-level folder."""

    def _factory(source_dir: Path, archive_path: Path) -> Path:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        top = source_dir.name
        name = archive_path.name
        if name.endswith(".zip"):
            with zipfile.ZipFile(archive_path, "w") as zf:
                for path in sorted(source_dir.rglob("*")):
                    zf.write(path, f"{top}/{path.relative_to(source_dir).as_posix()}")
        else:
            mode = "w:gz" if name.endswith((".tar.gz", ".tgz")) else "w"
            with tarfile.open(archive_path, mode) as tf:
                tf.add(source_dir, arcname=top)
        return archive_path

    return _factory


@dataclass
class HttpFixture:
    root: Path
    base_url: str
    requests: List[str] = field(default_factory=list)

    def url(self, name: str) -> str:
        return f"{self.base_url}/{name}"


@pytest.fixture
def http_server(tmp_path: Path):
    """Serve ``root`` over HTTP on localhost, recording request paths."""
    root = tmp_path / "www"
    root.mkdir()
    seen: List[str] = []

    class Handler(SimpleHTTPRequestHandler):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, directory=str(root), **kwargs)

        def do_GET(self):
            seen.append(self.path)
            super().do_GET()

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield HttpFixture(root=root, base_url=f"http://127.0.0.1:{server.server_address[1]}", requests=seen)
    finally:
        server.shutdown()
        server.server_close()
