"""Fetch-once cache of raw dependency payloads keyed by source identity."""

import hashlib
import json
import logging
import os
import re
import shutil
import stat
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

try:  # pragma: no cover - platform specific availability
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - windows
    fcntl = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific availability
    import msvcrt  # type: ignore
except ImportError:  # pragma: no cover - non-windows
    msvcrt = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r'^[0-9a-f]{64}$')
TMP_PREFIX = ".tmp-"

# In-process half of the per-key lock; shared by every store on the same root
_THREAD_LOCKS: Dict[Tuple[str, str], threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


@dataclass(frozen=True)
class CacheEntry:
    """A populated cache entry. Never mutated after creation."""
    key: str
    payload_path: Path
    fetched_at: str
    resolved_ref: Optional[str] = None
    content_digest: Optional[str] = None


@dataclass
class MirrorItem:
    """One vendor directory entry to mirror into a store."""
    name: str
    source_dir: Path
    key: str
    resolved_ref: Optional[str] = None
    content_digest: Optional[str] = None


# A producer fills the staging directory it is given and reports
# (payload path inside staging, resolved ref, content digest).
Producer = Callable[[Path], Tuple[Path, Optional[str], str]]


class CacheStore:
    """Content storage addressed by source equivalence key.

    Layout::

        <root>/<key>/entry.json
        <root>/<key>/payload            (directory payloads)
        <root>/<key>/payload.tar.gz     (file payloads keep their suffix)

    Entries are written to a temporary directory inside ``root`` and renamed
    into place, so readers never see a partial entry. Writers for one key are
    serialized by a thread lock plus an inter-process file lock. Lock files
    live in the system temp directory so ``root`` holds only entries.
    """

    ENTRY_FILE = "entry.json"
    MIRROR_MARKER = ".pvendor-cache.json"

    def __init__(self, root: Path):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._mirror_index: Optional[Dict[str, Path]] = None

    def get(self, key: str) -> Optional[CacheEntry]:
        """Look up an entry by key.

        Args:
            key: Equivalence key of the source

        Returns:
            CacheEntry if populated, otherwise None
        """
        entry_dir = self.root / key
        manifest_path = entry_dir / self.ENTRY_FILE
        if manifest_path.is_file():
            manifest = self._read_json(manifest_path)
            if manifest is not None and manifest.get("key") == key:
                payload_path = entry_dir / str(manifest.get("payload", "payload"))
                if payload_path.exists():
                    return CacheEntry(
                        key=key,
                        payload_path=payload_path,
                        fetched_at=str(manifest.get("fetched_at", "")),
                        resolved_ref=manifest.get("resolved_ref"),
                        content_digest=manifest.get("content_digest"),
                    )
            logger.debug("Ignoring unreadable cache entry %s", entry_dir)

        mirrored = self._lookup_mirror(key)
        if mirrored is not None:
            return mirrored
        return None

    def put(self, key: str, payload_path: Path, resolved_ref: Optional[str] = None,
            content_digest: Optional[str] = None) -> CacheEntry:
        """Move a payload into the store under ``key``.

        At most one write happens per key: if an entry already exists it is
        returned and the new payload is discarded.

        Args:
            key: Equivalence key of the source
            payload_path: File or directory to move into the store
            resolved_ref: Concrete revision the payload corresponds to
            content_digest: Digest of the payload

        Returns:
            CacheEntry: The entry now stored under ``key``
        """
        with self.lock(key):
            existing = self.get(key)
            if existing is not None:
                logger.debug("Cache entry %s already present, discarding new payload", key)
                _remove_path(payload_path)
                return existing
            return self._commit(key, Path(payload_path), resolved_ref, content_digest)

    def get_or_create(self, key: str, producer: Producer) -> Tuple[CacheEntry, bool]:
        """Return the entry for ``key``, running ``producer`` only on a miss.

        Concurrent callers for the same key block until the first one has
        committed, then observe its entry instead of producing again.

        Returns:
            Tuple of (entry, created) where ``created`` is True when this call
            ran the producer.
        """
        existing = self.get(key)
        if existing is not None:
            return existing, False

        with self.lock(key):
            existing = self.get(key)
            if existing is not None:
                return existing, False

            staging = Path(tempfile.mkdtemp(prefix=f"{TMP_PREFIX}{key[:12]}-", dir=str(self.root)))
            try:
                payload, resolved_ref, digest = producer(staging)
                entry = self._commit(key, payload, resolved_ref, digest)
            finally:
                _remove_path(staging)
            logger.debug("Populated cache entry %s at %s", key, entry.payload_path)
            return entry, True

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        """Exclusive lock scoped to one key, across threads and processes."""
        thread_lock = _thread_lock_for(str(self.root), key)
        with thread_lock:
            lock_dir = Path(tempfile.gettempdir()) / "pvendor-locks"
            lock_dir.mkdir(parents=True, exist_ok=True)
            root_id = hashlib.sha256(str(self.root).encode("utf-8")).hexdigest()[:16]
            lock_path = lock_dir / f"{root_id}-{key}.lock"
            with lock_path.open("a+b") as handle:
                handle.seek(0, os.SEEK_END)
                if handle.tell() == 0:
                    handle.write(b"0")
                    handle.flush()

                if fcntl is not None:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                elif msvcrt is not None:
                    handle.seek(0)
                    msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
                else:  # pragma: no cover - thread lock only
                    yield
                    return

                try:
                    yield
                finally:
                    if fcntl is not None:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                    elif msvcrt is not None:
                        handle.seek(0)
                        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)

    def mirror(self, items: List[MirrorItem]) -> None:
        """Make the store's entries mirror a vendor directory.

        Each item is copied to ``<root>/<name>`` with a marker file recording
        its key, so the mirrored directory doubles as a cache entry. Keyed
        entries and stale mirrors that are not part of ``items`` are removed;
        anything else in ``root`` is left alone.
        """
        wanted = set()
        for item in items:
            wanted.add(item.name)
            if item.source_dir.resolve() == (self.root / item.name).resolve():
                continue
            staging = Path(tempfile.mkdtemp(prefix=TMP_PREFIX, dir=str(self.root)))
            try:
                content = staging / "content"
                shutil.copytree(item.source_dir, content, symlinks=True,
                                ignore=shutil.ignore_patterns(self.MIRROR_MARKER))
                marker = {
                    "key": item.key,
                    "fetched_at": _now(),
                    "resolved_ref": item.resolved_ref,
                    "content_digest": item.content_digest,
                }
                (content / self.MIRROR_MARKER).write_text(
                    json.dumps(marker, indent=2, sort_keys=True) + "\n", encoding="utf-8"
                )
                _make_readable(content)
                target = self.root / item.name
                if target.exists() or target.is_symlink():
                    _remove_path(target)
                os.replace(content, target)
            finally:
                _remove_path(staging)

        for child in list(self.root.iterdir()):
            if child.name in wanted:
                continue
            if self._is_store_artifact(child):
                logger.debug("Removing cache artifact %s while mirroring", child)
                _remove_path(child)
        self._mirror_index = None

    def entries(self) -> List[str]:
        """List top-level entry names in the store."""
        return sorted(child.name for child in self.root.iterdir())

    def _commit(self, key: str, payload_path: Path, resolved_ref: Optional[str],
                content_digest: Optional[str]) -> CacheEntry:
        target = self.root / key
        if target.exists():
            # Unreadable leftover; the lock is held so nobody else is using it
            _remove_path(target)

        entry_tmp = Path(tempfile.mkdtemp(prefix=f"{TMP_PREFIX}{key[:12]}-", dir=str(self.root)))
        try:
            payload_name = "payload" if payload_path.is_dir() else "payload" + _payload_suffix(payload_path)
            shutil.move(str(payload_path), str(entry_tmp / payload_name))
            fetched_at = _now()
            manifest = {
                "key": key,
                "payload": payload_name,
                "fetched_at": fetched_at,
                "resolved_ref": resolved_ref,
                "content_digest": content_digest,
            }
            (entry_tmp / self.ENTRY_FILE).write_text(
                json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8"
            )
            _make_readable(entry_tmp)
            os.replace(entry_tmp, target)
        except BaseException:
            _remove_path(entry_tmp)
            raise

        return CacheEntry(
            key=key,
            payload_path=target / payload_name,
            fetched_at=fetched_at,
            resolved_ref=resolved_ref,
            content_digest=content_digest,
        )

    def _lookup_mirror(self, key: str) -> Optional[CacheEntry]:
        if self._mirror_index is None or key not in self._mirror_index:
            self._mirror_index = self._scan_mirrors()
        mirrored_dir = self._mirror_index.get(key)
        if mirrored_dir is None:
            return None
        marker = self._read_json(mirrored_dir / self.MIRROR_MARKER)
        if marker is None or marker.get("key") != key:
            return None
        return CacheEntry(
            key=key,
            payload_path=mirrored_dir,
            fetched_at=str(marker.get("fetched_at", "")),
            resolved_ref=marker.get("resolved_ref"),
            content_digest=marker.get("content_digest"),
        )

    def _scan_mirrors(self) -> Dict[str, Path]:
        index: Dict[str, Path] = {}
        for child in sorted(self.root.iterdir()):
            marker_path = child / self.MIRROR_MARKER
            if child.is_dir() and marker_path.is_file():
                marker = self._read_json(marker_path)
                if marker and isinstance(marker.get("key"), str):
                    index.setdefault(marker["key"], child)
        return index

    def _is_store_artifact(self, path: Path) -> bool:
        if path.name.startswith(TMP_PREFIX):
            return True
        if KEY_PATTERN.match(path.name) and (path / self.ENTRY_FILE).is_file():
            return True
        return path.is_dir() and (path / self.MIRROR_MARKER).is_file()

    @staticmethod
    def _read_json(path: Path) -> Optional[dict]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None


def _thread_lock_for(root: str, key: str) -> threading.Lock:
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get((root, key))
        if lock is None:
            lock = threading.Lock()
            _THREAD_LOCKS[(root, key)] = lock
        return lock


def _payload_suffix(path: Path) -> str:
    name = path.name.lower()
    for suffix in (".tar.gz", ".tgz", ".tar", ".zip"):
        if name.endswith(suffix):
            return suffix
    return "".join(path.suffixes[-2:]) if path.suffixes else ""


def _make_readable(path: Path) -> None:
    """Grant read access to everyone so unprivileged consumers can use entries."""
    def _grant(target: Path, is_dir: bool) -> None:
        if target.is_symlink():
            return
        mode = target.stat().st_mode
        extra = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH
        if is_dir or mode & stat.S_IXUSR:
            extra |= stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
        os.chmod(target, mode | extra)

    _grant(path, path.is_dir())
    if path.is_dir():
        for dirpath, dirnames, filenames in os.walk(path):
            for dirname in dirnames:
                _grant(Path(dirpath) / dirname, True)
            for filename in filenames:
                _grant(Path(dirpath) / filename, False)


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path, ignore_errors=True)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
