"""Fetch strategies dispatched over source kinds, plus the per-run fetch session."""

import logging
import shutil
import tempfile
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from ..errors import UnresolvableSource, VendorError
from ..models.source import SourceDescriptor, SourceKind
from ..utils.helpers import compute_digest
from .archive_downloader import ArchiveDownloader
from .cache_store import CacheStore
from .extractor import FORMAT_DIRECTORY, detect_format, extract
from .git_downloader import GitDownloader

logger = logging.getLogger(__name__)


class FetchOutcome(Enum):
    """How a dependency's content was obtained in a run."""
    FETCHED = "fetched"  # network transfer and cache population
    CACHED = "cached"    # served from the Cache Store
    LOCAL = "local"      # read from the local filesystem


@dataclass(frozen=True)
class FetchResult:
    """Raw content returned by a fetch strategy."""
    descriptor: SourceDescriptor
    content_path: Path
    content_digest: str
    outcome: FetchOutcome
    resolved_ref: Optional[str] = None
    cache_key: Optional[str] = None


@dataclass(frozen=True)
class MaterializedSource:
    """A fetch result made available as a plain directory."""
    result: FetchResult
    directory: Path

    @property
    def resolved_ref(self) -> Optional[str]:
        return self.result.resolved_ref

    @property
    def content_digest(self) -> str:
        return self.result.content_digest

    @property
    def outcome(self) -> FetchOutcome:
        return self.result.outcome


class FetcherSet:
    """Uniform ``fetch`` over the closed set of source kinds."""

    def __init__(self, cache: CacheStore, timeout: int = 60,
                 pins: Optional[Dict[str, str]] = None,
                 git_downloader: Optional[GitDownloader] = None,
                 archive_downloader: Optional[ArchiveDownloader] = None):
        """Initialize the fetcher set.

        Args:
            cache: Cache Store consulted before any network access
            timeout: Network timeout in seconds
            pins: Commits to use for git descriptors, keyed by descriptor key
        """
        self.cache = cache
        self.pins = dict(pins or {})
        self.git = git_downloader or GitDownloader(timeout=timeout)
        self.archive = archive_downloader or ArchiveDownloader(timeout=timeout)
        self._handlers = {
            SourceKind.LOCAL: self._fetch_local,
            SourceKind.GIT: self._fetch_git,
            SourceKind.ARCHIVE: self._fetch_archive,
        }

    def fetch(self, descriptor: SourceDescriptor) -> FetchResult:
        """Retrieve the raw content of a source.

        Args:
            descriptor: Normalized source descriptor

        Returns:
            FetchResult: Content path, resolved ref and content digest

        Raises:
            VendorError: Any fetch failure, carrying the descriptor
        """
        handler = self._handlers[descriptor.kind]
        try:
            return handler(descriptor)
        except VendorError as e:
            raise e.with_context(descriptor=descriptor)

    def fetch_subtree(self, descriptor: SourceDescriptor) -> Optional[FetchResult]:
        """Serve a ``relative_path`` descriptor from a stored copy of just that subdirectory.

        Such copies are written when a vendor tree is mirrored. They can only be
        found when the payload key is known offline, i.e. for a pinned git source.
        """
        pin = self.pins.get(descriptor.key)
        if descriptor.kind != SourceKind.GIT or pin is None:
            return None
        key = descriptor.subtree_key(descriptor.pinned(pin).key)
        if key is None:
            return None
        entry = self.cache.get(key)
        if entry is None or not entry.payload_path.is_dir():
            return None
        return FetchResult(
            descriptor=descriptor,
            content_path=entry.payload_path,
            content_digest=entry.content_digest or compute_digest(entry.payload_path),
            outcome=FetchOutcome.CACHED,
            resolved_ref=entry.resolved_ref or pin,
            cache_key=key,
        )

    def _fetch_local(self, descriptor: SourceDescriptor) -> FetchResult:
        path = Path(descriptor.locator)
        if not path.exists():
            raise UnresolvableSource(f"Local dependency path does not exist: {path}", descriptor=descriptor)
        try:
            digest = compute_digest(path)
        except OSError as e:
            raise UnresolvableSource(f"Cannot read local dependency {path}: {e}", descriptor=descriptor) from e
        return FetchResult(
            descriptor=descriptor,
            content_path=path,
            content_digest=digest,
            outcome=FetchOutcome.LOCAL,
        )

    def _fetch_git(self, descriptor: SourceDescriptor) -> FetchResult:
        pinned, entry, created = self.git.fetch(descriptor, self.cache, pin=self.pins.get(descriptor.key))
        return FetchResult(
            descriptor=descriptor,
            content_path=entry.payload_path,
            content_digest=entry.content_digest or compute_digest(entry.payload_path),
            outcome=FetchOutcome.FETCHED if created else FetchOutcome.CACHED,
            resolved_ref=entry.resolved_ref or pinned.ref,
            cache_key=pinned.key,
        )

    def _fetch_archive(self, descriptor: SourceDescriptor) -> FetchResult:
        payload_path, digest, created = self.archive.fetch(descriptor, self.cache)
        return FetchResult(
            descriptor=descriptor,
            content_path=payload_path,
            content_digest=digest or compute_digest(payload_path),
            outcome=FetchOutcome.FETCHED if created else FetchOutcome.CACHED,
            cache_key=descriptor.key,
        )


class FetchSession:
    """Memoizes fetches for one vendoring run.

    Each equivalence key is fetched at most once per session. Concurrent
    callers for the same key share one future: the first computes, the rest
    wait for its result. Archive payloads are unpacked into a scratch
    directory owned by the session.
    """

    def __init__(self, fetchers: FetcherSet, scratch_dir: Optional[Path] = None):
        self.fetchers = fetchers
        self.scratch_dir = Path(scratch_dir or tempfile.mkdtemp(prefix="pvendor-"))
        self._memo: Dict[str, "Future[MaterializedSource]"] = {}
        self._guard = threading.Lock()

    def materialize(self, descriptor: SourceDescriptor) -> MaterializedSource:
        """Fetch a source once and expose it as a directory.

        ``relative_path`` is applied per call on top of the shared fetch, so
        descriptors that differ only in that option reuse one download. A
        stored copy of the subdirectory alone is used when one exists.
        """
        relative = descriptor.get_option("relative_path")
        if not relative:
            return self._materialize_once(descriptor)

        subtree = self.fetchers.fetch_subtree(descriptor)
        if subtree is not None:
            logger.debug("Using stored subdirectory %s for %s", subtree.content_path, descriptor)
            return MaterializedSource(result=subtree, directory=subtree.content_path)

        source = self._materialize_once(descriptor)

        base = source.directory.resolve()
        directory = (base / relative).resolve()
        if base != directory and base not in directory.parents:
            raise UnresolvableSource(f"relative_path escapes the source: {relative}", descriptor=descriptor)
        if not directory.is_dir():
            raise UnresolvableSource(f"relative_path not found in source: {relative}", descriptor=descriptor)
        return MaterializedSource(result=source.result, directory=directory)

    def fetch_count(self) -> int:
        """Number of distinct sources requested in this session."""
        return len(self._memo)

    def close(self) -> None:
        shutil.rmtree(self.scratch_dir, ignore_errors=True)

    def _materialize_once(self, descriptor: SourceDescriptor) -> MaterializedSource:
        key = descriptor.key
        with self._guard:
            future = self._memo.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._memo[key] = future

        if not owner:
            return future.result()

        try:
            source = self._materialize(descriptor)
        except BaseException as e:
            future.set_exception(e)
            raise
        future.set_result(source)
        return source

    def _materialize(self, descriptor: SourceDescriptor) -> MaterializedSource:
        result = self.fetchers.fetch(descriptor)
        path = result.content_path
        if detect_format(path) == FORMAT_DIRECTORY:
            directory = path
        else:
            directory = extract(path, self.scratch_dir / descriptor.key[:16])

        logger.debug("Materialized %s at %s (%s)", descriptor, directory, result.outcome.value)
        return MaterializedSource(result=result, directory=directory)
