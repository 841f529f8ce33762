"""Vendoring orchestrator: resolve, fetch, extract and commit a profile's dependencies."""

import logging
import os
import shutil
import tempfile
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from ..config import get_cache_dir, get_jobs, get_timeout
from ..errors import (
    ExtractionFailed,
    InvalidProfile,
    LockfileCorrupt,
    OutputDirectoryInvalid,
    StaleLockfile,
    VendorError,
)
from ..models.profile import LOCKFILE_NAME, METADATA_FILE, VENDOR_DIR_NAME, ProfileMetadata
from ..models.source import SourceKind, normalize_path
from ..utils.console import _rich_echo, _rich_success, _rich_warning
from .cache_store import CacheStore, MirrorItem
from .dependency_graph import DependencyNode, DependencyTree
from .extractor import copy_tree
from .fetcher import FetcherSet, FetchOutcome, FetchSession
from .lockfile import LockEntry, Lockfile, read_lockfile, serialize_lockfile, write_lockfile
from .resolver import DependencyResolver

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".vendor-staging-"
OLD_VENDOR_PREFIX = ".vendor.old-"


class RunState(Enum):
    """States of one vendoring run."""
    START = "start"
    CHECK_EXISTING = "check_existing"
    REUSED = "reused"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class VendorResult:
    """Outcome of a successful vendoring run."""
    profile_root: Path
    vendor_dir: Path
    lockfile: Lockfile
    state: RunState
    messages: List[str] = field(default_factory=list)
    fetched: List[str] = field(default_factory=list)


class VendoringOrchestrator:
    """Drives one vendoring run for a profile root.

    A run either reuses an existing lockfile and vendor tree without any
    network access, or re-resolves, builds the new vendor tree in a staging
    directory and swaps it in together with the lockfile. A failed run leaves
    the previous vendor tree and lockfile untouched.
    """

    def __init__(self, profile_root: Union[str, Path], cache_dir: Optional[Union[str, Path]] = None,
                 jobs: Optional[int] = None, timeout: Optional[int] = None,
                 reporter: Optional[Callable[[str], None]] = None):
        """Initialize the orchestrator.

        Args:
            profile_root: Profile directory (absolute, relative, or with
                backslash separators)
            cache_dir: Cache Store location for this run; when given, the
                directory is mirrored to the vendor tree after success
            jobs: Concurrent fetch limit (defaults to the configured value)
            timeout: Network timeout in seconds (defaults to the configured value)
            reporter: Callable receiving per-dependency progress lines
        """
        self.profile_root = normalize_path(profile_root)
        self.custom_cache = cache_dir is not None
        self.cache_dir = normalize_path(cache_dir) if cache_dir is not None else get_cache_dir()
        self.jobs = jobs if jobs is not None else get_jobs()
        self.timeout = timeout if timeout is not None else get_timeout()
        self.reporter = reporter or (lambda message: _rich_echo(message, color="cyan"))
        self.state = RunState.START

    @property
    def vendor_dir(self) -> Path:
        return self.profile_root / VENDOR_DIR_NAME

    @property
    def lockfile_path(self) -> Path:
        return self.profile_root / LOCKFILE_NAME

    def run(self, overwrite: bool = False) -> VendorResult:
        """Vendor the profile's dependencies.

        Args:
            overwrite: Re-resolve even when a matching lockfile and vendor
                tree already exist

        Returns:
            VendorResult: Final state, lockfile and progress lines

        Raises:
            VendorError: On any failure; the previous vendor tree and
                lockfile are preserved
        """
        try:
            result = self._run(overwrite)
        except BaseException:
            self.state = RunState.FAILED
            raise

        if self.custom_cache:
            self._mirror_cache(result.lockfile)
        _rich_success(
            f"Dependencies for profile {self.profile_root} successfully vendored to {self.vendor_dir}",
            symbol="success",
        )
        return result

    def _run(self, overwrite: bool) -> VendorResult:
        self.state = RunState.CHECK_EXISTING
        metadata = self._load_root()

        pins: Dict[str, str] = {}
        if not overwrite:
            lock = self._read_existing_lock()
            if lock is not None:
                self._check_fresh(lock, metadata)
                if self._vendor_matches(lock):
                    return self._reuse(lock)
                logger.debug("Vendor tree does not match %s, replaying lock", self.lockfile_path)
                pins = lock.pins()

        self.state = RunState.RESOLVING
        cache = CacheStore(self.cache_dir)
        session = FetchSession(FetcherSet(cache, timeout=self.timeout, pins=pins))
        staging: Optional[Path] = None
        tmp_lock: Optional[Path] = None
        try:
            self.state = RunState.FETCHING
            tree = DependencyResolver(session, jobs=self.jobs).resolve(self.profile_root)
            messages, fetched = self._report_progress(tree)

            self.state = RunState.EXTRACTING
            staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=str(self.profile_root)))
            entries = [self._assemble(tree, node, staging / node.name) for node in tree.top_level()]
            lockfile = Lockfile(entries=entries)

            self.state = RunState.COMMITTING
            tmp_lock = self._write_temp_lock(lockfile)
            self._commit(staging, tmp_lock)
            staging = None
            tmp_lock = None
        finally:
            session.close()
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)
            if tmp_lock is not None and tmp_lock.exists():
                tmp_lock.unlink()

        self.state = RunState.DONE
        return VendorResult(
            profile_root=self.profile_root,
            vendor_dir=self.vendor_dir,
            lockfile=lockfile,
            state=self.state,
            messages=messages,
            fetched=fetched,
        )

    def _load_root(self) -> ProfileMetadata:
        if not self.profile_root.is_dir():
            raise OutputDirectoryInvalid(f"Profile path is not a directory: {self.profile_root}")
        if not (self.profile_root / METADATA_FILE).is_file():
            raise InvalidProfile(f"No {METADATA_FILE} found in {self.profile_root}")
        if not os.access(self.profile_root, os.W_OK):
            raise OutputDirectoryInvalid(f"Profile directory is not writable: {self.profile_root}")
        return ProfileMetadata.from_inspec_yml(self.profile_root / METADATA_FILE)

    def _read_existing_lock(self) -> Optional[Lockfile]:
        if not self.lockfile_path.exists():
            return None
        try:
            return read_lockfile(self.lockfile_path)
        except LockfileCorrupt as e:
            _rich_warning(f"Ignoring unreadable {LOCKFILE_NAME}: {e}", symbol="warning")
            return None

    def _check_fresh(self, lock: Lockfile, metadata: ProfileMetadata) -> None:
        """Reject a lockfile that no longer matches the declared dependencies."""
        declared = OrderedDict((d.name, d.descriptor) for d in metadata.depends)
        if set(lock.names()) != set(declared):
            missing = sorted(set(declared) - set(lock.names()))
            extra = sorted(set(lock.names()) - set(declared))
            detail = []
            if missing:
                detail.append(f"not locked: {', '.join(missing)}")
            if extra:
                detail.append(f"no longer declared: {', '.join(extra)}")
            raise StaleLockfile(
                f"{LOCKFILE_NAME} does not match the dependencies in {METADATA_FILE} "
                f"({'; '.join(detail)}). Run again with --overwrite to re-vendor."
            )
        if list(lock.names()) != list(declared):
            raise StaleLockfile(
                f"{LOCKFILE_NAME} lists dependencies in a different order than {METADATA_FILE}. "
                f"Run again with --overwrite to re-vendor."
            )
        for name, descriptor in declared.items():
            locked = lock.get(name).descriptor
            if locked.key != descriptor.key or locked.options != descriptor.options:
                raise StaleLockfile(
                    f"Locked source for '{name}' differs from {METADATA_FILE}. "
                    f"Run again with --overwrite to re-vendor.",
                    dependency=name,
                    descriptor=descriptor,
                )

    def _vendor_matches(self, lock: Lockfile) -> bool:
        if not self.vendor_dir.is_dir():
            return False
        present = set(
            child.name for child in self.vendor_dir.iterdir() if not child.name.startswith(".")
        )
        if present != set(lock.names()):
            return False
        return all((self.vendor_dir / name).is_dir() for name in lock.names())

    def _reuse(self, lock: Lockfile) -> VendorResult:
        messages = []
        for qualified, entry in lock.walk():
            message = f"Using cached dependency for {qualified} ({entry.descriptor.locator})"
            self.reporter(message)
            messages.append(message)
        self.state = RunState.REUSED
        return VendorResult(
            profile_root=self.profile_root,
            vendor_dir=self.vendor_dir,
            lockfile=lock,
            state=self.state,
            messages=messages,
        )

    def _report_progress(self, tree: DependencyTree):
        """Emit one line per dependency once resolution has succeeded."""
        messages: List[str] = []
        fetched: List[str] = []
        seen_keys = set()
        for node in tree.walk():
            qualified = tree.qualified_name(node.node_id)
            source = node.source
            outcome = source.outcome
            cache_key = source.result.cache_key or node.get_id()
            if outcome == FetchOutcome.FETCHED and cache_key in seen_keys:
                outcome = FetchOutcome.CACHED
            seen_keys.add(cache_key)

            if outcome == FetchOutcome.LOCAL:
                message = f"Using local dependency {qualified} from {node.descriptor.locator}"
            elif outcome == FetchOutcome.FETCHED:
                message = f"Fetching {qualified} from {node.descriptor.locator}"
                fetched.append(qualified)
            else:
                message = f"Using cached dependency for {qualified} ({node.descriptor.locator})"
            self.reporter(message)
            messages.append(message)
        return messages, fetched

    def _assemble(self, tree: DependencyTree, node: DependencyNode, destination: Path) -> LockEntry:
        """Write one dependency (and its nested vendor tree) into ``destination``."""
        children = tree.children(node.node_id)
        # A dependency that has its own dependencies gets a freshly built vendor tree
        ignore = [VENDOR_DIR_NAME, LOCKFILE_NAME] if children else []
        try:
            copy_tree(node.source.directory, destination, top_level_ignore=ignore)
        except OSError as e:
            shutil.rmtree(destination, ignore_errors=True)
            raise ExtractionFailed(
                f"Failed to write {destination}: {e}",
                dependency=tree.qualified_name(node.node_id),
                descriptor=node.descriptor,
            ) from e

        nested = [
            self._assemble(tree, child, destination / VENDOR_DIR_NAME / child.name)
            for child in children
        ]
        if nested:
            write_lockfile(Lockfile(entries=nested), destination / LOCKFILE_NAME)

        return LockEntry(
            name=node.name,
            descriptor=node.descriptor,
            content_digest=node.source.content_digest,
            resolved_ref=node.source.resolved_ref,
            dependencies=nested,
        )

    def _write_temp_lock(self, lockfile: Lockfile) -> Path:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{LOCKFILE_NAME}.", suffix=".tmp", dir=str(self.profile_root))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(serialize_lockfile(lockfile, self.profile_root))
        return Path(tmp_name)

    def _commit(self, staging: Path, tmp_lock: Path) -> None:
        """Swap the staged vendor tree and lockfile into place.

        The old vendor tree is moved aside first and restored if any later
        step fails, so the profile is never left half-updated.
        """
        old_vendor: Optional[Path] = None
        if self.vendor_dir.exists() or self.vendor_dir.is_symlink():
            old_vendor = self.profile_root / f"{OLD_VENDOR_PREFIX}{uuid.uuid4().hex[:8]}"
        swapped = False
        try:
            if old_vendor is not None:
                os.rename(self.vendor_dir, old_vendor)
            os.rename(staging, self.vendor_dir)
            swapped = True
            os.replace(tmp_lock, self.lockfile_path)
        except OSError as e:
            if swapped:
                os.rename(self.vendor_dir, staging)
            if old_vendor is not None and old_vendor.exists():
                os.rename(old_vendor, self.vendor_dir)
            raise OutputDirectoryInvalid(
                f"Failed to update vendor directory in {self.profile_root}: {e}"
            ) from e

        if old_vendor is not None:
            if old_vendor.is_dir() and not old_vendor.is_symlink():
                shutil.rmtree(old_vendor, ignore_errors=True)
            else:
                old_vendor.unlink()

    def _mirror_cache(self, lock: Lockfile) -> None:
        items = []
        for entry in lock.entries:
            if entry.descriptor.kind == SourceKind.GIT and entry.resolved_ref:
                key = entry.descriptor.pinned(entry.resolved_ref).key
            else:
                key = entry.descriptor.key
            # The vendored copy holds only the subdirectory, so it must not answer for the whole payload
            key = entry.descriptor.subtree_key(key) or key
            items.append(MirrorItem(
                name=entry.name,
                source_dir=self.vendor_dir / entry.name,
                key=key,
                resolved_ref=entry.resolved_ref,
                content_digest=entry.content_digest,
            ))
        if self.cache_dir == self.vendor_dir:
            return
        CacheStore(self.cache_dir).mirror(items)
        logger.debug("Mirrored %d vendor entries to %s", len(items), self.cache_dir)


def vendored_dependency_paths(profile_root: Union[str, Path]) -> Dict[str, Path]:
    """Locate the vendored directory of every top-level dependency.

    Read-only: never fetches and never touches the lockfile.

    Args:
        profile_root: Profile directory

    Returns:
        Dict[str, Path]: Dependency name to vendored directory, in lock order

    Raises:
        VendorError: If the profile has not been vendored
        LockfileCorrupt: If the lockfile cannot be parsed
    """
    root = normalize_path(profile_root)
    lock_path = root / LOCKFILE_NAME
    if not lock_path.is_file():
        raise VendorError(f"Profile {root} has not been vendored (no {LOCKFILE_NAME})")
    lock = read_lockfile(lock_path)

    paths: Dict[str, Path] = OrderedDict()
    for entry in lock.entries:
        path = root / VENDOR_DIR_NAME / entry.name
        if not path.is_dir():
            raise VendorError(
                f"Vendored dependency missing: {path}. Run the vendor command again.",
                dependency=entry.name,
                descriptor=entry.descriptor,
            )
        paths[entry.name] = path
    return paths
