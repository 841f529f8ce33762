"""Dependency resolution, fetching, caching and vendoring for profiles."""

from .cache_store import CacheStore, CacheEntry
from .dependency_graph import DependencyTree, DependencyNode, CircularRef
from .extractor import extract, detect_format
from .fetcher import FetcherSet, FetchSession, FetchResult, FetchOutcome, MaterializedSource
from .git_downloader import GitDownloader
from .archive_downloader import ArchiveDownloader
from .lockfile import LockEntry, Lockfile, read_lockfile, write_lockfile
from .resolver import DependencyResolver
from .vendor import VendoringOrchestrator, VendorResult, RunState, vendored_dependency_paths

__all__ = [
    'CacheStore',
    'CacheEntry',
    'DependencyTree',
    'DependencyNode',
    'CircularRef',
    'extract',
    'detect_format',
    'FetcherSet',
    'FetchSession',
    'FetchResult',
    'FetchOutcome',
    'MaterializedSource',
    'GitDownloader',
    'ArchiveDownloader',
    'LockEntry',
    'Lockfile',
    'read_lockfile',
    'write_lockfile',
    'DependencyResolver',
    'VendoringOrchestrator',
    'VendorResult',
    'RunState',
    'vendored_dependency_paths',
]
