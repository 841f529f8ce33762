"""Remote archive fetcher for profile dependencies."""

import hashlib
import logging
import re
import urllib.parse
from pathlib import Path
from typing import Optional, Tuple

import requests

from ..errors import FetchFailed, UnresolvableSource
from ..models.source import SourceDescriptor
from ..utils.helpers import DIGEST_PREFIX, sha256_file
from ..version import get_version
from .cache_store import CacheStore

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class ArchiveDownloader:
    """Downloads remote archives into the cache, keyed by source identity."""

    def __init__(self, timeout: int = 60, session: Optional[requests.Session] = None):
        """Initialize the archive downloader.

        Args:
            timeout: Connect and read timeout in seconds
            session: Optional session to reuse across downloads
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", f"pvendor/{get_version()}")

    def fetch(self, descriptor: SourceDescriptor, cache: CacheStore) -> Tuple[Path, str, bool]:
        """Make an archive available in the cache.

        The network is only touched when the cache has no entry for the
        descriptor's key. A declared ``sha256`` is checked on every call,
        including when the entry was already cached.

        Args:
            descriptor: Archive source descriptor

        Returns:
            Tuple of (cached payload path, content digest, created)

        Raises:
            FetchFailed: If the payload does not match the declared checksum
        """
        entry, created = cache.get_or_create(
            descriptor.key,
            lambda staging: self._produce(descriptor, staging),
        )
        digest = entry.content_digest
        if not digest and entry.payload_path.is_file():
            digest = DIGEST_PREFIX + sha256_file(entry.payload_path)
        verify_checksum(descriptor, digest)
        return entry.payload_path, digest or "", created

    def _produce(self, descriptor: SourceDescriptor, staging: Path) -> Tuple[Path, Optional[str], str]:
        target = staging / _file_name_for(descriptor.locator)
        hex_digest = self.download(descriptor, target)
        verify_checksum(descriptor, DIGEST_PREFIX + hex_digest)
        return target, None, DIGEST_PREFIX + hex_digest

    def download(self, descriptor: SourceDescriptor, target: Path) -> str:
        """Stream a remote archive to ``target``.

        Args:
            descriptor: Archive source descriptor
            target: File to write

        Returns:
            str: SHA-256 hex digest of the downloaded bytes

        Raises:
            UnresolvableSource: If the locator is not a usable URL
            FetchFailed: On transport errors, timeouts or a non-2xx status
        """
        url = descriptor.locator
        logger.debug("Downloading %s to %s", url, target)
        digest = hashlib.sha256()
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(target, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            digest.update(chunk)
        except (requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema,
                requests.exceptions.InvalidURL) as e:
            raise UnresolvableSource(f"Invalid archive URL {url}: {e}", descriptor=descriptor) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            raise FetchFailed(f"Download of {url} failed with HTTP status {status}",
                              descriptor=descriptor) from e
        except requests.exceptions.RequestException as e:
            raise FetchFailed(f"Download of {url} failed: {e}", descriptor=descriptor) from e
        except OSError as e:
            raise FetchFailed(f"Cannot write download of {url} to {target}: {e}",
                              descriptor=descriptor) from e
        return digest.hexdigest()


def _file_name_for(url: str) -> str:
    """Local file name for a download, keeping the archive suffix."""
    tail = urllib.parse.unquote(urllib.parse.urlsplit(url).path.rstrip("/").split("/")[-1])
    tail = re.sub(r'[^A-Za-z0-9._-]', '_', tail)
    return tail or "payload"


def verify_checksum(descriptor: SourceDescriptor, content_digest: Optional[str]) -> None:
    """Check a payload digest against the descriptor's declared ``sha256``.

    Raises:
        FetchFailed: On mismatch, or when no digest is known for the payload
    """
    expected = descriptor.get_option("sha256")
    if not expected:
        return
    expected = expected.lower()
    content_digest = content_digest or ""
    actual = content_digest[len(DIGEST_PREFIX):] if content_digest.startswith(DIGEST_PREFIX) else ""
    if actual != expected:
        raise FetchFailed(
            f"Checksum mismatch for {descriptor.locator}: expected {expected}, got {actual or 'unknown'}",
            descriptor=descriptor,
        )
