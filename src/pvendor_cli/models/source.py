"""Source descriptor data model and equivalence keys."""

import hashlib
import os
import re
import urllib.parse
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple, Union


COMMIT_PATTERN = re.compile(r'^[0-9a-f]{40}$')


class SourceKind(Enum):
    """Kinds of dependency sources supported."""
    LOCAL = "local"
    GIT = "git"
    ARCHIVE = "archive"


def normalize_path(raw: Union[str, Path], base_dir: Optional[Path] = None) -> Path:
    """Normalize a filesystem path into a canonical absolute form.

    Relative paths are tried against ``base_dir`` first, then against the
    current working directory. Backslash separators are accepted on every
    platform. Symlinks (e.g. macOS ``/var`` -> ``/private/var``) are resolved
    so that two spellings of the same directory compare equal.

    Args:
        raw: Path as written by the user or in a metadata file
        base_dir: Directory the path is declared relative to

    Returns:
        Path: Absolute, symlink-resolved path (it may not exist)
    """
    text = str(raw).strip()
    if os.sep == "/" and "\\" in text and not Path(text).exists():
        text = text.replace("\\", "/")
    path = Path(os.path.expanduser(text))

    if path.is_absolute():
        return path.resolve()

    candidates = []
    if base_dir is not None:
        candidates.append(Path(base_dir) / path)
    candidates.append(Path.cwd() / path)

    for candidate in candidates:
        if candidate.exists():
            return candidate.resolve()
    # Nothing exists yet; anchor to the declaring profile so errors point there
    return candidates[0].resolve()


def canonicalize_url(url: str) -> str:
    """Canonicalize a remote URL for equivalence comparison.

    Scheme and host are lower-cased and a trailing slash is dropped. The path
    keeps its case because most servers treat it case-sensitively.
    """
    text = url.strip()
    parsed = urllib.parse.urlsplit(text)
    if not parsed.scheme or not parsed.netloc:
        return text.rstrip("/")
    path = parsed.path.rstrip("/")
    return urllib.parse.urlunsplit(
        (parsed.scheme.lower(), parsed.netloc.lower(), path, parsed.query, "")
    )


def _looks_like_local_repo(locator: str) -> bool:
    if "://" in locator or locator.startswith("git@"):
        return False
    return True


@dataclass(frozen=True)
class SourceDescriptor:
    """Normalized representation of one dependency source.

    Descriptors are immutable. Two descriptors are equivalent when kind,
    locator and ref match; ``options`` (such as an expected checksum) do not
    take part in equivalence.
    """
    kind: SourceKind
    locator: str
    ref: Optional[str] = None
    options: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def local(cls, path: Union[str, Path], base_dir: Optional[Path] = None) -> "SourceDescriptor":
        """Create a local-path descriptor."""
        return cls(kind=SourceKind.LOCAL, locator=str(normalize_path(path, base_dir)))

    @classmethod
    def git(cls, url: str, ref: Optional[str] = None,
            options: Optional[Mapping[str, str]] = None,
            base_dir: Optional[Path] = None) -> "SourceDescriptor":
        """Create a git descriptor.

        A locator that is a plain filesystem path (a local repository) is
        normalized like a local path so it keeps working from any cwd.
        """
        if _looks_like_local_repo(url):
            locator = str(normalize_path(url, base_dir))
        else:
            locator = canonicalize_url(url)
        return cls(
            kind=SourceKind.GIT,
            locator=locator,
            ref=ref.strip() if ref and ref.strip() else None,
            options=_freeze_options(options),
        )

    @classmethod
    def archive(cls, url: str, options: Optional[Mapping[str, str]] = None) -> "SourceDescriptor":
        """Create a remote-archive descriptor."""
        return cls(
            kind=SourceKind.ARCHIVE,
            locator=canonicalize_url(url),
            options=_freeze_options(options),
        )

    @property
    def key(self) -> str:
        """Equivalence key shared by all equivalent descriptors."""
        material = "\0".join([self.kind.value, self.locator, self.ref or ""])
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def subtree_key(self, fetch_key: str) -> Optional[str]:
        """Key of the ``relative_path`` subdirectory of the payload stored under ``fetch_key``.

        Returns None when the descriptor has no ``relative_path``.
        """
        relative = self.get_option("relative_path")
        if not relative:
            return None
        material = "\0".join([fetch_key, relative.strip("/")])
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def get_option(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Look up a single option value."""
        return self.options_dict().get(name, default)

    def options_dict(self) -> Dict[str, str]:
        """Return options as a plain dictionary."""
        return dict(self.options)

    def pinned(self, commit: str) -> "SourceDescriptor":
        """Return a copy whose ref is replaced by a concrete commit."""
        return replace(self, ref=commit)

    def is_pinned(self) -> bool:
        """Check whether the ref is already an immutable commit id."""
        return bool(self.ref) and COMMIT_PATTERN.match(self.ref.lower()) is not None

    def get_display_name(self) -> str:
        """Short human-readable form used in console output."""
        if self.ref:
            return f"{self.locator}#{self.ref}"
        return self.locator

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.get_display_name()}"


def _freeze_options(options: Optional[Mapping[str, str]]) -> Tuple[Tuple[str, str], ...]:
    if not options:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in options.items() if v is not None))
