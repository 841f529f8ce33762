"""Archive extraction into plain dependency directories."""

import logging
import os
import posixpath
import shutil
import stat
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional

from ..errors import ExtractionFailed, UnsupportedArchive

logger = logging.getLogger(__name__)

FORMAT_DIRECTORY = "directory"
FORMAT_FILE = "file"
FORMAT_TAR = "tar"
FORMAT_TAR_GZ = "tar.gz"
FORMAT_ZIP = "zip"

# Compressed formats recognised but not handled
UNSUPPORTED_SUFFIXES = (
    ".tar.bz2", ".tbz", ".tbz2", ".tar.xz", ".txz", ".tar.zst", ".tar.lz",
    ".bz2", ".xz", ".zst", ".lz", ".lzma", ".7z", ".rar", ".gz",
)
UNSUPPORTED_SIGNATURES = (
    (b"BZh", "bzip2"),
    (b"\xfd7zXZ\x00", "xz"),
    (b"7z\xbc\xaf\x27\x1c", "7z"),
    (b"\x28\xb5\x2f\xfd", "zstd"),
    (b"Rar!\x1a\x07", "rar"),
)

# Never carried into a vendored copy
COPY_IGNORE_PATTERNS = (".git", ".pvendor-cache.json", ".vendor-staging-*", ".vendor.old-*")


def detect_format(path: Path) -> str:
    """Detect how a payload must be materialized.

    Known suffixes win; otherwise the leading bytes are sniffed so payloads
    saved without a meaningful name are still recognised.

    Args:
        path: File or directory to inspect

    Returns:
        str: One of the ``FORMAT_*`` constants

    Raises:
        UnsupportedArchive: If the payload is compressed in an unhandled format
    """
    if path.is_dir():
        return FORMAT_DIRECTORY

    name = path.name.lower()
    if name.endswith(".zip"):
        return FORMAT_ZIP
    if name.endswith(".tar.gz") or name.endswith(".tgz"):
        return FORMAT_TAR_GZ
    if name.endswith(".tar"):
        return FORMAT_TAR

    try:
        with open(path, "rb") as f:
            header = f.read(512)
    except OSError as e:
        raise ExtractionFailed(f"Cannot read payload {path}: {e}") from e

    if header.startswith(b"PK\x03\x04") or header.startswith(b"PK\x05\x06"):
        return FORMAT_ZIP
    if header.startswith(b"\x1f\x8b"):
        return FORMAT_TAR_GZ
    if len(header) >= 262 and header[257:262] == b"ustar":
        return FORMAT_TAR
    for signature, label in UNSUPPORTED_SIGNATURES:
        if header.startswith(signature):
            raise UnsupportedArchive(f"Unsupported archive format '{label}': {path.name}")
    for suffix in UNSUPPORTED_SUFFIXES:
        if name.endswith(suffix):
            raise UnsupportedArchive(f"Unsupported archive format '{suffix}': {path.name}")
    return FORMAT_FILE


def extract(source_path: Path, destination_dir: Path) -> Path:
    """Materialize a payload as a plain directory.

    Archives are unpacked (a single top-level directory is hoisted so the
    destination holds the content directly). Directories are copied
    verbatim, and any other file is copied into the destination.

    Args:
        source_path: Payload file or directory
        destination_dir: Directory to create; must not exist yet

    Returns:
        Path: ``destination_dir``

    Raises:
        UnsupportedArchive: For an unhandled compressed format
        ExtractionFailed: For a corrupt or unsafe archive, or a write failure.
            Nothing is left at ``destination_dir`` in that case.
    """
    source_path = Path(source_path)
    destination_dir = Path(destination_dir)
    fmt = detect_format(source_path)

    if destination_dir.exists() or destination_dir.is_symlink():
        raise ExtractionFailed(f"Extraction target already exists: {destination_dir}")

    try:
        destination_dir.parent.mkdir(parents=True, exist_ok=True)
        if fmt == FORMAT_DIRECTORY:
            copy_tree(source_path, destination_dir)
            return destination_dir
        if fmt == FORMAT_FILE:
            destination_dir.mkdir()
            shutil.copy2(source_path, destination_dir / source_path.name)
            return destination_dir
    except OSError as e:
        _remove_tree(destination_dir)
        raise ExtractionFailed(f"Failed to copy {source_path} to {destination_dir}: {e}") from e

    staging = Path(tempfile.mkdtemp(prefix=".extract-", dir=str(destination_dir.parent)))
    try:
        if fmt == FORMAT_ZIP:
            _extract_zip(source_path, staging)
        else:
            _extract_tar(source_path, staging)
        content_root = _hoist_root(staging)
        os.replace(content_root, destination_dir)
    except ExtractionFailed:
        _remove_tree(destination_dir)
        raise
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError, ValueError) as e:
        _remove_tree(destination_dir)
        raise ExtractionFailed(f"Failed to extract {source_path.name}: {e}") from e
    finally:
        _remove_tree(staging)

    logger.debug("Extracted %s (%s) to %s", source_path, fmt, destination_dir)
    return destination_dir


def copy_tree(source_dir: Path, destination_dir: Path, top_level_ignore: Iterable[str] = ()) -> None:
    """Copy a dependency directory, leaving out VCS and tool bookkeeping.

    ``top_level_ignore`` names are skipped only directly below ``source_dir``.
    """
    base_ignore = shutil.ignore_patterns(*COPY_IGNORE_PATTERNS)
    root = os.path.abspath(source_dir)
    skipped = set(top_level_ignore)

    def _ignore(directory, names):
        ignored = set(base_ignore(directory, names))
        if skipped and os.path.abspath(directory) == root:
            ignored.update(name for name in names if name in skipped)
        return ignored

    shutil.copytree(source_dir, destination_dir, symlinks=True, ignore=_ignore)


def _normalized_member_path(name: str) -> str:
    """Normalize an archive member name into a safe POSIX relative path."""
    p = posixpath.normpath(name.replace("\\", "/"))
    if p.startswith("./"):
        p = p[2:]
    if p.startswith("/") or ":" in p.split("/", 1)[0]:
        raise ExtractionFailed(f"Unsafe absolute path in archive entry: {name!r}")
    parts = [part for part in p.split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise ExtractionFailed(f"Unsafe parent traversal in archive entry: {name!r}")
    return "/".join(parts)


def _extract_zip(archive_path: Path, staging: Path) -> None:
    with zipfile.ZipFile(archive_path) as zf:
        members: List[zipfile.ZipInfo] = []
        for info in zf.infolist():
            rel = _normalized_member_path(info.filename)
            if not rel:
                continue
            mode = (info.external_attr >> 16) & 0xFFFF
            if stat.S_IFMT(mode) == stat.S_IFLNK:
                raise ExtractionFailed(f"Symlinks are not allowed in zip archives: {info.filename!r}")
            members.append(info)
        bad_member = zf.testzip()
        if bad_member is not None:
            raise ExtractionFailed(f"Corrupt zip member {bad_member!r} in {archive_path.name}")
        zf.extractall(path=staging, members=members)


def _extract_tar(archive_path: Path, staging: Path) -> None:
    with tarfile.open(archive_path, mode="r:*") as tf:
        members: List[tarfile.TarInfo] = []
        for member in tf.getmembers():
            rel = _normalized_member_path(member.name)
            if not rel:
                continue
            if member.isdev():
                raise ExtractionFailed(f"Device entries are not allowed in archives: {member.name!r}")
            if member.issym() or member.islnk():
                target = member.linkname
                base = posixpath.dirname(rel) if member.issym() else ""
                resolved = posixpath.normpath(posixpath.join(base, target.replace("\\", "/")))
                if target.startswith("/") or resolved == ".." or resolved.startswith("../"):
                    raise ExtractionFailed(f"Link escapes the archive root: {member.name!r} -> {target!r}")
            members.append(member)

        if hasattr(tarfile, "data_filter"):
            tf.extractall(path=staging, members=members, filter="data")
        else:  # pragma: no cover - interpreters without extraction filters
            tf.extractall(path=staging, members=members)


def _hoist_root(staging: Path) -> Path:
    """Return the directory holding the archive content.

    Archives commonly wrap everything in one ``name-version/`` directory;
    that directory becomes the content root.
    """
    entries = list(staging.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    content = staging / ".content"
    content.mkdir()
    for entry in entries:
        shutil.move(str(entry), str(content / entry.name))
    return content


def _remove_tree(path: Optional[Path]) -> None:
    if path is None:
        return
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path, ignore_errors=True)
