"""Helper utility functions for profile-vendor."""

import hashlib
import os
from pathlib import Path

DIGEST_PREFIX = "sha256:"

# Excluded from tree digests
DIGEST_IGNORE = (".git", ".pvendor-cache.json")


def sha256_file(path):
    """Hash a file's bytes.

    Args:
        path (Path): File to hash.

    Returns:
        str: Hex digest.
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def compute_digest(path):
    """Compute the content digest of a payload.

    Files hash their bytes. Directories hash every relative POSIX path in
    sorted order together with file bytes and symlink targets, so the digest
    does not depend on filesystem iteration order or location.

    Args:
        path (Path): File or directory.

    Returns:
        str: Digest in ``sha256:<hex>`` form.
    """
    path = Path(path)
    if not path.is_dir():
        return DIGEST_PREFIX + sha256_file(path)

    digest = hashlib.sha256()
    entries = []
    for dirpath, dirnames, filenames in os.walk(path):
        dirnames[:] = sorted(d for d in dirnames if d not in DIGEST_IGNORE)
        for name in dirnames + filenames:
            if name in DIGEST_IGNORE:
                continue
            entries.append(Path(dirpath) / name)

    for entry in sorted(entries, key=lambda p: p.relative_to(path).as_posix()):
        rel = entry.relative_to(path).as_posix()
        if entry.is_symlink():
            digest.update(b"L\0" + rel.encode("utf-8") + b"\0" + os.readlink(entry).encode("utf-8") + b"\0")
        elif entry.is_dir():
            digest.update(b"D\0" + rel.encode("utf-8") + b"\0")
        else:
            digest.update(b"F\0" + rel.encode("utf-8") + b"\0" + sha256_file(entry).encode("ascii") + b"\0")
    return DIGEST_PREFIX + digest.hexdigest()
