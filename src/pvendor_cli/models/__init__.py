"""Models for profile-vendor data structures."""

from .source import (
    SourceKind,
    SourceDescriptor,
    canonicalize_url,
    normalize_path,
)
from .profile import (
    ProfileMetadata,
    DependencyDeclaration,
    METADATA_FILE,
    LOCKFILE_NAME,
    VENDOR_DIR_NAME,
)

__all__ = [
    "SourceKind",
    "SourceDescriptor",
    "canonicalize_url",
    "normalize_path",
    "ProfileMetadata",
    "DependencyDeclaration",
    "METADATA_FILE",
    "LOCKFILE_NAME",
    "VENDOR_DIR_NAME",
]
