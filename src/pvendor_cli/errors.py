"""Error kinds raised while resolving, fetching and vendoring dependencies."""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models.source import SourceDescriptor


class VendorError(Exception):
    """Base class for every vendoring failure.

    Carries the dependency name and source descriptor that triggered the
    failure so callers can report them without parsing the message.
    """

    def __init__(self, message: str, dependency: Optional[str] = None,
                 descriptor: Optional["SourceDescriptor"] = None):
        super().__init__(message)
        self.message = message
        self.dependency = dependency
        self.descriptor = descriptor

    def with_context(self, dependency: Optional[str] = None,
                     descriptor: Optional["SourceDescriptor"] = None) -> "VendorError":
        """Fill in missing dependency context and return self for re-raising."""
        if self.dependency is None and dependency is not None:
            self.dependency = dependency
        if self.descriptor is None and descriptor is not None:
            self.descriptor = descriptor
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.dependency:
            parts.append(f"dependency: {self.dependency}")
        if self.descriptor is not None:
            parts.append(f"source: {self.descriptor}")
        if len(parts) == 1:
            return self.message
        return f"{parts[0]} ({'; '.join(parts[1:])})"


class CyclicDependency(VendorError):
    """A dependency is reachable from itself."""

    def __init__(self, cycle: List[str], dependency: Optional[str] = None,
                 descriptor: Optional["SourceDescriptor"] = None):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(self.cycle)}",
            dependency=dependency,
            descriptor=descriptor,
        )


class UnresolvableSource(VendorError):
    """The source does not exist (missing path, unknown git ref, bad locator)."""


class FetchFailed(VendorError):
    """Transferring the source failed (network, transport, bad status, timeout)."""


class UnsupportedArchive(VendorError):
    """The payload is compressed in a format the extractor does not handle."""


class ExtractionFailed(VendorError):
    """The archive is corrupt, unsafe, or could not be written out."""


class LockfileCorrupt(VendorError):
    """The lockfile exists but cannot be parsed."""


class StaleLockfile(VendorError):
    """The lockfile no longer matches the profile's declared dependencies."""


class OutputDirectoryInvalid(VendorError):
    """The profile root cannot hold a vendor directory and lockfile."""


class InvalidProfile(VendorError):
    """The profile metadata file is missing or malformed."""
