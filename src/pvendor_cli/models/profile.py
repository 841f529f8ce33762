"""Profile metadata data models and parsing logic."""

import re
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import InvalidProfile, UnresolvableSource
from .source import SourceDescriptor

METADATA_FILE = "inspec.yml"
LOCKFILE_NAME = "inspec.lock"
VENDOR_DIR_NAME = "vendor"

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar", ".zip")

# Mutually exclusive ways of naming a git revision in a declaration
GIT_REF_KEYS = ("branch", "tag", "commit", "ref")

SOURCE_KEYS = ("path", "git", "url")
UNSUPPORTED_SOURCE_KEYS = ("supermarket", "compliance")


def strip_archive_suffix(name: str) -> str:
    """Strip a known archive suffix from a file name."""
    lowered = name.lower()
    for suffix in ARCHIVE_SUFFIXES:
        if lowered.endswith(suffix):
            return name[: -len(suffix)]
    return name


def _default_dependency_name(source_key: str, value: str) -> str:
    """Derive a dependency name from its source when none is declared."""
    if source_key == "url":
        tail = urllib.parse.urlsplit(value).path.rstrip("/").split("/")[-1]
    else:
        tail = value.replace("\\", "/").rstrip("/").split("/")[-1]
        if source_key == "git" and ":" in tail:
            # scp-like form: git@host:owner/repo.git
            tail = tail.split(":")[-1]
    if source_key == "git" and tail.endswith(".git"):
        tail = tail[:-4]
    name = strip_archive_suffix(tail)
    if not name:
        raise UnresolvableSource(f"Cannot derive a dependency name from '{value}'")
    return name


@dataclass
class DependencyDeclaration:
    """One entry of a profile's ``depends`` list."""
    name: str
    descriptor: SourceDescriptor

    @classmethod
    def parse(cls, data: Any, base_dir: Path) -> "DependencyDeclaration":
        """Parse a ``depends`` item into a declaration.

        Supports formats:
        - {name: x, path: ../x}
        - {name: x, path: ./x-1.0.0.tar.gz}
        - {name: x, git: https://host/x.git, branch: main}
        - {name: x, git: https://host/x.git, commit: <sha>, relative_path: sub}
        - {name: x, url: https://host/x.tar.gz, sha256: <hex>}

        Args:
            data: The raw YAML mapping
            base_dir: Directory of the declaring profile

        Returns:
            DependencyDeclaration: Parsed declaration with a normalized descriptor

        Raises:
            InvalidProfile: If the item is not a mapping or names several sources
            UnresolvableSource: If no supported source is declared
        """
        if not isinstance(data, dict):
            raise InvalidProfile(f"Dependency entries must be mappings, got {type(data).__name__}")

        declared = [key for key in SOURCE_KEYS if data.get(key)]
        unsupported = [key for key in UNSUPPORTED_SOURCE_KEYS if data.get(key)]
        name = data.get("name")
        if name is not None and not isinstance(name, str):
            raise InvalidProfile(f"Dependency name must be a string, got {name!r}")

        if unsupported and not declared:
            raise UnresolvableSource(
                f"Unsupported dependency source '{unsupported[0]}'",
                dependency=name,
            )
        if not declared:
            raise UnresolvableSource(
                "Dependency does not declare a source (expected one of: path, git, url)",
                dependency=name,
            )
        if len(declared) > 1:
            raise InvalidProfile(
                f"Dependency declares more than one source: {', '.join(declared)}",
                dependency=name,
            )

        source_key = declared[0]
        value = str(data[source_key])
        if not name:
            name = _default_dependency_name(source_key, value)
        _validate_name(name)

        if source_key == "path":
            descriptor = SourceDescriptor.local(value, base_dir)
        elif source_key == "git":
            refs = [key for key in GIT_REF_KEYS if data.get(key)]
            if len(refs) > 1:
                raise InvalidProfile(
                    f"Git dependency declares more than one ref: {', '.join(refs)}",
                    dependency=name,
                )
            ref = str(data[refs[0]]) if refs else None
            options = {}
            if data.get("relative_path"):
                options["relative_path"] = str(data["relative_path"])
            descriptor = SourceDescriptor.git(value, ref=ref, options=options, base_dir=base_dir)
        else:
            options = {}
            if data.get("sha256"):
                options["sha256"] = str(data["sha256"]).lower()
            descriptor = SourceDescriptor.archive(value, options=options)

        return cls(name=name, descriptor=descriptor)


def _validate_name(name: str) -> None:
    # Names become directory names under vendor/
    if name in (".", "..") or not re.match(r'^[A-Za-z0-9._@+-][A-Za-z0-9._@+ -]*$', name):
        raise InvalidProfile(f"Invalid dependency name: {name!r}", dependency=name)


@dataclass
class ProfileMetadata:
    """Represents a profile's metadata file."""
    name: str
    version: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    depends: List[DependencyDeclaration] = field(default_factory=list)
    profile_path: Optional[Path] = None

    @classmethod
    def from_inspec_yml(cls, metadata_path: Path) -> "ProfileMetadata":
        """Load profile metadata from an inspec.yml file.

        Args:
            metadata_path: Path to the inspec.yml file

        Returns:
            ProfileMetadata: Loaded metadata with parsed dependency declarations

        Raises:
            InvalidProfile: If the file is missing, unparseable, or lacks a name
        """
        if not metadata_path.exists():
            raise InvalidProfile(f"{METADATA_FILE} not found: {metadata_path}")

        try:
            with open(metadata_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidProfile(f"Invalid YAML format in {metadata_path}: {e}") from e
        except OSError as e:
            raise InvalidProfile(f"Cannot read {metadata_path}: {e}") from e

        if not isinstance(data, dict):
            raise InvalidProfile(f"{METADATA_FILE} must contain a YAML object, got {type(data).__name__}")

        if not data.get('name'):
            raise InvalidProfile(f"Missing required field 'name' in {metadata_path}")

        base_dir = metadata_path.parent.resolve()
        raw_depends = data.get('depends') or []
        if not isinstance(raw_depends, list):
            raise InvalidProfile(f"'depends' must be a list in {metadata_path}")

        depends = [DependencyDeclaration.parse(item, base_dir) for item in raw_depends]

        seen: Dict[str, int] = {}
        for declaration in depends:
            seen[declaration.name] = seen.get(declaration.name, 0) + 1
        duplicates = sorted(name for name, count in seen.items() if count > 1)
        if duplicates:
            raise InvalidProfile(
                f"Duplicate dependency names in {metadata_path}: {', '.join(duplicates)}"
            )

        version = data.get('version')
        return cls(
            name=str(data['name']),
            version=str(version) if version is not None else None,
            title=data.get('title'),
            summary=data.get('summary'),
            depends=depends,
            profile_path=base_dir,
        )

    @classmethod
    def load_optional(cls, directory: Path) -> Optional["ProfileMetadata"]:
        """Load metadata from a directory, or None when it has no metadata file."""
        metadata_path = directory / METADATA_FILE
        if not metadata_path.is_file():
            return None
        return cls.from_inspec_yml(metadata_path)

    def has_dependencies(self) -> bool:
        """Check if this profile declares any dependencies."""
        return bool(self.depends)

    def get_dependency_names(self) -> List[str]:
        """Get declared dependency names in declaration order."""
        return [declaration.name for declaration in self.depends]
