"""Lockfile parser and serializer."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import LockfileCorrupt
from ..models.source import SourceDescriptor, SourceKind

LOCKFILE_VERSION = 1


@dataclass
class LockEntry:
    """One resolved dependency, with its own nested dependencies."""
    name: str
    descriptor: SourceDescriptor
    content_digest: str
    resolved_ref: Optional[str] = None
    dependencies: List["LockEntry"] = field(default_factory=list)

    def walk(self, prefix: str = ""):
        """Yield ``(qualified_name, entry)`` for this entry and everything below it."""
        qualified = f"{prefix}/{self.name}" if prefix else self.name
        yield qualified, self
        for child in self.dependencies:
            yield from child.walk(qualified)


@dataclass
class Lockfile:
    """Ordered collection of top-level lock entries."""
    entries: List[LockEntry] = field(default_factory=list)
    version: int = LOCKFILE_VERSION

    def get(self, name: str) -> Optional[LockEntry]:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def names(self) -> List[str]:
        return [entry.name for entry in self.entries]

    def walk(self):
        """Pre-order walk over every entry, yielding qualified names."""
        for entry in self.entries:
            yield from entry.walk()

    def pins(self) -> Dict[str, str]:
        """Map descriptor keys to locked commits for every git entry."""
        pins: Dict[str, str] = {}
        for _, entry in self.walk():
            if entry.descriptor.kind == SourceKind.GIT and entry.resolved_ref:
                pins.setdefault(entry.descriptor.key, entry.resolved_ref)
        return pins


def serialize_lockfile(lockfile: Lockfile, base_dir: Path) -> str:
    """Render a lockfile as YAML with a stable field order.

    Args:
        lockfile: Entries to write
        base_dir: Directory the lockfile lives in; local locators are
            written relative to it.
    """
    payload = {
        "lockfile_version": lockfile.version,
        "depends": _entries_to_dict(lockfile.entries, Path(base_dir)),
    }
    return yaml.safe_dump(payload, sort_keys=False, default_flow_style=False, allow_unicode=True)


def parse_lockfile(raw: str, base_dir: Path) -> Lockfile:
    """Parse lockfile YAML.

    Raises:
        LockfileCorrupt: If the content is not a valid version-1 lockfile
    """
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise LockfileCorrupt(f"Invalid lockfile YAML: {exc}") from exc

    if not isinstance(payload, dict):
        raise LockfileCorrupt("Invalid lockfile payload type.")

    version = payload.get("lockfile_version")
    if version != LOCKFILE_VERSION:
        raise LockfileCorrupt(f"Unsupported lockfile version: {version!r}")

    depends = payload.get("depends")
    if depends is None:
        depends = {}
    return Lockfile(entries=_entries_from_dict(depends, Path(base_dir)), version=version)


def read_lockfile(path: Path) -> Lockfile:
    """Read and parse a lockfile from disk.

    Raises:
        LockfileCorrupt: If the file cannot be read or parsed
    """
    lock_path = Path(path)
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LockfileCorrupt(f"Cannot read lockfile {lock_path}: {exc}") from exc
    return parse_lockfile(raw, lock_path.parent.resolve())


def write_lockfile(lockfile: Lockfile, path: Path) -> Path:
    """Write a lockfile, creating parent directories as needed."""
    lock_path = Path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(serialize_lockfile(lockfile, lock_path.parent.resolve()), encoding="utf-8")
    return lock_path


def _entries_to_dict(entries: List[LockEntry], base_dir: Path) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for entry in entries:
        source: Dict[str, Any] = {
            "kind": entry.descriptor.kind.value,
            "locator": _relative_locator(entry.descriptor, base_dir),
        }
        if entry.descriptor.ref:
            source["ref"] = entry.descriptor.ref
        if entry.descriptor.options:
            source["options"] = entry.descriptor.options_dict()

        item: Dict[str, Any] = {"source": source}
        if entry.resolved_ref:
            item["resolved_ref"] = entry.resolved_ref
        item["content_digest"] = entry.content_digest
        if entry.dependencies:
            item["dependencies"] = _entries_to_dict(entry.dependencies, base_dir)
        result[entry.name] = item
    return result


def _entries_from_dict(value: Any, base_dir: Path) -> List[LockEntry]:
    if not isinstance(value, dict):
        raise LockfileCorrupt("Invalid lockfile `depends` value.")
    entries = []
    for name, item in value.items():
        if not isinstance(name, str) or not name:
            raise LockfileCorrupt(f"Invalid lockfile dependency name: {name!r}")
        if not isinstance(item, dict):
            raise LockfileCorrupt(f"Invalid lockfile entry for `{name}`.", dependency=name)
        source = item.get("source")
        if not isinstance(source, dict):
            raise LockfileCorrupt(f"Invalid lockfile `source` for `{name}`.", dependency=name)

        try:
            kind = SourceKind(_required_str(source, "kind", name))
        except ValueError as exc:
            raise LockfileCorrupt(f"Unknown source kind for `{name}`.", dependency=name) from exc
        locator = _absolute_locator(kind, _required_str(source, "locator", name), base_dir)
        ref = _optional_str(source, "ref", name)
        options = source.get("options") or {}
        if not isinstance(options, dict):
            raise LockfileCorrupt(f"Invalid lockfile `options` for `{name}`.", dependency=name)

        descriptor = SourceDescriptor(
            kind=kind,
            locator=locator,
            ref=ref,
            options=tuple(sorted((str(k), str(v)) for k, v in options.items())),
        )
        nested = item.get("dependencies")
        entries.append(LockEntry(
            name=name,
            descriptor=descriptor,
            content_digest=_required_str(item, "content_digest", name),
            resolved_ref=_optional_str(item, "resolved_ref", name),
            dependencies=_entries_from_dict(nested, base_dir) if nested else [],
        ))
    return entries


def _is_path_locator(kind: SourceKind, locator: str) -> bool:
    if kind == SourceKind.LOCAL:
        return True
    return kind == SourceKind.GIT and "://" not in locator and not locator.startswith("git@")


def _relative_locator(descriptor: SourceDescriptor, base_dir: Path) -> str:
    if not _is_path_locator(descriptor.kind, descriptor.locator):
        return descriptor.locator
    try:
        return Path(os.path.relpath(descriptor.locator, str(base_dir))).as_posix()
    except ValueError:
        # Different drive on Windows
        return descriptor.locator


def _absolute_locator(kind: SourceKind, locator: str, base_dir: Path) -> str:
    if not _is_path_locator(kind, locator):
        return locator
    return str((base_dir / locator).resolve())


def _required_str(payload: Dict[str, Any], key: str, name: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise LockfileCorrupt(f"Invalid lockfile `{key}` value for `{name}`.", dependency=name)
    return value


def _optional_str(payload: Dict[str, Any], key: str, name: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise LockfileCorrupt(f"Invalid lockfile `{key}` value for `{name}`.", dependency=name)
    return value
