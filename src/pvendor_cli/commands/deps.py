"""Vendored dependency inspection commands."""

import shutil
import sys

import click

from ..errors import LockfileCorrupt
from ..deps.lockfile import LockEntry, read_lockfile
from ..models.profile import LOCKFILE_NAME, VENDOR_DIR_NAME
from ..models.source import normalize_path
from ..utils.console import (
    _create_deps_table, _create_tree, _print_renderable,
    _rich_error, _rich_info, _rich_success, _rich_warning,
)


def _load_lock(profile):
    """Read the profile's lockfile, or report and exit when it is unusable."""
    root = normalize_path(profile)
    lock_path = root / LOCKFILE_NAME
    if not lock_path.exists():
        _rich_info(f"No {LOCKFILE_NAME} found in {root}", symbol="info")
        _rich_info("Run 'pvendor vendor' to vendor the profile's dependencies")
        return root, None
    try:
        return root, read_lockfile(lock_path)
    except LockfileCorrupt as e:
        _rich_error(f"Error reading {lock_path}: {e}", symbol="error")
        sys.exit(1)


def _short(value, length=12):
    if not value:
        return None
    if value.startswith("sha256:"):
        return value[:7 + length]
    return value[:length]


@click.group(help="Inspect and clean vendored profile dependencies")
def deps():
    """Vendored dependency commands."""
    pass


@deps.command(name="list", help="List locked dependencies")
@click.argument('profile', required=False, default=".")
def list_packages(profile):
    """Show every dependency recorded in the lockfile, nested ones namespaced by parent."""
    root, lock = _load_lock(profile)
    if lock is None:
        return
    if not lock.entries:
        _rich_info("Profile declares no dependencies", symbol="info")
        return

    rows = []
    for qualified, entry in lock.walk():
        rows.append((
            qualified,
            entry.descriptor.kind.value,
            entry.descriptor.get_display_name(),
            _short(entry.resolved_ref) or _short(entry.content_digest),
        ))
    _print_renderable(_create_deps_table(rows, title=f"Vendored Dependencies ({root.name})"))


@deps.command(help="Show the locked dependency tree")
@click.argument('profile', required=False, default=".")
def tree(profile):
    """Display the lockfile's nested dependencies as a tree."""
    root, lock = _load_lock(profile)
    if lock is None:
        return

    root_tree = _create_tree(f"[bold cyan]{root.name}[/bold cyan]")

    def _add(branch, entry: LockEntry):
        label = f"[bold]{entry.name}[/bold] [dim]{entry.descriptor.kind.value}:{entry.descriptor.get_display_name()}"
        if entry.resolved_ref:
            label += f" @ {_short(entry.resolved_ref)}"
        label += "[/dim]"
        node = branch.add(label)
        for child in entry.dependencies:
            _add(node, child)

    for entry in lock.entries:
        _add(root_tree, entry)
    if not lock.entries:
        root_tree.add("[dim]no dependencies[/dim]")
    _print_renderable(root_tree)


@deps.command(help="Remove the vendor directory and lockfile")
@click.argument('profile', required=False, default=".")
@click.option('--yes', '-y', is_flag=True, help="Do not ask for confirmation")
def clean(profile, yes):
    """Remove vendor/ and inspec.lock from a profile."""
    root = normalize_path(profile)
    vendor_dir = root / VENDOR_DIR_NAME
    lock_path = root / LOCKFILE_NAME

    if not vendor_dir.exists() and not lock_path.exists():
        _rich_info("No vendored dependencies found", symbol="info")
        return

    if not yes and not click.confirm(f"Remove {vendor_dir} and {lock_path}?", default=False):
        _rich_warning("Aborted", symbol="warning")
        return

    try:
        if vendor_dir.exists():
            shutil.rmtree(vendor_dir)
        if lock_path.exists():
            lock_path.unlink()
    except OSError as e:
        _rich_error(f"Error removing vendored dependencies: {e}", symbol="error")
        sys.exit(1)
    _rich_success(f"Removed vendored dependencies from {root}", symbol="success")
