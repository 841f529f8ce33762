"""Version lookup for profile-vendor."""

import re
from importlib import metadata
from pathlib import Path

DISTRIBUTION_NAME = "profile-vendor"

_VERSION_PATTERN = re.compile(r'^version\s*=\s*["\']([^"\']+)["\']', re.MULTILINE)


def get_version() -> str:
    """
    Get the installed version of profile-vendor.

    Falls back to the ``version`` line of pyproject.toml when running from a
    source checkout that was never installed.

    Returns:
        str: Version string, or "unknown"
    """
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        pass

    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    try:
        content = pyproject_path.read_text(encoding="utf-8")
    except OSError:
        return "unknown"
    match = _VERSION_PATTERN.search(content)
    return match.group(1) if match else "unknown"


__version__ = get_version()
