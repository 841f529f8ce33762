"""Configuration management for profile-vendor."""

import os
import json
from pathlib import Path


DEFAULT_CONFIG = {
    "cache_dir": "~/.pvendor/cache",
    "jobs": 4,
    "timeout": 60,
}


def get_config_dir():
    """Directory holding config.json, overridable with PVENDOR_CONFIG_DIR."""
    return os.path.expanduser(os.environ.get("PVENDOR_CONFIG_DIR", "~/.pvendor"))


def get_config_file():
    return os.path.join(get_config_dir(), "config.json")


def ensure_config_exists():
    """Ensure the configuration directory and file exist."""
    config_dir = get_config_dir()
    config_file = get_config_file()
    if not os.path.exists(config_dir):
        os.makedirs(config_dir)

    if not os.path.exists(config_file):
        with open(config_file, "w") as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)


def get_config():
    """Get the current configuration.

    Missing keys are filled from the defaults. An unreadable file is treated
    as empty rather than aborting the command.

    Returns:
        dict: Current configuration.
    """
    ensure_config_exists()
    try:
        with open(get_config_file(), "r") as f:
            stored = json.load(f)
    except (OSError, json.JSONDecodeError):
        stored = {}
    config = dict(DEFAULT_CONFIG)
    if isinstance(stored, dict):
        config.update(stored)
    return config


def update_config(updates):
    """Update the configuration with new values.

    Args:
        updates (dict): Dictionary of configuration values to update.
    """
    config = get_config()
    config.update(updates)

    with open(get_config_file(), "w") as f:
        json.dump(config, f, indent=2)


def get_cache_dir():
    """Get the default fetch cache directory.

    PVENDOR_CACHE_DIR takes precedence over the configured value.

    Returns:
        Path: Absolute cache directory.
    """
    configured = os.environ.get("PVENDOR_CACHE_DIR") or get_config().get("cache_dir")
    return Path(os.path.expanduser(str(configured or DEFAULT_CONFIG["cache_dir"]))).resolve()


def get_jobs():
    """Get the number of concurrent fetches.

    Returns:
        int: Worker count, at least 1.
    """
    try:
        return max(1, int(get_config().get("jobs", DEFAULT_CONFIG["jobs"])))
    except (TypeError, ValueError):
        return DEFAULT_CONFIG["jobs"]


def get_timeout():
    """Get the network timeout in seconds.

    Returns:
        int: Timeout applied to HTTP requests and git transfers.
    """
    try:
        return max(1, int(get_config().get("timeout", DEFAULT_CONFIG["timeout"])))
    except (TypeError, ValueError):
        return DEFAULT_CONFIG["timeout"]
