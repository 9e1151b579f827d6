"""Resolution of the system configuration directory."""

from __future__ import annotations

import os

DEFAULT_CONFIG_DIR = "/etc/aistack"


def config_dir() -> str:
    """Return the configuration directory, honouring ``AISTACK_CONFIG_DIR``."""
    override = os.environ.get("AISTACK_CONFIG_DIR", "")
    if override:
        return os.path.abspath(override)
    return DEFAULT_CONFIG_DIR