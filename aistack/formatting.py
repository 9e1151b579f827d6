"""Human-readable formatting and lookup of state and version-lock files."""

from __future__ import annotations

import os
import sys
from pathlib import Path

DEFAULT_STATE_DIR = "/var/lib/aistack"
VERSIONS_LOCK_NAME = "versions.lock"
SYSTEM_VERSIONS_LOCK = os.path.join("/etc/aistack", VERSIONS_LOCK_NAME)

_UNIT = 1024
_PREFIXES = "KMGTPE"


def format_bytes(size: int) -> str:
    """Render a byte count with binary prefixes, such as ``1.5 KiB``."""
    size = int(size)
    if size < _UNIT:
        return f"{size} B"
    div, exp = _UNIT, 0
    n = size // _UNIT
    while n >= _UNIT:
        div *= _UNIT
        exp += 1
        n //= _UNIT
    return f"{size / div:.1f} {_PREFIXES[exp]}iB"


def _round_half_away(value: float) -> int:
    magnitude = int(abs(value) + 0.5)
    return -magnitude if value < 0 else magnitude


def _trunc_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // denominator
    return quotient if numerator >= 0 else -quotient


def format_duration(seconds: float) -> str:
    """Render a duration in seconds as ``1h 2m 3s``, ``2m 3s`` or ``3s``."""
    total = _round_half_away(seconds)
    hours = _trunc_div(total, 3600)
    total -= hours * 3600
    minutes = _trunc_div(total, 60)
    secs = total - minutes * 60

    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def state_dir() -> str:
    """Return the state directory, honouring ``AISTACK_STATE_DIR``."""
    return os.environ.get("AISTACK_STATE_DIR", "") or DEFAULT_STATE_DIR


def _executable_dir() -> Path | None:
    program = sys.argv[0] if sys.argv else ""
    if not program:
        return None
    try:
        return Path(os.path.realpath(program)).parent
    except OSError:
        return None


def locate_versions_lock_file() -> str | None:
    """Find ``versions.lock``: environment, config dir, program dir, then the working dir."""
    env_path = os.environ.get("AISTACK_VERSIONS_LOCK", "").strip()
    if env_path:
        candidate = os.path.abspath(env_path)
        if os.path.exists(candidate):
            return candidate

    if os.path.exists(SYSTEM_VERSIONS_LOCK):
        return SYSTEM_VERSIONS_LOCK

    exe_dir = _executable_dir()
    if exe_dir is not None:
        for candidate in (
            exe_dir / VERSIONS_LOCK_NAME,
            exe_dir / ".." / "share" / "aistack" / VERSIONS_LOCK_NAME,
        ):
            absolute = os.path.abspath(candidate)
            if os.path.exists(absolute):
                return absolute

    try:
        cwd = os.getcwd()
    except OSError:
        return None
    candidate = os.path.join(cwd, VERSIONS_LOCK_NAME)
    if os.path.exists(candidate):
        return candidate
    return None


def read_version_lock_entries(path: str | os.PathLike[str]) -> list[str]:
    """Return the stripped, non-empty, non-comment lines of a lock file."""
    text = Path(os.path.normpath(path)).read_text(encoding="utf-8")
    entries = []
    for line in text.split("\n"):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        entries.append(line)
    return entries