"""Common utilities for deployctl."""

import shutil
import subprocess
from pathlib import Path
from typing import Any


def get_state_dir(override: str | Path | None = None) -> Path:
    """Get the deployctl state directory.

    Args:
        override: Explicit directory, defaults to ~/.deployctl

    Returns:
        Existing directory path
    """
    raw = override or "~/.deployctl"
    state_dir = Path(raw).expanduser()
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def normalize_ref(ref: str) -> str:
    """Strip git ref prefixes so ``refs/heads/main`` becomes ``main``."""
    ref = ref.strip()
    for prefix in ("refs/heads/", "refs/tags/", "heads/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def get_git_revision(cwd: str | Path | None = None) -> str | None:
    """Return the short HEAD revision of the git checkout at ``cwd``.

    Returns None when git is unavailable or ``cwd`` is not a checkout.
    """
    if not shutil.which("git"):
        return None
    if cwd is not None and not Path(cwd).is_dir():
        return None

    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=cwd,
            capture_output=True,
            text=True,
        )
    except OSError:
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def backoff_delay(
    attempt: int,
    initial: float,
    factor: float,
    maximum: float,
) -> float:
    """Delay before retry number ``attempt`` (0-based), capped at ``maximum``."""
    return min(initial * (factor**attempt), maximum)


def merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge on top

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def truncate_string(s: str, max_length: int = 50, suffix: str = "...") -> str:
    """Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix
