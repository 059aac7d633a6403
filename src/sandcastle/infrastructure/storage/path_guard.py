"""Host path normalisation for volume mounts."""

from __future__ import annotations

import os
from pathlib import Path

from sandcastle.domain.errors import ConfigError


class InvalidHostPathError(ConfigError):
    """Raised when a host path cannot be used as a mount source."""


def normalize_path(path: str | Path) -> Path:
    """Expand ``~`` and env vars and return an absolute path."""
    raw = str(path or "").strip()
    if not raw:
        raise InvalidHostPathError("path is required")
    if "\x00" in raw:
        raise InvalidHostPathError(f"path contains NUL: {raw!r}")
    expanded = os.path.expandvars(os.path.expanduser(raw))
    return Path(expanded).resolve(strict=False)
