"""Storage helpers."""

from .path_guard import InvalidHostPathError, normalize_path

__all__ = [
    "InvalidHostPathError",
    "normalize_path",
]
