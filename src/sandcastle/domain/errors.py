"""Domain errors."""

from __future__ import annotations

from typing import Optional


class SandcastleError(Exception):
    """Base error."""
    pass


class ConfigError(SandcastleError, ValueError):
    """Sandbox configuration is invalid or insecure."""
    pass


class PlatformError(SandcastleError):
    """Host cannot provide a required security property (e.g. non-root UID/GID)."""
    pass


class ContainerRuntimeError(SandcastleError):
    """Container runtime command failed, exited non-zero or timed out."""

    def __init__(
        self,
        message: str,
        *,
        image: Optional[str] = None,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.image = image
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
