"""Domain errors for sandcastle."""

from .errors import ConfigError, ContainerRuntimeError, PlatformError, SandcastleError

__all__ = [
    "SandcastleError",
    "ConfigError",
    "PlatformError",
    "ContainerRuntimeError",
]
