"""Kernel Sandbox - run commands inside resource-bounded containers.

Resolves sandbox configuration with secure defaults, builds the container
runtime invocation and removes every started container exactly once, even
when the host process is interrupted.
"""

from sandcastle.domain.errors import (
    ConfigError,
    ContainerRuntimeError,
    PlatformError,
    SandcastleError,
)
from sandcastle.kernel.sandbox.invocation import (
    Invocation,
    RunOptions,
    build_invocation,
    create_container_name,
    dispose_invocation,
    prepare_sandbox,
    redact_runtime_args,
)
from sandcastle.kernel.sandbox.lifecycle import (
    CleanupAction,
    CleanupRegistry,
    HostProcess,
    ProcessLike,
    ensure_process_cleanup_handlers,
    get_cleanup_registry,
    get_host_process,
    register_cleanup,
    unregister_cleanup,
)
from sandcastle.kernel.sandbox.runtime_probe import (
    RuntimeCommandResult,
    image_exists,
    pull_image,
    remove_container_sync,
    run_runtime_command,
)
from sandcastle.kernel.sandbox.sandbox_config import (
    MountSpec,
    NetworkMode,
    ResolvedSandboxConfig,
    ResourceLimits,
    SandboxConfig,
    UserMapping,
    get_host_user_mapping,
    resolve_sandbox_config,
    to_container_command,
)

__all__ = [
    # Config
    "SandboxConfig",
    "ResolvedSandboxConfig",
    "ResourceLimits",
    "UserMapping",
    "MountSpec",
    "NetworkMode",
    "resolve_sandbox_config",
    "get_host_user_mapping",
    "to_container_command",
    # Runtime
    "RuntimeCommandResult",
    "run_runtime_command",
    "image_exists",
    "pull_image",
    "remove_container_sync",
    # Invocation
    "RunOptions",
    "Invocation",
    "prepare_sandbox",
    "build_invocation",
    "dispose_invocation",
    "create_container_name",
    "redact_runtime_args",
    # Lifecycle
    "ProcessLike",
    "HostProcess",
    "CleanupAction",
    "CleanupRegistry",
    "get_cleanup_registry",
    "get_host_process",
    "register_cleanup",
    "unregister_cleanup",
    "ensure_process_cleanup_handlers",
    # Errors
    "SandcastleError",
    "ConfigError",
    "PlatformError",
    "ContainerRuntimeError",
]
