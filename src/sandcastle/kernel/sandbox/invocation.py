"""Invocation - builds the runtime ``run`` argument vector for one sandboxed command.

``build_invocation`` does no I/O: it only assembles arguments in list form
(never a shell string), generates a container name and registers the
container's cleanup action. ``prepare_sandbox`` is the async entry point that
resolves a config and makes sure the image is present first.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import structlog

from sandcastle.config import settings
from sandcastle.domain.errors import ConfigError
from sandcastle.infrastructure.storage.path_guard import normalize_path
from sandcastle.kernel.sandbox.lifecycle import (
    CleanupAction,
    CleanupRegistry,
    ProcessLike,
    get_cleanup_registry,
)
from sandcastle.kernel.sandbox.runtime_probe import (
    image_exists,
    pull_image,
    remove_container_sync,
)
from sandcastle.kernel.sandbox.sandbox_config import (
    ResolvedSandboxConfig,
    SandboxConfig,
    resolve_sandbox_config,
    to_container_command,
)

logger = structlog.get_logger()

ENV_FLAG = "--env"
REDACTED_PLACEHOLDER = "<redacted>"

LogCallback = Callable[[str], None]


@dataclass(frozen=True)
class RunOptions:
    """Per-run options.

    Attributes:
        cwd: host working directory, mounted into the container
        command: command to run in the container (host paths are reduced
            to their base name)
        args: command arguments, passed verbatim
        env: environment to pass through; non-str values are dropped, so
            ``os.environ``-like maps can be handed over as-is
    """
    cwd: Optional[str]
    command: str
    args: Sequence[str] = ()
    env: Mapping[str, Optional[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class Invocation:
    """Runtime invocation for one sandboxed run.

    Execute ``[command, *args]``; log ``redacted_args`` only. Hand it to
    ``dispose_invocation`` exactly once when the run is over.
    """
    command: str
    args: List[str]
    container_name: str
    redacted_args: List[str]
    cleanup: CleanupAction


def create_container_name(prefix: str) -> str:
    """Return ``<prefix>-<16 hex chars>``."""
    return f"{prefix}-{secrets.token_hex(8)}"


def redact_runtime_args(args: Sequence[str], *, end: Optional[int] = None) -> List[str]:
    """Copy ``args`` with every ``--env KEY=VALUE`` value replaced by a placeholder.

    Only ``args[:end]`` is scanned (the whole vector if ``end`` is None), so
    the command and its arguments after the image are never touched. Keys are
    kept so logs stay diagnosable; no other token changes.
    """
    stop = len(args) if end is None else min(end, len(args))
    redacted: List[str] = []
    index = 0
    while index < stop:
        arg = args[index]
        redacted.append(arg)
        if arg == ENV_FLAG and index + 1 < stop:
            key = args[index + 1].split("=", 1)[0]
            redacted.append(f"{key}={REDACTED_PLACEHOLDER}")
            index += 2
            continue
        index += 1
    redacted.extend(args[stop:])
    return redacted


def _format_cpus(cpus: float) -> str:
    # Whole numbers without ".0", anything else as its shortest exact repr.
    if float(cpus).is_integer():
        return str(int(cpus))
    return repr(float(cpus))


def _is_safe_env_key(key: object) -> bool:
    return isinstance(key, str) and bool(key) and "=" not in key and "\x00" not in key


def _merge_env(run_env: Mapping[str, Optional[str]], sandbox_env: Mapping[str, str]) -> Dict[str, str]:
    merged = {key: value for key, value in run_env.items() if isinstance(value, str)}
    merged.update(sandbox_env)
    return merged


def build_invocation(
    sandbox: ResolvedSandboxConfig,
    options: RunOptions,
    *,
    registry: Optional[CleanupRegistry] = None,
) -> Invocation:
    """Build the runtime ``run`` invocation for a command.

    Args:
        sandbox: resolved sandbox configuration
        options: per-run options
        registry: cleanup registry, the process-wide one if None

    Returns:
        Invocation whose cleanup action is already registered.

    Raises:
        ConfigError: no host directory to mount, or empty command
    """
    registry = registry or get_cleanup_registry()

    host_dir = options.cwd or sandbox.mount.host_path
    if not host_dir:
        raise ConfigError("Sandbox run needs a host working directory (RunOptions.cwd or mount.host_path)")
    container_command = to_container_command(options.command)

    container_name = create_container_name(sandbox.container_name_prefix)

    mount_host_path = str(normalize_path(host_dir))
    mount_mode = "ro" if sandbox.mount.read_only else "rw"
    volume_arg = f"{mount_host_path}:{sandbox.mount.container_path}:{mount_mode}"

    runtime_args: List[str] = [
        "run",
        "--rm",
        "--name",
        container_name,
        "--user",
        f"{sandbox.user.uid}:{sandbox.user.gid}",
        "--memory",
        sandbox.resources.memory,
        "--cpus",
        _format_cpus(sandbox.resources.cpus),
        "--pids-limit",
        str(sandbox.resources.pids_limit),
        "--network",
        sandbox.network.value,
        "--volume",
        volume_arg,
        "--workdir",
        sandbox.workdir,
    ]

    for key, value in _merge_env(options.env, sandbox.env).items():
        # A key with "=" or NUL would let a value smuggle in another variable.
        if not _is_safe_env_key(key):
            continue
        runtime_args.extend([ENV_FLAG, f"{key}={value}"])

    image_index = len(runtime_args)
    runtime_args.append(sandbox.image)
    runtime_args.append(container_command)
    runtime_args.extend(options.args)

    runtime = sandbox.runtime
    cleanup = CleanupAction(
        lambda: remove_container_sync(container_name, runtime=runtime),
        label=container_name,
    )
    registry.register(cleanup)

    invocation = Invocation(
        command=runtime,
        args=runtime_args,
        container_name=container_name,
        redacted_args=redact_runtime_args(runtime_args, end=image_index),
        cleanup=cleanup,
    )
    logger.debug(
        "sandbox_invocation_built",
        container=container_name,
        args=invocation.redacted_args,
    )
    return invocation


def dispose_invocation(
    invocation: Invocation,
    *,
    registry: Optional[CleanupRegistry] = None,
) -> None:
    """Unregister the invocation's cleanup action and run it.

    Removal is best-effort; a second call, or a call after a signal-triggered
    cleanup pass, does nothing.
    """
    registry = registry or get_cleanup_registry()
    registry.unregister(invocation.cleanup)
    invocation.cleanup()
    logger.debug("sandbox_invocation_disposed", container=invocation.container_name)


async def prepare_sandbox(
    config: SandboxConfig,
    log: Optional[LogCallback] = None,
    *,
    registry: Optional[CleanupRegistry] = None,
    process: Optional[ProcessLike] = None,
) -> ResolvedSandboxConfig:
    """Resolve ``config`` and make sure its image is available locally.

    Configures logging from ``settings`` (once per process), installs the
    exit/signal cleanup handlers (idempotent), checks the image and pulls it
    if missing.

    Args:
        config: sandbox configuration
        log: optional callback receiving human-readable progress lines
        registry: cleanup registry, the process-wide one if None
        process: handler target, the running interpreter if None

    Returns:
        Resolved sandbox configuration

    Raises:
        ConfigError / PlatformError: before any subprocess is started
        ContainerRuntimeError: image check timed out, or pull failed
    """
    resolved = resolve_sandbox_config(config)

    settings.setup_logging()
    (registry or get_cleanup_registry()).ensure_handlers(process)

    def emit(message: str) -> None:
        if log is not None:
            log(message)

    emit(f"[Sandbox] Checking {resolved.runtime} image: {resolved.image}")
    exists = await image_exists(resolved.image, resolved.preflight_timeout, runtime=resolved.runtime)

    if not exists:
        emit(f"[Sandbox] Image missing; pulling: {resolved.image}")

        def on_progress(chunk: str) -> None:
            for line in chunk.splitlines():
                cleaned = line.strip()
                if cleaned:
                    emit(f"[Sandbox] {cleaned}")

        await pull_image(
            resolved.image,
            resolved.pull_timeout,
            on_progress,
            runtime=resolved.runtime,
        )

    logger.info(
        "sandbox_prepared",
        image=resolved.image,
        network=resolved.network.value,
        pulled=not exists,
    )
    return resolved
