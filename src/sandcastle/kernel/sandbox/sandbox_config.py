"""Sandbox Config - declarative sandbox configuration and its resolver.

Turns a partially-specified ``SandboxConfig`` into a ``ResolvedSandboxConfig``
with every field defaulted and validated. The resolver refuses insecure input
instead of degrading it:

- containers never run as root (uid/gid must be > 0)
- network defaults to ``none``
- memory, CPU and process count are always capped
- image and name prefix are checked so they cannot smuggle extra flags

The only host state read is the current UID/GID, and only when the caller did
not pass an explicit user mapping.
"""

from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from sandcastle.config import Settings, settings
from sandcastle.domain.errors import ConfigError, PlatformError
from sandcastle.infrastructure.config.settings_utils import parse_bool
from sandcastle.infrastructure.storage.path_guard import normalize_path


_IMAGE_FORBIDDEN = re.compile(r"[\s\x00]")
_NAME_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_MEMORY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?) ?([kmgtp])?i?b?$", re.IGNORECASE)


class NetworkMode(str, Enum):
    """Container network isolation modes."""
    NONE = "none"      # no network access (default)
    BRIDGE = "bridge"  # runtime's default bridge network


@dataclass(frozen=True)
class ResourceLimits:
    """Resource limits applied to the container.

    On a ``SandboxConfig`` any field may be ``None`` and is defaulted; on a
    ``ResolvedSandboxConfig`` every field is set.

    Attributes:
        memory: runtime memory limit, e.g. ``512m``
        cpus: CPU share, e.g. ``0.5``
        pids_limit: max processes inside the container
    """
    memory: Optional[str] = None
    cpus: Optional[float] = None
    pids_limit: Optional[int] = None


@dataclass(frozen=True)
class UserMapping:
    """Host UID/GID passed to the runtime as ``--user uid:gid``."""
    uid: int
    gid: int


@dataclass(frozen=True)
class MountSpec:
    """Volume mount between host and container.

    Attributes:
        host_path: absolute host path; only used when a run has no cwd
        container_path: absolute path inside the container
        read_only: mount read-only
    """
    host_path: Optional[str] = None
    container_path: Optional[str] = None
    read_only: Optional[bool] = None


@dataclass(frozen=True)
class SandboxConfig:
    """Caller-supplied sandbox configuration.

    Only ``enabled`` and ``image`` are required; everything else has a
    secure default applied by ``resolve_sandbox_config``.
    """
    enabled: bool
    image: str
    network: Optional[NetworkMode | str] = None
    resources: Optional[ResourceLimits] = None
    user: Optional[UserMapping] = None
    mount: Optional[MountSpec] = None
    workdir: Optional[str] = None
    env: Optional[Mapping[str, str]] = None
    preflight_timeout: Optional[float] = None
    pull_timeout: Optional[float] = None
    container_name_prefix: Optional[str] = None
    runtime: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SandboxConfig":
        """Build a config from a plain mapping (e.g. a parsed settings file).

        Accepts snake_case keys, and also camelCase keys with millisecond
        timeouts (``preflightTimeoutMs``/``pullTimeoutMs``).
        """
        def pick(source: Mapping[str, Any], *names: str) -> Any:
            for name in names:
                if name in source:
                    return source[name]
            return None

        resources_raw = pick(data, "resources")
        resources = None
        if resources_raw is not None:
            resources = ResourceLimits(
                memory=pick(resources_raw, "memory"),
                cpus=pick(resources_raw, "cpus"),
                pids_limit=pick(resources_raw, "pids_limit", "pidsLimit"),
            )

        user_raw = pick(data, "user")
        user = None
        if user_raw is not None:
            user = UserMapping(uid=pick(user_raw, "uid"), gid=pick(user_raw, "gid"))

        mount_raw = pick(data, "mount")
        mount = None
        if mount_raw is not None:
            mount = MountSpec(
                host_path=pick(mount_raw, "host_path", "hostPath"),
                container_path=pick(mount_raw, "container_path", "containerPath"),
                read_only=pick(mount_raw, "read_only", "readOnly"),
            )

        def timeout(seconds_key: str, ms_key: str) -> Optional[float]:
            if data.get(seconds_key) is not None:
                return data[seconds_key]
            if data.get(ms_key) is not None:
                return _require_number(data[ms_key], ms_key) / 1000.0
            return None

        return cls(
            enabled=parse_bool(data.get("enabled"), default=False),
            image=data.get("image", ""),
            network=data.get("network"),
            resources=resources,
            user=user,
            mount=mount,
            workdir=data.get("workdir"),
            env=data.get("env"),
            preflight_timeout=timeout("preflight_timeout", "preflightTimeoutMs"),
            pull_timeout=timeout("pull_timeout", "pullTimeoutMs"),
            container_name_prefix=pick(data, "container_name_prefix", "containerNamePrefix"),
            runtime=data.get("runtime"),
        )


@dataclass(frozen=True)
class ResolvedSandboxConfig:
    """Fully-defaulted, validated sandbox configuration.

    A value object: reuse it across any number of invocations. ``env`` is a
    read-only mapping.
    """
    image: str
    network: NetworkMode
    resources: ResourceLimits
    user: UserMapping
    mount: MountSpec
    workdir: str
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    preflight_timeout: float = 10.0
    pull_timeout: float = 300.0
    container_name_prefix: str = "sandcastle"
    runtime: str = "docker"

    @property
    def enabled(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for diagnostics. Env values are not included."""
        return {
            "image": self.image,
            "network": self.network.value,
            "resources": {
                "memory": self.resources.memory,
                "cpus": self.resources.cpus,
                "pids_limit": self.resources.pids_limit,
            },
            "user": {"uid": self.user.uid, "gid": self.user.gid},
            "mount": {
                "host_path": self.mount.host_path,
                "container_path": self.mount.container_path,
                "read_only": self.mount.read_only,
            },
            "workdir": self.workdir,
            "env_keys": sorted(self.env),
            "preflight_timeout": self.preflight_timeout,
            "pull_timeout": self.pull_timeout,
            "container_name_prefix": self.container_name_prefix,
            "runtime": self.runtime,
        }


def resolve_sandbox_config(
    config: SandboxConfig,
    *,
    defaults: Optional[Settings] = None,
) -> ResolvedSandboxConfig:
    """Resolve and validate a sandbox configuration, applying secure defaults.

    Args:
        config: caller-supplied configuration
        defaults: settings supplying default values (global ``settings`` if None)

    Returns:
        ResolvedSandboxConfig

    Raises:
        ConfigError: the configuration is invalid or insecure
        PlatformError: no user mapping was given and the host cannot supply
            a non-root UID/GID
    """
    defaults = defaults or settings

    if not config.enabled:
        raise ConfigError("resolve_sandbox_config called with sandbox disabled")

    _validate_image(config.image)

    user = config.user if config.user is not None else get_host_user_mapping()
    _validate_user_mapping(user)

    partial = config.resources or ResourceLimits()
    resources = ResourceLimits(
        memory=partial.memory if partial.memory is not None else defaults.default_memory,
        cpus=partial.cpus if partial.cpus is not None else defaults.default_cpus,
        pids_limit=partial.pids_limit if partial.pids_limit is not None else defaults.default_pids_limit,
    )
    resources = _validate_resource_limits(resources)

    network = _resolve_network(config.network)

    prefix = (
        config.container_name_prefix
        if config.container_name_prefix is not None
        else defaults.container_name_prefix
    )
    _validate_container_name_prefix(prefix)

    mount_in = config.mount or MountSpec()
    container_path = (
        mount_in.container_path
        if mount_in.container_path is not None
        else defaults.default_container_path
    )
    _validate_container_path(container_path, "mount.container_path")
    if ":" in container_path:
        raise ConfigError("Sandbox mount.container_path must not contain ':'")

    host_path = None
    if mount_in.host_path:
        host_path = str(normalize_path(mount_in.host_path))

    mount = MountSpec(
        host_path=host_path,
        container_path=container_path,
        read_only=bool(mount_in.read_only) if mount_in.read_only is not None else False,
    )

    workdir = config.workdir if config.workdir is not None else container_path
    _validate_container_path(workdir, "workdir")

    return ResolvedSandboxConfig(
        image=config.image,
        network=network,
        resources=resources,
        user=user,
        mount=mount,
        workdir=workdir,
        env=_validate_env(config.env),
        preflight_timeout=_validate_timeout(
            config.preflight_timeout
            if config.preflight_timeout is not None
            else defaults.preflight_timeout_seconds,
            "preflight_timeout",
        ),
        pull_timeout=_validate_timeout(
            config.pull_timeout
            if config.pull_timeout is not None
            else defaults.pull_timeout_seconds,
            "pull_timeout",
        ),
        container_name_prefix=prefix,
        runtime=_validate_runtime(config.runtime or defaults.runtime_binary),
    )


def get_host_user_mapping() -> UserMapping:
    """Return the host UID/GID from ``os.getuid()`` / ``os.getgid()``.

    Containers must not run as root. Raises ``PlatformError`` when the host
    is root (uid 0) or has no UID/GID (e.g. Windows); callers on such hosts
    have to pass ``SandboxConfig.user`` explicitly.
    """
    getuid = getattr(os, "getuid", None)
    getgid = getattr(os, "getgid", None)

    if getuid is None or getgid is None:
        raise PlatformError(
            "Sandbox UID/GID mapping is not available on this platform. "
            "Provide SandboxConfig.user explicitly to avoid running as root."
        )

    uid = getuid()
    gid = getgid()

    if uid == 0:
        raise PlatformError("Refusing to run sandbox container as root (uid=0).")

    return UserMapping(uid=uid, gid=gid)


def to_container_command(command: str) -> str:
    """Map a host command to the name executed inside the container.

    A path (anything with ``/`` or ``\\``) is reduced to its base name so the
    container resolves the binary from its own PATH and the host layout is
    not leaked.
    """
    if not command or not isinstance(command, str):
        raise ConfigError("Sandbox command must be a non-empty string")
    if "/" in command or "\\" in command:
        name = PurePosixPath(command.replace("\\", "/")).name
        if not name:
            raise ConfigError(f"Sandbox command has no base name: {command!r}")
        return name
    return command


def _require_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Sandbox {name} must be a number")
    return float(value)


def _validate_image(image: Any) -> None:
    if not image or not isinstance(image, str):
        raise ConfigError("SandboxConfig.image must be a non-empty string")
    if _IMAGE_FORBIDDEN.search(image):
        raise ConfigError("SandboxConfig.image must not contain whitespace or NUL characters")
    if image.startswith("-"):
        raise ConfigError("SandboxConfig.image must not start with '-'")


def _validate_user_mapping(user: UserMapping) -> None:
    for value in (user.uid, user.gid):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError("SandboxConfig.user uid/gid must be integers")
    if user.uid <= 0 or user.gid <= 0:
        raise ConfigError("SandboxConfig.user uid/gid must be > 0 (containers must not run as root)")


def _validate_resource_limits(limits: ResourceLimits) -> ResourceLimits:
    memory = limits.memory
    if not memory or not isinstance(memory, str):
        raise ConfigError("Sandbox resource limit memory must be a non-empty string")
    match = _MEMORY_PATTERN.match(memory.strip())
    if match is None or float(match.group(1)) <= 0:
        raise ConfigError(f"Sandbox resource limit memory is malformed: {memory!r}")

    cpus = limits.cpus
    if isinstance(cpus, bool) or not isinstance(cpus, (int, float)):
        raise ConfigError("Sandbox resource limit cpus must be a positive number")
    if not math.isfinite(cpus) or cpus <= 0:
        raise ConfigError("Sandbox resource limit cpus must be a positive number")

    pids = limits.pids_limit
    if isinstance(pids, bool) or not isinstance(pids, int) or pids <= 0:
        raise ConfigError("Sandbox resource limit pids_limit must be a positive integer")

    return ResourceLimits(memory=memory.strip(), cpus=float(cpus), pids_limit=pids)


def _resolve_network(network: Optional[NetworkMode | str]) -> NetworkMode:
    if network is None:
        return NetworkMode.NONE
    try:
        return NetworkMode(network)
    except ValueError:
        raise ConfigError(f"Invalid sandbox network mode: {network!r}") from None


def _validate_container_name_prefix(prefix: Any) -> None:
    if not prefix or not isinstance(prefix, str):
        raise ConfigError("Sandbox container_name_prefix must be a non-empty string")
    # Runtime name rules are broader; this subset is always a valid name start.
    if not _NAME_PREFIX_PATTERN.match(prefix):
        raise ConfigError("Sandbox container_name_prefix contains invalid characters")


def _validate_container_path(value: Any, name: str) -> None:
    if not isinstance(value, str) or "\x00" in value or not PurePosixPath(value).is_absolute():
        raise ConfigError(f"Sandbox {name} must be an absolute container path (e.g. /workspace)")


def _validate_timeout(value: Any, name: str) -> float:
    seconds = _require_number(value, name)
    if not math.isfinite(seconds) or seconds <= 0:
        raise ConfigError(f"Sandbox {name} must be a positive number of seconds")
    return seconds


def _validate_runtime(runtime: Any) -> str:
    if not runtime or not isinstance(runtime, str) or "\x00" in runtime:
        raise ConfigError("Sandbox runtime must be a non-empty binary name or path")
    return runtime


def _validate_env(env: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    if env is None:
        return MappingProxyType({})
    resolved: Dict[str, str] = {}
    for key, value in env.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ConfigError("SandboxConfig.env keys and values must be strings")
        resolved[key] = value
    return MappingProxyType(resolved)
