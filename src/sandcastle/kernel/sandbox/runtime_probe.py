"""Runtime Probe - talks to the container runtime CLI.

All calls go through an argument vector, never a shell string. Async calls
capture stdout/stderr, stream chunks to an optional progress callback and
kill the child when it outlives its timeout.
"""

from __future__ import annotations

import asyncio
import codecs
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import structlog

from sandcastle.config import settings
from sandcastle.domain.errors import ContainerRuntimeError

logger = structlog.get_logger()

ProgressCallback = Callable[[str], None]

_READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class RuntimeCommandResult:
    """Result of one runtime CLI call.

    Attributes:
        exit_code: process exit code (negative when killed by a signal)
        stdout: captured stdout (UTF-8, undecodable bytes replaced)
        stderr: captured stderr
        timed_out: the call hit its timeout and was killed
    """
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def _emit_progress(on_progress: Optional[ProgressCallback], chunk: str) -> None:
    if on_progress is None:
        return
    try:
        on_progress(chunk)
    except Exception:
        logger.warning("runtime_progress_callback_failed", exc_info=True)


async def _pump_stream(
    stream: Optional[asyncio.StreamReader],
    sink: List[str],
    on_progress: Optional[ProgressCallback],
) -> None:
    if stream is None:
        return
    # Incremental decoding keeps multi-byte characters split across reads intact.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_CHUNK_SIZE)
        final = not chunk
        text = decoder.decode(chunk, final=final)
        if text:
            sink.append(text)
            _emit_progress(on_progress, text)
        if final:
            return


async def run_runtime_command(
    args: Sequence[str],
    *,
    timeout: float,
    runtime: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> RuntimeCommandResult:
    """Run ``<runtime> *args`` and collect its output.

    Args:
        args: runtime arguments (without the binary)
        timeout: seconds before the child is killed
        runtime: runtime binary, ``settings.runtime_binary`` if None
        on_progress: receives raw stdout/stderr chunks as they arrive;
            exceptions it raises are logged and ignored

    Returns:
        RuntimeCommandResult. A binary that cannot be started yields exit
        code 127 instead of raising.
    """
    binary = runtime or settings.runtime_binary
    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.warning("runtime_command_start_failed", runtime=binary, error=str(e))
        return RuntimeCommandResult(
            exit_code=127,
            stdout="",
            stderr=f"Failed to start {binary} command: {e}",
        )

    stdout_parts: List[str] = []
    stderr_parts: List[str] = []
    timed_out = False

    try:
        await asyncio.wait_for(
            asyncio.gather(
                _pump_stream(proc.stdout, stdout_parts, on_progress),
                _pump_stream(proc.stderr, stderr_parts, on_progress),
                proc.wait(),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning(
            "runtime_command_timed_out",
            runtime=binary,
            command=args[0] if args else None,
            timeout=timeout,
        )
    finally:
        # Also reached when the awaiting task is cancelled.
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    return RuntimeCommandResult(
        exit_code=proc.returncode if proc.returncode is not None else 1,
        stdout="".join(stdout_parts),
        stderr="".join(stderr_parts),
        timed_out=timed_out,
    )


async def image_exists(image: str, timeout: float, *, runtime: Optional[str] = None) -> bool:
    """Check whether ``image`` is present locally (``images -q <image>``).

    Raises:
        ContainerRuntimeError: the check timed out
    """
    result = await run_runtime_command(["images", "-q", image], timeout=timeout, runtime=runtime)
    if result.timed_out:
        raise ContainerRuntimeError(
            f"image check timed out after {timeout}s for {image}: {result.stderr or result.stdout}",
            image=image,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            timed_out=True,
        )
    return result.exit_code == 0 and len(result.stdout.strip()) > 0


async def pull_image(
    image: str,
    timeout: float,
    on_progress: Optional[ProgressCallback] = None,
    *,
    runtime: Optional[str] = None,
) -> None:
    """Pull ``image`` (``pull <image>``).

    Raises:
        ContainerRuntimeError: the pull exited non-zero or timed out
    """
    binary = runtime or settings.runtime_binary
    logger.info("sandbox_image_pull_started", image=image, runtime=binary)
    result = await run_runtime_command(
        ["pull", image],
        timeout=timeout,
        runtime=binary,
        on_progress=on_progress,
    )
    if result.timed_out:
        raise ContainerRuntimeError(
            f"{binary} pull timed out after {timeout}s for {image}: {result.stderr or result.stdout}",
            image=image,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            timed_out=True,
        )
    if result.exit_code != 0:
        raise ContainerRuntimeError(
            f"{binary} pull failed for {image}: {result.stderr or result.stdout}",
            image=image,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    logger.info("sandbox_image_pull_finished", image=image, runtime=binary)


def remove_container_sync(
    container_name: str,
    *,
    runtime: Optional[str] = None,
    timeout: Optional[float] = None,
) -> bool:
    """Force-remove a container (``rm -f <name>``), synchronously.

    Best-effort: the container may already be gone or the runtime may be
    unavailable during shutdown. Failures are logged at debug level and
    never raised.

    Returns:
        Whether the runtime reported success.
    """
    binary = runtime or settings.runtime_binary
    try:
        completed = subprocess.run(
            [binary, "rm", "-f", container_name],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout or settings.cleanup_timeout_seconds,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("sandbox_container_remove_failed", container=container_name, error=str(e))
        return False
    return completed.returncode == 0
