"""Engine launcher: binary resolution, argument construction, and process execution.

Resolves the WASI runtime binary, builds its argument list, and runs it as
an async subprocess in its own process group. Output lines are streamed to
sink callbacks as they arrive. Cancellation terminates the whole process
group (SIGTERM, then SIGKILL after a grace period) so no engine process is
left orphaned.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path
import signal
from typing import TYPE_CHECKING

from wasi_harness.models import EngineInvocationResult, WasmEngine
from wasi_harness.service import build_setenv_flags

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from wasi_harness.cancellation import CancellationSignal
    from wasi_harness.models import ExecutionRequest, ServerUrls

logger = logging.getLogger(__name__)

VERSION_PROBE_TIMEOUT_SECONDS = 10
_SIGKILL_GRACE_SECONDS = 5
_DRAIN_GRACE_SECONDS = 5
_STREAM_LIMIT = 16 * 1024 * 1024

_ENGINE_BINARIES: dict[WasmEngine, str] = {
    WasmEngine.WASMTIME: "wasmtime",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class EngineError(Exception):
    """Base class for engine resolution and launch failures."""


class EngineNotFoundError(EngineError):
    """An explicit, rooted engine path does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Could not find wasm engine at the specified path - {path}")
        self.path = path


class EngineLaunchError(EngineError):
    """The operating system could not start the engine binary."""

    def __init__(self, path: str, cause: OSError) -> None:
        super().__init__(f"The engine binary `{path}` could not be started: {cause}")
        self.path = path
        self.cause = cause


# ---------------------------------------------------------------------------
# Resolution and arguments
# ---------------------------------------------------------------------------


def engine_binary_name(engine: WasmEngine) -> str:
    """Return the default binary name for *engine*.

    Raises:
        ValueError: If no binary is known for the engine.
    """
    try:
        return _ENGINE_BINARIES[engine]
    except KeyError:
        msg = f"Engine not set: {engine!r}"
        raise ValueError(msg) from None


def resolve_engine(binary: str, search_path: Sequence[str] | None = None) -> str:
    """Resolve the engine binary to a path.

    An existing path is returned unchanged. A rooted path that does not
    exist is rejected before anything is spawned. An unrooted name is
    looked up in each directory of *search_path* in order; when nothing
    matches the raw name is returned and the spawn reports the failure.

    Args:
        binary: Engine path or bare binary name.
        search_path: Directories to search, or ``None`` for ``PATH``.

    Returns:
        The resolved path, or *binary* itself when unresolved.

    Raises:
        EngineNotFoundError: If *binary* is rooted and does not exist.
    """
    candidate = Path(binary)
    if candidate.exists():
        return binary
    if candidate.is_absolute():
        raise EngineNotFoundError(binary)

    if search_path is None:
        env_path = os.environ.get("PATH")
        if env_path is None:
            return binary
        search_path = env_path.split(os.pathsep)

    for folder in search_path:
        if not folder:
            continue
        full_path = Path(folder) / binary
        if full_path.is_file():
            return str(full_path)

    return binary


def build_engine_args(
    request: ExecutionRequest,
    server_urls: ServerUrls | None = None,
) -> list[str]:
    """Build the engine argument list for *request*.

    The layout is ``<subcommand> --dir <dir> <wasm> <lib> [--setenv=...]*
    [passthrough...]``; ``--setenv`` flags appear only when an auxiliary
    service reported its addresses.
    """
    args = [
        request.subcommand,
        "--dir",
        request.directory,
        request.wasm_file,
        request.lib_file,
    ]
    if server_urls is not None:
        args.extend(build_setenv_flags(request, server_urls))
    args.extend(request.passthrough_args)
    return args


# ---------------------------------------------------------------------------
# Process control
# ---------------------------------------------------------------------------


async def kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """Send SIGTERM to the process group, escalating to SIGKILL after a grace period.

    Args:
        proc: The asyncio subprocess to kill.
    """
    pid = proc.pid
    if pid is None or proc.returncode is not None:
        return

    try:
        pgid = os.getpgid(pid)
    except (OSError, ProcessLookupError):
        return

    try:
        os.killpg(pgid, signal.SIGTERM)
    except (OSError, ProcessLookupError):
        return

    try:
        await asyncio.wait_for(proc.wait(), timeout=_SIGKILL_GRACE_SECONDS)
    except TimeoutError:
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)
        with contextlib.suppress(ProcessLookupError):
            await proc.wait()


async def _pump_lines(
    stream: asyncio.StreamReader | None,
    sink: Callable[[str], None],
) -> None:
    """Forward each decoded line of *stream* to *sink* until EOF.

    Lines longer than the stream limit are read in pieces and forwarded
    whole once their newline arrives.
    """
    if stream is None:
        return
    pending = bytearray()
    while True:
        try:
            pending += await stream.readuntil(b"\n")
        except asyncio.LimitOverrunError as exc:
            pending += await stream.readexactly(exc.consumed)
            continue
        except asyncio.IncompleteReadError as exc:
            pending += exc.partial
            if pending:
                sink(pending.decode("utf-8", errors="replace").rstrip("\r\n"))
            return
        sink(pending.decode("utf-8", errors="replace").rstrip("\r\n"))
        pending.clear()


async def _collect_exit(
    proc: asyncio.subprocess.Process,
    stdout_sink: Callable[[str], None],
    stderr_sink: Callable[[str], None],
) -> EngineInvocationResult:
    """Drain both output streams, then wait for the process to exit."""
    await asyncio.gather(
        _pump_lines(proc.stdout, stdout_sink),
        _pump_lines(proc.stderr, stderr_sink),
    )
    returncode = await proc.wait()
    return EngineInvocationResult(
        exit_code=returncode,
        terminated_normally=returncode >= 0,
    )


async def launch_engine(
    engine_path: str,
    args: Sequence[str],
    stdout_sink: Callable[[str], None],
    stderr_sink: Callable[[str], None],
    cancellation: CancellationSignal,
    *,
    cwd: str | None = None,
) -> EngineInvocationResult:
    """Run the engine and stream its output until it exits.

    Lines are delivered to the sinks incrementally, without the trailing
    newline; undecodable bytes are replaced. When *cancellation* is set, or
    the calling task is cancelled, the engine's process group is terminated
    and ``asyncio.CancelledError`` propagates.

    Args:
        engine_path: Resolved engine binary.
        args: Engine arguments.
        stdout_sink: Receives each stdout line.
        stderr_sink: Receives each stderr line.
        cancellation: Shared run cancellation signal.
        cwd: Working directory for the engine, or ``None`` to inherit.

    Returns:
        The engine's exit code and termination kind.

    Raises:
        EngineLaunchError: If the OS cannot start the binary.
        asyncio.CancelledError: If the run was cancelled.
    """
    logger.debug("Launching %s %s", engine_path, " ".join(args))
    try:
        proc = await asyncio.create_subprocess_exec(
            engine_path,
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=_STREAM_LIMIT,
        )
    except OSError as exc:
        raise EngineLaunchError(engine_path, exc) from exc

    logger.info("Engine started (pid %d)", proc.pid)
    exit_task = asyncio.ensure_future(_collect_exit(proc, stdout_sink, stderr_sink))
    cancel_task = asyncio.ensure_future(cancellation.wait())
    try:
        await asyncio.wait(
            {exit_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if exit_task.done():
            return exit_task.result()
        raise asyncio.CancelledError
    finally:
        cancel_task.cancel()
        if proc.returncode is None:
            logger.info("Terminating engine process group (pid %d)", proc.pid)
            await kill_process_group(proc)
        if not exit_task.done():
            # Pipes can stay open if a grandchild escaped the process group.
            await asyncio.wait({exit_task}, timeout=_DRAIN_GRACE_SECONDS)
            exit_task.cancel()
            await asyncio.gather(exit_task, return_exceptions=True)


async def probe_engine_version(engine_path: str) -> None:
    """Log the engine's ``--version`` output.

    Runs under a fixed short timeout. Failures are logged and never
    propagate, so the probe cannot affect the outcome of a run.

    Args:
        engine_path: Resolved engine binary.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            engine_path,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        logger.warning("Could not query engine version: %s", exc)
        return

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(), timeout=VERSION_PROBE_TIMEOUT_SECONDS
        )
    except TimeoutError:
        logger.warning(
            "Engine version query timed out after %gs", VERSION_PROBE_TIMEOUT_SECONDS
        )
        await kill_process_group(proc)
        return

    for line in stdout_bytes.decode("utf-8", errors="replace").splitlines():
        if line.strip():
            logger.info(line.strip())
    for line in stderr_bytes.decode("utf-8", errors="replace").splitlines():
        if line.strip():
            logger.error(line.strip())
    if proc.returncode:
        logger.debug("Engine version query exited with %d", proc.returncode)
