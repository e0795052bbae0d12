"""Run orchestrator: concurrent execution, outcome priority, and reconciliation.

Provides ``run_wasi_test()`` (async) and ``run_wasi_test_sync()`` (sync
wrapper) as the top-level entry points. A run resolves the engine, starts
the optional auxiliary service, then races three units under one shared
cancellation signal: the log pipeline's run loop, the engine process, and
the deadline countdown. The first unit to finish decides the branch:

1. countdown won, signal already set, or winner cancelled -> TIMED_OUT;
2. winner failed to launch the engine -> APP_LAUNCH_FAILURE;
3. winner raised anything else -> the exception propagates;
4. otherwise the process exit code and the pipeline judgment are
   reconciled into the final ``ExitCode``.

Whatever the path, the signal is set and every unit is cancelled and
awaited before the call returns or raises.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wasi_harness.cancellation import CancellationSignal
from wasi_harness.deadline import DeadlineGuard
from wasi_harness.engine import (
    EngineLaunchError,
    EngineNotFoundError,
    build_engine_args,
    engine_binary_name,
    launch_engine,
    probe_engine_version,
    resolve_engine,
)
from wasi_harness.models import (
    EngineInvocationResult,
    ExecutionRequest,
    ExitCode,
    HarnessConfig,
    LogJudgment,
)
from wasi_harness.pipeline import LogPipeline, WasiLogProcessor, load_error_patterns

if TYPE_CHECKING:
    from wasi_harness.models import ServerUrls
    from wasi_harness.service import AuxiliaryService

logger = logging.getLogger(__name__)


class RunState(StrEnum):
    """Lifecycle states of a single run, logged at DEBUG level."""

    INIT = "init"
    ENGINE_RESOLVED = "engine_resolved"
    SERVICE_READY = "service_ready"
    RUNNING = "running"
    CANCELLED = "cancelled"
    FAULTED = "faulted"
    RACE_DONE = "race_done"
    RECONCILED = "reconciled"
    DONE = "done"


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_CONFIG_ENV_FIELDS: dict[str, str] = {
    "WASI_HARNESS_LOG_LEVEL": "log_level",
}
"""Maps environment variable names to HarnessConfig field names."""

_REQUEST_ENV_FIELDS: dict[str, str] = {
    "WASI_HARNESS_ENGINE_PATH": "engine_path",
    "WASI_HARNESS_TIMEOUT": "timeout_seconds",
}
"""Maps environment variable names to ExecutionRequest field names."""


def apply_env_overrides(config: HarnessConfig) -> HarnessConfig:
    """Apply ``WASI_HARNESS_*`` overrides to fields still at their default.

    Values explicitly set on *config* are never replaced.

    Args:
        config: The harness configuration.

    Returns:
        A new ``HarnessConfig`` with overrides applied, or *config* itself.
    """
    defaults = HarnessConfig()
    overrides: dict[str, Any] = {}
    for env_var, field_name in _CONFIG_ENV_FIELDS.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        if getattr(config, field_name) != getattr(defaults, field_name):
            continue
        overrides[field_name] = env_value

    if not overrides:
        return config
    return config.model_copy(update=overrides)


def apply_request_env_overrides(request: ExecutionRequest) -> ExecutionRequest:
    """Apply ``WASI_HARNESS_*`` overrides to request fields at their default.

    Non-numeric or non-positive timeout values are ignored.
    """
    overrides: dict[str, Any] = {}
    for env_var, field_name in _REQUEST_ENV_FIELDS.items():
        env_value = os.environ.get(env_var)
        if env_value is None or field_name in request.model_fields_set:
            continue
        parsed = _parse_env_value(field_name, env_value)
        if parsed is not None:
            overrides[field_name] = parsed

    if not overrides:
        return request
    return request.model_copy(update=overrides)


def _parse_env_value(field_name: str, raw: str) -> Any:
    """Parse a raw env var string for *field_name*, or ``None`` if invalid."""
    if field_name == "engine_path":
        return raw or None

    if field_name == "timeout_seconds":
        try:
            value = float(raw)
        except ValueError:
            return None
        if value <= 0:
            return None
        return value

    return None


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(config: HarnessConfig) -> None:
    """Configure the ``wasi_harness`` logger.

    Adds a console handler and, when ``config.log_file`` is set, a file
    handler. Repeated calls do not duplicate handlers.
    """
    harness_logger = logging.getLogger("wasi_harness")
    harness_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in harness_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        harness_logger.addHandler(console)

    if config.log_file is not None:
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == str(Path(config.log_file).resolve())
            for h in harness_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            harness_logger.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def reconcile(
    result: EngineInvocationResult,
    expected_exit_code: int,
    judgment: LogJudgment,
) -> ExitCode:
    """Combine the process result and the pipeline judgment into one outcome.

    An exit code mismatch always yields GENERAL_FAILURE. With a matching
    exit code, a line that matched an error pattern yields APP_CRASH;
    otherwise the pipeline's own judgment is returned.
    """
    if result.exit_code != expected_exit_code:
        logger.error(
            "Application has finished with exit code %d but %d was expected",
            result.exit_code,
            expected_exit_code,
        )
        return ExitCode.GENERAL_FAILURE

    if judgment.matched_error_line is not None:
        logger.error(
            "Application exited with the expected exit code: %d. "
            "But found a line matching an error pattern: %s",
            result.exit_code,
            judgment.matched_error_line,
        )
        return ExitCode.APP_CRASH

    logger.info("Application has finished with exit code: %d", result.exit_code)
    return judgment.exit_code


# ---------------------------------------------------------------------------
# Run helpers
# ---------------------------------------------------------------------------


class _RunCancelled(Exception):
    """Internal: the signal fired while awaiting a unit outside the race."""


def _enter(state: RunState) -> None:
    logger.debug("Run state -> %s", state)


def _prepare_pipeline(request: ExecutionRequest, pipeline: LogPipeline | None) -> LogPipeline:
    """Reset the artifacts of *pipeline*, building the default one when absent.

    The default pipeline clears its artifacts before reading the error
    pattern file, so a bad file never leaves a previous run's output behind.
    """
    if pipeline is not None:
        pipeline.reset_artifacts()
        return pipeline
    processor = WasiLogProcessor(request.output_directory, request.error_patterns)
    processor.reset_artifacts()
    if request.error_patterns_file is not None:
        try:
            processor.add_error_patterns(load_error_patterns(request.error_patterns_file))
        except (OSError, ValueError) as exc:
            processor.close()
            logger.critical("Could not load error patterns: %s", exc)
            raise
    return processor


async def _until_cancelled(
    awaitable: asyncio.Future[Any],
    cancellation: CancellationSignal,
) -> Any:
    """Await *awaitable* unless *cancellation* fires first.

    Raises:
        _RunCancelled: If the signal is set before *awaitable* finishes.
    """
    cancel_task = asyncio.ensure_future(cancellation.wait())
    try:
        await asyncio.wait({awaitable, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_task.cancel()
    if not awaitable.done():
        raise _RunCancelled
    if awaitable.cancelled():
        raise _RunCancelled
    return awaitable.result()


async def _run_engine_unit(
    engine_path: str,
    args: list[str],
    pipeline: LogPipeline,
    cancellation: CancellationSignal,
    cwd: str | None,
) -> EngineInvocationResult:
    """Run the engine, then tell the pipeline that input has ended."""
    result = await launch_engine(
        engine_path,
        args,
        pipeline.on_stdout,
        pipeline.on_stderr,
        cancellation,
        cwd=cwd,
    )
    pipeline.end_of_input()
    return result


async def _start_service(
    service: AuxiliaryService,
    cancellation: CancellationSignal,
) -> ServerUrls:
    """Start *service* and wait for readiness, bounded by *cancellation*."""
    start_task = asyncio.ensure_future(service.start(cancellation))
    try:
        return await _until_cancelled(start_task, cancellation)
    finally:
        if not start_task.done():
            start_task.cancel()
            await asyncio.gather(start_task, return_exceptions=True)


def _timed_out(request: ExecutionRequest, cancellation: CancellationSignal) -> ExitCode:
    cancellation.cancel("timeout")
    logger.error("Tests timed out after %gsecs", request.timeout_seconds)
    return ExitCode.TIMED_OUT


def _launch_failed(exc: EngineLaunchError) -> ExitCode:
    logger.critical("The engine binary `%s` could not be started: %s", exc.path, exc.cause)
    return ExitCode.APP_LAUNCH_FAILURE


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def run_wasi_test(
    request: ExecutionRequest,
    config: HarnessConfig | None = None,
    *,
    pipeline: LogPipeline | None = None,
    service: AuxiliaryService | None = None,
    cancellation: CancellationSignal | None = None,
) -> ExitCode:
    """Execute one test binary under the engine and return the outcome.

    Args:
        request: What to run and how to judge it.
        config: Harness settings. Defaults to ``HarnessConfig()``.
        pipeline: Log pipeline; defaults to a ``WasiLogProcessor`` writing
            into ``request.output_directory``.
        service: Optional auxiliary service started before the engine.
        cancellation: Signal shared by all units. Setting it from outside
            cancels the run, which then reports TIMED_OUT.

    Returns:
        Exactly one ``ExitCode``.

    Raises:
        Exception: Any unexpected fault from the engine or pipeline unit
            propagates unchanged.
    """
    if cancellation is None:
        cancellation = CancellationSignal()
    tasks: list[asyncio.Future[Any]] = []
    try:
        resolved_config = apply_env_overrides(config if config is not None else HarnessConfig())
        request = apply_request_env_overrides(request)
        configure_logging(resolved_config)
        _enter(RunState.INIT)
        pipeline = _prepare_pipeline(request, pipeline)

        engine_binary = request.engine_path or engine_binary_name(request.engine)
        try:
            engine_path = resolve_engine(engine_binary, resolved_config.search_path)
        except EngineNotFoundError as exc:
            logger.critical("%s", exc)
            return ExitCode.APP_LAUNCH_FAILURE
        _enter(RunState.ENGINE_RESOLVED)
        logger.info("Using wasm engine %s from path %s", request.engine, engine_path)

        if resolved_config.print_engine_version:
            await probe_engine_version(engine_path)

        guard = DeadlineGuard(request.timeout_seconds, cancellation)
        deadline_task = asyncio.ensure_future(guard.run())
        tasks.append(deadline_task)

        server_urls: ServerUrls | None = None
        if service is not None:
            try:
                server_urls = await _start_service(service, cancellation)
            except _RunCancelled:
                return _timed_out(request, cancellation)
            guard.restart()
            _enter(RunState.SERVICE_READY)
            logger.info("Auxiliary service ready at %s", server_urls.http)

        args = build_engine_args(request, server_urls)
        pipeline_task = asyncio.ensure_future(pipeline.run(cancellation))
        process_task = asyncio.ensure_future(
            _run_engine_unit(engine_path, args, pipeline, cancellation, request.working_dir)
        )
        tasks = [pipeline_task, process_task, deadline_task]
        _enter(RunState.RUNNING)

        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        winner = next(t for t in tasks if t in done)

        if winner is deadline_task or cancellation.is_set or winner.cancelled():
            _enter(RunState.CANCELLED)
            return _timed_out(request, cancellation)

        fault = winner.exception()
        if fault is not None:
            _enter(RunState.FAULTED)
            if isinstance(fault, EngineLaunchError):
                return _launch_failed(fault)
            logger.error("Run unit faulted: %r", fault)
            raise fault

        _enter(RunState.RACE_DONE)
        try:
            result = await _until_cancelled(process_task, cancellation)
            await _until_cancelled(pipeline_task, cancellation)
        except _RunCancelled:
            _enter(RunState.CANCELLED)
            return _timed_out(request, cancellation)
        except EngineLaunchError as exc:
            return _launch_failed(exc)
        except Exception as exc:
            _enter(RunState.FAULTED)
            logger.error("Run unit faulted: %r", exc)
            raise

        outcome = reconcile(result, request.expected_exit_code, pipeline.flush())
        _enter(RunState.RECONCILED)
        return outcome
    finally:
        cancellation.cancel("run finished")
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if service is not None:
            await service.stop()
        if pipeline is not None:
            pipeline.close()
        _enter(RunState.DONE)


def run_wasi_test_sync(
    request: ExecutionRequest,
    config: HarnessConfig | None = None,
    *,
    service: AuxiliaryService | None = None,
) -> ExitCode:
    """Synchronous wrapper around :func:`run_wasi_test` via ``asyncio.run()``."""
    return asyncio.run(run_wasi_test(request, config, service=service))
