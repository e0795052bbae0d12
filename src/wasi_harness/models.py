"""Core data models for the WASI test harness.

Defines the immutable request and configuration types, the per-run result
types produced by the engine launcher and the log pipeline, and the
``ExitCode`` outcome enum surfaced to the caller.
"""

from __future__ import annotations

from enum import IntEnum, StrEnum

from pydantic import BaseModel, ConfigDict, field_validator

RESULTS_FILE_NAME = "testResults.xml"
TRANSCRIPT_FILE_NAME = "wasi-console.log"


class ExitCode(IntEnum):
    """Final outcome of a harness run.

    Exactly one value is produced per run. The integer values are the
    process exit codes reported by the command-line entry point.
    """

    SUCCESS = 0
    TIMED_OUT = 70
    GENERAL_FAILURE = 71
    APP_CRASH = 80
    APP_LAUNCH_FAILURE = 83


class WasmEngine(StrEnum):
    """Supported WASI runtime engines."""

    WASMTIME = "wasmtime"


class ExecutionRequest(BaseModel):
    """Everything needed to execute one test binary under an engine.

    Immutable for the lifetime of a run.

    Attributes:
        engine: Runtime engine used to execute the binary.
        engine_path: Explicit path to the engine binary; when ``None`` the
            engine's default binary name is resolved from the search path.
        subcommand: Engine subcommand (first engine argument).
        directory: Directory preopened for the guest via ``--dir``.
        wasm_file: Path to the WebAssembly module under test.
        lib_file: Path to the test library passed after the module.
        passthrough_args: Extra engine arguments appended verbatim.
        working_dir: Working directory for the child, or ``None`` to inherit.
        timeout_seconds: Execution budget for the whole run.
        expected_exit_code: Exit code the engine must report for success.
        output_directory: Directory receiving the results and transcript.
        error_patterns: Regular expressions marking a crash in the output.
        error_patterns_file: Optional file with one pattern per line.
        http_env_vars: Variables bound to the auxiliary service HTTP address.
        https_env_vars: Variables bound to the auxiliary service HTTPS address.
        use_https: Whether ``https_env_vars`` are injected.
    """

    model_config = ConfigDict(frozen=True)

    engine: WasmEngine = WasmEngine.WASMTIME
    engine_path: str | None = None
    subcommand: str = "run"
    directory: str = "."
    wasm_file: str
    lib_file: str
    passthrough_args: tuple[str, ...] = ()
    working_dir: str | None = None
    timeout_seconds: float = 900.0
    expected_exit_code: int = 0
    output_directory: str = "."
    error_patterns: tuple[str, ...] = ()
    error_patterns_file: str | None = None
    http_env_vars: tuple[str, ...] = ()
    https_env_vars: tuple[str, ...] = ()
    use_https: bool = False

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        """Reject non-positive timeouts."""
        if v <= 0:
            msg = f"timeout_seconds must be > 0, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("wasm_file", "lib_file", "subcommand")
    @classmethod
    def _must_be_non_empty(cls, v: str) -> str:
        """Reject empty strings for required engine arguments."""
        if not v.strip():
            msg = "Value must be a non-empty string"
            raise ValueError(msg)
        return v


class HarnessConfig(BaseModel):
    """Harness-wide settings that are not part of a single request.

    Attributes:
        log_level: Logging level name for the ``wasi_harness`` logger.
        log_file: Optional file receiving a copy of the log.
        search_path: Directories searched for an unrooted engine name, or
            ``None`` to use the ``PATH`` environment variable.
        print_engine_version: Whether to probe the engine version first.
    """

    model_config = ConfigDict(frozen=True)

    log_level: str = "INFO"
    log_file: str | None = None
    search_path: tuple[str, ...] | None = None
    print_engine_version: bool = True


class EngineInvocationResult(BaseModel):
    """Result of one engine process run.

    Attributes:
        exit_code: Process exit code (negative signal number when killed).
        terminated_normally: ``False`` when the process died from a signal.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int
    terminated_normally: bool = True


class LogJudgment(BaseModel):
    """Verdict flushed from the log pipeline once it has completed.

    Attributes:
        exit_code: The pipeline's own outcome for the run.
        matched_error_line: First output line that matched an error
            pattern, or ``None``.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: ExitCode
    matched_error_line: str | None = None


class ServerUrls(BaseModel):
    """Base addresses of a ready auxiliary service."""

    model_config = ConfigDict(frozen=True)

    http: str
    https: str | None = None
