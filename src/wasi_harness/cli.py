"""CLI entry point for the WASI test harness.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``wasi-harness = "wasi_harness.cli:main"``. Loads the
request and optional harness config YAML files, appends any engine
arguments given after ``--``, and delegates to ``run_wasi_test_sync()``.
The returned ``ExitCode`` becomes the process exit code.
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys
from typing import Any

from pydantic import ValidationError
import yaml

from wasi_harness.models import ExecutionRequest, ExitCode, HarnessConfig
from wasi_harness.orchestrator import run_wasi_test_sync


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="wasi-harness",
        description="Executes tests on WASI using a selected engine.",
        usage="%(prog)s --request REQUEST [--config CONFIG] [-- ENGINE OPTIONS]",
    )
    parser.add_argument(
        "--request",
        required=True,
        help="Path to the execution request YAML file.",
    )
    parser.add_argument(
        "--config",
        required=False,
        default=None,
        help="Path to an optional harness config YAML file.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Override the request timeout in seconds.",
    )
    parser.add_argument(
        "--expected-exit-code",
        type=int,
        default=None,
        help="Override the exit code the engine must report.",
    )
    return parser


def _load_yaml(path: str, label: str) -> dict[str, Any]:
    """Load and validate a YAML file as a dict.

    Args:
        path: File path to the YAML file.
        label: Human-readable label for error messages.

    Returns:
        The parsed YAML content as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not parse to a mapping.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"{label} file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        msg = f"{label} file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)

    return data


def _split_passthrough(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split *argv* at the first ``--`` into harness and engine arguments."""
    if "--" in argv:
        idx = argv.index("--")
        return argv[:idx], argv[idx + 1 :]
    return argv, []


def _load_request(args: argparse.Namespace, passthrough: list[str]) -> ExecutionRequest:
    data = _load_yaml(args.request, "request")
    data["passthrough_args"] = [*data.get("passthrough_args", []), *passthrough]
    if args.timeout is not None:
        data["timeout_seconds"] = args.timeout
    if args.expected_exit_code is not None:
        data["expected_exit_code"] = args.expected_exit_code
    return ExecutionRequest(**data)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the wasi-harness CLI application.

    Args:
        argv: Command-line arguments, defaulting to ``sys.argv[1:]``.

    Returns:
        The run's ``ExitCode`` as an int; GENERAL_FAILURE when the inputs
        cannot be loaded.
    """
    harness_argv, passthrough = _split_passthrough(
        list(sys.argv[1:] if argv is None else argv)
    )
    args = _build_parser().parse_args(harness_argv)

    try:
        request = _load_request(args, passthrough)
        config: HarnessConfig | None = None
        if args.config is not None:
            config = HarnessConfig(**_load_yaml(args.config, "config"))
    except (OSError, ValueError, ValidationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return int(ExitCode.GENERAL_FAILURE)

    try:
        outcome = run_wasi_test_sync(request, config)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return int(ExitCode.GENERAL_FAILURE)

    return int(outcome)


if __name__ == "__main__":
    sys.exit(main())
