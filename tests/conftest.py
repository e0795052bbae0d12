"""Shared fixtures for the wasi_harness test suite."""

from __future__ import annotations

from collections.abc import Callable
import os
from pathlib import Path
import sys
import textwrap
from typing import Any

import pytest

from wasi_harness.models import ExecutionRequest, HarnessConfig

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_request(**overrides: Any) -> ExecutionRequest:
    """Build a valid ExecutionRequest with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed ExecutionRequest instance.
    """
    defaults: dict[str, Any] = {
        "wasm_file": "dotnet.wasm",
        "lib_file": "WasiTest.dll",
        "timeout_seconds": 30.0,
    }
    defaults.update(overrides)
    return ExecutionRequest(**defaults)


def make_config(**overrides: Any) -> HarnessConfig:
    """Build a HarnessConfig that skips the engine version probe.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed HarnessConfig instance.
    """
    defaults: dict[str, Any] = {"print_engine_version": False}
    defaults.update(overrides)
    return HarnessConfig(**defaults)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clear_harness_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep WASI_HARNESS_* variables from the outer environment out of tests."""
    for name in list(os.environ):
        if name.startswith("WASI_HARNESS_"):
            monkeypatch.delenv(name)


@pytest.fixture()
def fake_engine(tmp_path: Path) -> Callable[[str], str]:
    """Return a factory writing an executable Python script that stands in for the engine.

    The factory takes the script body (dedented automatically) and returns
    the absolute path of the executable. The script receives the engine
    arguments in ``sys.argv[1:]``.
    """
    counter = {"n": 0}

    def _write(body: str) -> str:
        counter["n"] += 1
        path = tmp_path / f"fake_engine_{counter['n']}.py"
        path.write_text(
            f"#!{sys.executable}\n" + textwrap.dedent(body),
            encoding="utf-8",
        )
        path.chmod(0o755)
        return str(path.resolve())

    return _write


@pytest.fixture()
def output_dir(tmp_path: Path) -> Path:
    """Provide an output directory for run artifacts."""
    out = tmp_path / "out"
    out.mkdir()
    return out
