"""Log processing pipeline: transcript, structured results, and error patterns.

The engine launcher pushes stdout and stderr lines into the pipeline as
they arrive. The pipeline keeps an append-only transcript, extracts the
XML test results emitted between marker lines, watches for configured
error patterns, and decides when the run is logically finished. Once it
has completed, :meth:`WasiLogProcessor.flush` returns its judgment.

Output protocol recognised on stdout:

- ``STARTRESULTXML`` / ``ENDRESULTXML`` delimit the XML results document.
- ``WASM EXIT <code>`` reports the guest's exit code and ends the run.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import re
from typing import IO, TYPE_CHECKING, Protocol, runtime_checkable

from wasi_harness.models import (
    RESULTS_FILE_NAME,
    TRANSCRIPT_FILE_NAME,
    ExitCode,
    LogJudgment,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from wasi_harness.cancellation import CancellationSignal

logger = logging.getLogger(__name__)

RESULTS_START_MARKER = "STARTRESULTXML"
RESULTS_END_MARKER = "ENDRESULTXML"
_EXIT_LINE_RE = re.compile(r"^WASM EXIT (-?\d+)\s*$")

_STDOUT = "stdout"
_STDERR = "stderr"
_END_OF_INPUT = None


@runtime_checkable
class LogPipeline(Protocol):
    """Contract between the orchestrator and a log processing pipeline."""

    @property
    def completed(self) -> bool:
        """Whether the pipeline has judged the run finished."""
        ...

    def reset_artifacts(self) -> None:
        """Delete and recreate the output artifacts."""
        ...

    def on_stdout(self, line: str) -> None:
        """Receive one stdout line."""
        ...

    def on_stderr(self, line: str) -> None:
        """Receive one stderr line."""
        ...

    def end_of_input(self) -> None:
        """Signal that no further lines will arrive."""
        ...

    async def run(self, cancellation: CancellationSignal) -> None:
        """Consume lines until the run is finished or input ends."""
        ...

    def flush(self) -> LogJudgment:
        """Finish writing artifacts and return the judgment."""
        ...

    def close(self) -> None:
        """Release the artifacts; safe to call more than once."""
        ...


def load_error_patterns(path: str | Path) -> list[str]:
    """Read error patterns from *path*, one regular expression per line.

    Blank lines and lines starting with ``#`` are skipped.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If a line is not a valid regular expression.
    """
    patterns: list[str] = []
    for lineno, raw in enumerate(Path(path).read_text(encoding="utf-8").splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            re.compile(line)
        except re.error as exc:
            msg = f"{path}:{lineno}: invalid error pattern {line!r}: {exc}"
            raise ValueError(msg) from exc
        patterns.append(line)
    return patterns


class WasiLogProcessor:
    """Default pipeline for WASI test output.

    Line callbacks only enqueue; the :meth:`run` loop is the single writer
    of the artifacts and of the aggregation state.

    Attributes:
        results_path: Path of the XML results artifact.
        transcript_path: Path of the plain transcript artifact.
        line_that_matched_error_pattern: First line matching an error
            pattern, or ``None``.
        wasm_exit_code: Exit code reported by the guest, if any.
    """

    def __init__(self, output_directory: str | Path, error_patterns: Iterable[str] = ()) -> None:
        """Initialize the processor. No files are touched until :meth:`reset_artifacts`.

        Args:
            output_directory: Directory receiving both artifacts.
            error_patterns: Regular expressions marking a crash.
        """
        out_dir = Path(output_directory)
        self.results_path = out_dir / RESULTS_FILE_NAME
        self.transcript_path = out_dir / TRANSCRIPT_FILE_NAME
        self._patterns = [re.compile(p) for p in error_patterns]
        self._queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()
        self._completed = asyncio.Event()
        self._transcript: IO[str] | None = None
        self._results: IO[str] | None = None
        self._in_results = False
        self._flushed = False
        self.line_that_matched_error_pattern: str | None = None
        self.wasm_exit_code: int | None = None

    @property
    def completed(self) -> bool:
        return self._completed.is_set()

    def add_error_patterns(self, patterns: Iterable[str]) -> None:
        """Watch for *patterns* in addition to those given at construction."""
        self._patterns.extend(re.compile(p) for p in patterns)

    def reset_artifacts(self) -> None:
        """Delete both artifacts and reopen them empty."""
        self.results_path.parent.mkdir(parents=True, exist_ok=True)
        self._close_files()
        self.results_path.unlink(missing_ok=True)
        self.transcript_path.unlink(missing_ok=True)
        self._transcript = open(self.transcript_path, "w", encoding="utf-8")  # noqa: SIM115
        self._results = open(self.results_path, "w", encoding="utf-8")  # noqa: SIM115

    def on_stdout(self, line: str) -> None:
        self._queue.put_nowait((_STDOUT, line))

    def on_stderr(self, line: str) -> None:
        self._queue.put_nowait((_STDERR, line))

    def end_of_input(self) -> None:
        self._queue.put_nowait(_END_OF_INPUT)

    async def run(self, cancellation: CancellationSignal) -> None:
        """Process queued lines until the guest exits or input ends.

        Ends as cancelled when *cancellation* is set first.

        Raises:
            asyncio.CancelledError: If the signal is set while waiting.
        """
        cancel_task = asyncio.ensure_future(cancellation.wait())
        try:
            while not self.completed:
                get_task = asyncio.ensure_future(self._queue.get())
                await asyncio.wait(
                    {get_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if not get_task.done():
                    get_task.cancel()
                    raise asyncio.CancelledError
                self._handle(get_task.result())
        finally:
            cancel_task.cancel()

    def flush(self) -> LogJudgment:
        """Drain remaining lines, close the artifacts, and return the judgment.

        Raises:
            RuntimeError: If the pipeline has not completed.
        """
        if not self.completed:
            msg = "Log pipeline flushed before it completed"
            raise RuntimeError(msg)
        if not self._flushed:
            while not self._queue.empty():
                item = self._queue.get_nowait()
                if item is not _END_OF_INPUT:
                    self._process_line(*item)
            self._close_files()
            self._flushed = True
        return LogJudgment(
            exit_code=self._judged_exit_code(),
            matched_error_line=self.line_that_matched_error_pattern,
        )

    def close(self) -> None:
        """Close the artifacts without producing a judgment."""
        self._close_files()

    # -- internals ---------------------------------------------------------

    def _handle(self, item: tuple[str, str] | None) -> None:
        if item is _END_OF_INPUT:
            logger.debug("Log pipeline reached end of input")
            self._completed.set()
            return
        self._process_line(*item)

    def _process_line(self, channel: str, line: str) -> None:
        self._write_transcript(line)
        self._check_error_patterns(line)

        if channel == _STDERR:
            logger.warning(line)
            return

        stripped = line.strip()
        if stripped == RESULTS_START_MARKER:
            self._in_results = True
            return
        if stripped == RESULTS_END_MARKER:
            self._in_results = False
            if self._results is not None:
                self._results.flush()
            return
        if self._in_results:
            if self._results is not None:
                self._results.write(line + "\n")
            return

        match = _EXIT_LINE_RE.match(stripped)
        if match:
            self.wasm_exit_code = int(match.group(1))
            logger.info("Guest reported exit code %d", self.wasm_exit_code)
            self._completed.set()
            return

        logger.info(line)

    def _write_transcript(self, line: str) -> None:
        if self._transcript is not None:
            self._transcript.write(line + "\n")
            self._transcript.flush()

    def _check_error_patterns(self, line: str) -> None:
        if self.line_that_matched_error_pattern is not None:
            return
        for pattern in self._patterns:
            if pattern.search(line):
                self.line_that_matched_error_pattern = line
                return

    def _judged_exit_code(self) -> ExitCode:
        if self.wasm_exit_code is None or self.wasm_exit_code == 0:
            return ExitCode.SUCCESS
        logger.error("Guest reported exit code %d", self.wasm_exit_code)
        return ExitCode.GENERAL_FAILURE

    def _close_files(self) -> None:
        for handle in (self._transcript, self._results):
            if handle is not None and not handle.closed:
                handle.close()
        self._transcript = None
        self._results = None
