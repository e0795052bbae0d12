"""Tests for reconciling the process result with the pipeline judgment."""

from __future__ import annotations

from hypothesis import given, settings, strategies as st
import pytest

from wasi_harness.models import EngineInvocationResult, ExitCode, LogJudgment
from wasi_harness.orchestrator import reconcile

_EXIT_CODES = st.integers(min_value=-64, max_value=255)
_MATCHED = st.one_of(st.none(), st.text(min_size=1, max_size=40))
_JUDGED = st.sampled_from(list(ExitCode))


def _result(code: int) -> EngineInvocationResult:
    return EngineInvocationResult(exit_code=code)


@pytest.mark.unit
class TestReconcile:
    """Fixed priority: exit code mismatch, then error pattern, then judgment."""

    def test_all_signals_agree_success(self) -> None:
        """Matching exit code, clean transcript, successful judgment."""
        outcome = reconcile(_result(0), 0, LogJudgment(exit_code=ExitCode.SUCCESS))
        assert outcome == ExitCode.SUCCESS

    def test_expected_42_got_0(self) -> None:
        """A process that exits 0 when 42 is expected failed."""
        outcome = reconcile(_result(0), 42, LogJudgment(exit_code=ExitCode.SUCCESS))
        assert outcome == ExitCode.GENERAL_FAILURE

    def test_error_line_with_matching_exit_code_is_crash(self) -> None:
        """A crash signature in the transcript overrides a clean exit code."""
        judgment = LogJudgment(
            exit_code=ExitCode.SUCCESS, matched_error_line="thread 'main' panicked at x"
        )
        assert reconcile(_result(0), 0, judgment) == ExitCode.APP_CRASH

    def test_pipeline_failure_returned_when_codes_agree(self) -> None:
        """The pipeline may detect failure even when the exit codes agree."""
        judgment = LogJudgment(exit_code=ExitCode.GENERAL_FAILURE)
        assert reconcile(_result(0), 0, judgment) == ExitCode.GENERAL_FAILURE

    def test_mismatch_logs_both_codes(self, caplog: pytest.LogCaptureFixture) -> None:
        """The diagnostic names the actual and the expected exit code."""
        reconcile(_result(1), 0, LogJudgment(exit_code=ExitCode.SUCCESS))
        assert "exit code 1 but 0 was expected" in caplog.text

    def test_crash_logs_matched_line(self, caplog: pytest.LogCaptureFixture) -> None:
        """The diagnostic names the matched error line."""
        judgment = LogJudgment(exit_code=ExitCode.SUCCESS, matched_error_line="BOOM here")
        reconcile(_result(0), 0, judgment)
        assert "BOOM here" in caplog.text

    @given(actual=_EXIT_CODES, expected=_EXIT_CODES, matched=_MATCHED, judged=_JUDGED)
    @settings(max_examples=200)
    def test_mismatch_always_general_failure(
        self, actual: int, expected: int, matched: str | None, judged: ExitCode
    ) -> None:
        """Exit code mismatch wins regardless of judgment or matched patterns."""
        if actual == expected:
            return
        judgment = LogJudgment(exit_code=judged, matched_error_line=matched)
        assert reconcile(_result(actual), expected, judgment) == ExitCode.GENERAL_FAILURE

    @given(code=_EXIT_CODES, matched=st.text(min_size=1, max_size=40), judged=_JUDGED)
    @settings(max_examples=100)
    def test_match_with_equal_codes_always_crash(
        self, code: int, matched: str, judged: ExitCode
    ) -> None:
        """With agreeing exit codes, a matched line always means APP_CRASH."""
        judgment = LogJudgment(exit_code=judged, matched_error_line=matched)
        assert reconcile(_result(code), code, judgment) == ExitCode.APP_CRASH

    @given(code=_EXIT_CODES, judged=_JUDGED)
    @settings(max_examples=100)
    def test_clean_run_returns_judgment(self, code: int, judged: ExitCode) -> None:
        """Otherwise the pipeline's judgment is the outcome."""
        judgment = LogJudgment(exit_code=judged)
        assert reconcile(_result(code), code, judgment) == judged
