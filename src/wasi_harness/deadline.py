"""Deadline guard bounding the total duration of a run."""

from __future__ import annotations

import asyncio
import logging
import time

from wasi_harness.cancellation import CancellationSignal

logger = logging.getLogger(__name__)


class DeadlineGuard:
    """Countdown that sets a cancellation signal when it expires.

    The countdown is armed on construction. :meth:`restart` re-arms it from
    the current moment, which excludes setup latency (for example waiting
    for an auxiliary service) from the execution budget.

    Attributes:
        timeout_seconds: Length of the countdown.
    """

    def __init__(self, timeout_seconds: float, cancellation: CancellationSignal) -> None:
        """Arm the countdown.

        Args:
            timeout_seconds: Length of the countdown in seconds.
            cancellation: Signal set when the countdown expires.
        """
        self.timeout_seconds = timeout_seconds
        self._cancellation = cancellation
        self._deadline = time.monotonic() + timeout_seconds

    @property
    def remaining(self) -> float:
        """Seconds left before expiry, never negative."""
        return max(0.0, self._deadline - time.monotonic())

    def restart(self) -> None:
        """Re-arm the countdown from now."""
        self._deadline = time.monotonic() + self.timeout_seconds
        logger.debug("Deadline restarted: %.1fs", self.timeout_seconds)

    async def run(self) -> None:
        """Wait for expiry and set the signal.

        Returns early, without touching the signal, if it is set elsewhere
        first. A :meth:`restart` issued while waiting is honoured.
        """
        while not self._cancellation.is_set:
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                self._cancellation.cancel("timeout")
                return
            try:
                await asyncio.wait_for(self._cancellation.wait(), timeout=remaining)
            except TimeoutError:
                continue
