"""Single-assignment cancellation signal shared by the concurrent run units."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class CancellationSignal:
    """A flag that is set at most once and can be awaited.

    The first call to :meth:`cancel` sets the flag and records its reason;
    later calls are no-ops. The signal is passed explicitly to every unit
    that must observe it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_set(self) -> bool:
        """Whether the signal has been set."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason passed to the call that set the signal, if any."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Set the signal.

        Args:
            reason: Short label recorded when this call sets the signal.

        Returns:
            ``True`` if this call set the signal, ``False`` if it was
            already set.
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        logger.debug("Cancellation signal set (%s)", reason)
        return True

    async def wait(self) -> None:
        """Block until the signal is set."""
        await self._event.wait()
