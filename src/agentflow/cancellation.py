"""Cooperative cancellation tokens.

A CancellationToken is created per pipeline run or session and passed
explicitly down the call chain. Long-running loops check it at their
turn boundaries; nothing is interrupted mid-await.
"""

import asyncio
from typing import Optional


class CancelledByRequest(Exception):
    """Raised when work observes a cancelled token.

    Attributes:
        reason: Why the work was cancelled, if the caller said.
    """

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(reason or "Cancelled")


class CancellationToken:
    """One-shot cancellation signal shared by a unit of work.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel("Stopped by user")
        >>> token.cancelled
        True
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Signal cancellation. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise CancelledByRequest if the token has been cancelled."""
        if self._event.is_set():
            raise CancelledByRequest(self._reason)

    async def wait(self) -> None:
        await self._event.wait()
