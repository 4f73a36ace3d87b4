"""Cooperative cancellation for one in-flight reply."""

import asyncio

from agent_engine.services.errors import CancellationError
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)


class CancellationController:
    """Wraps an optional external abort signal plus an internal one.

    Either tripping counts as cancelled. Checks are cooperative: callers look
    at ``cancelled`` before reading a chunk and before dispatching tools.
    """

    def __init__(self, signal: asyncio.Event | None = None):
        self._signal = signal
        self._internal = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._internal.is_set() or (self._signal is not None and self._signal.is_set())

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._internal.is_set():
            logger.info(f"Cancellation requested: {reason}")
            self.reason = reason
            self._internal.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self.reason or "cancelled by caller")

    async def wait(self) -> None:
        """Block until either signal trips."""
        if self._signal is None:
            await self._internal.wait()
            return

        waiters = {
            asyncio.ensure_future(self._internal.wait()),
            asyncio.ensure_future(self._signal.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
