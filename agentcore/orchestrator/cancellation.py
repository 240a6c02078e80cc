"""Cooperative cancellation tokens threaded through task execution."""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskCancelledError(Exception):
    """Raised at a check point once the owning token has been cancelled."""
    pass


class CancellationToken:
    """
    Shared cancellation flag for one task.

    Cancellation is cooperative: code checks the token at its own check points
    (raise_if_cancelled) or races an awaitable against it (run). Nothing is
    interrupted between suspension points.
    """

    def __init__(self, owner: Optional[str] = None):
        self.owner = owner
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Signal cancellation.

        Args:
            reason: Human-readable reason recorded on the first cancel only

        Returns:
            True if this call cancelled the token, False if it already was
        """
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        logger.debug(f"Token {self.owner} cancelled: {reason}")
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for delay seconds, waking early (and raising) on cancellation."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await awaitable unless the token is cancelled first.

        The awaitable is cancelled if the token wins the race.

        Raises:
            TaskCancelledError: If the token is cancelled before completion
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Work raised after cancellation of {self.owner}: {e}")
        raise TaskCancelledError(self.reason or "cancelled")
