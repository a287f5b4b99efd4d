"""Cooperative cancellation handle passed down one turn's call chain."""

import asyncio


class TurnCancelled(Exception):
    """Raised at a checkpoint once the owning turn has been cancelled."""


class CancellationToken:
    """Single cancellation handle shared by stream reads, tools and compaction.

    Nothing is interrupted by force: code polls :attr:`cancelled` (or calls
    :meth:`raise_if_cancelled`) at its own checkpoints, so writes that already
    happened are never rolled back.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()
