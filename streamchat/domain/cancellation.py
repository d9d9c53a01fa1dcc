from typing import Any, Awaitable, Optional
import asyncio

from streamchat.domain.errors import TurnCancelled


class CancellationToken:
    """Single cancellation signal shared by every await of one turn"""

    def __init__(self):
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        """Fire the token; in-flight awaits guarded by run() are aborted"""
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    def _get_event(self) -> asyncio.Event:
        # created lazily so the token can be built outside a running loop
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    def raise_if_cancelled(self):
        if self._cancelled:
            raise TurnCancelled("turn cancelled")

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable` unless the token fires first"""

        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._get_event().wait())

        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        waiter.cancel()
        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise TurnCancelled("turn cancelled")
