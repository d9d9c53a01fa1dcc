from typing import AsyncIterator, Optional
import asyncio

import structlog

logger = structlog.get_logger(__name__)

_CLOSED = object()


class EventChannel:
    """Bounded hand-off between the encoder and the HTTP response

    Writes never block the decode loop except for the terminal frame. Once the
    consumer has gone away, everything written is dropped.
    """

    def __init__(self, max_size: int = 256):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._drained = asyncio.Event()
        self._consumer_gone = False
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def consumer_gone(self) -> bool:
        return self._consumer_gone

    async def send(self, frame: str, wait: bool = False) -> bool:
        """Queue one frame; returns False when it was dropped"""

        if self._closed or self._consumer_gone:
            self.dropped += 1
            return False

        if wait:
            await self._queue.put(frame)
            return True

        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event channel full, dropping frame", dropped=self.dropped)
            return False
        return True

    async def close(self):
        """Mark the end of the stream for the consumer"""

        if self._closed:
            return
        self._closed = True
        if self._consumer_gone:
            self._drained.set()
            return
        await self._queue.put(_CLOSED)

    def detach(self):
        """Called by the transport when the client disconnects"""

        self._consumer_gone = True
        self._drained.set()
        # unblock a terminal send waiting for room
        while not self._queue.empty():
            self._queue.get_nowait()

    async def frames(self) -> AsyncIterator[str]:
        """Yield queued frames until the channel is closed"""

        while True:
            frame = await self._queue.get()
            if frame is _CLOSED:
                self._drained.set()
                return
            yield frame

    async def wait_drained(self, timeout: Optional[float] = None) -> bool:
        """Wait until the consumer has read every frame up to the close marker"""

        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Event channel was not drained in time", timeout=timeout)
            return False
