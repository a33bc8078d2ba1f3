import asyncio
import logging
from typing import Generic, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar('T')

_CLOSED = object()


class ChannelClosed(RuntimeError):
    pass


class Channel(Generic[T]):
    """FIFO hand-off between one producer side and a single consumer task.

    ``close()`` wakes a consumer blocked in ``get()`` and ends ``async for``
    iteration once buffered items are drained.
    """

    def __init__(self, name: str, maxsize: int = 0):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        size = self._queue.qsize()
        # The close sentinel is not an item.
        return size - 1 if self._closed and size else size

    def publish(self, item: T) -> None:
        if self._closed:
            raise ChannelClosed(f"channel '{self.name}' is closed")
        self._queue.put_nowait(item)

    def try_publish(self, item: T) -> bool:
        try:
            self.publish(item)
        except ChannelClosed:
            logger.warning("Dropped item on closed channel '%s': %r", self.name, item)
            return False
        return True

    async def get(self) -> T:
        if self._closed and self._queue.empty():
            raise ChannelClosed(f"channel '{self.name}' is closed")
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the sentinel for any later get() call.
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosed(f"channel '{self.name}' is closed")
        return item

    def get_nowait(self) -> Optional[T]:
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except ChannelClosed:
            raise StopAsyncIteration
