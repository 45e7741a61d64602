"""Subscription channels used for view streams, thread sessions and the error channel."""

import asyncio
from typing import AsyncIterator, Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

_CLOSED = object()


class EventChannel(Generic[T]):
    """Synchronous fan-out of values to listeners, with an async stream view."""

    def __init__(self, name: str = "channel") -> None:
        self.name = name
        self._listeners: list[Callable[[T], None]] = []
        self._streams: list[asyncio.Queue] = []
        self.closed = False

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, value: T) -> None:
        """Deliver a value to every listener. A failing listener does not stop the others."""
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Listener failed", channel=self.name)

    def close(self) -> None:
        """Drop every listener and end every open stream."""
        self.closed = True
        self._listeners.clear()
        for queue in self._streams:
            queue.put_nowait(_CLOSED)
        self._streams.clear()

    async def stream(self) -> AsyncIterator[T]:
        """Iterate over published values until the consumer stops or the channel closes."""
        if self.closed:
            return
        queue: asyncio.Queue = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        self._streams.append(queue)
        try:
            while True:
                value = await queue.get()
                if value is _CLOSED:
                    return
                yield value
        finally:
            unsubscribe()
            if queue in self._streams:
                self._streams.remove(queue)
