import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from jobqueue.domain.models import JobEvent

logger = logging.getLogger(__name__)

Observer = Callable[[JobEvent], Any]

class EventStream:
    """
    Buffered subscription to an EventBus. Iterate with `async for`, or
    call get(). Events published while the buffer is full are dropped.
    """
    def __init__(self, bus: "EventBus", maxsize: int = 1000):
        self._bus = bus
        self._queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, event: JobEvent):
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self, timeout: Optional[float] = None) -> JobEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def close(self):
        self._bus._streams.discard(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> JobEvent:
        return await self._queue.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()

class EventBus:
    """
    Fan-out of job lifecycle events to observers and streams.
    Events are published after the store transaction that caused them commits.
    Observer failures are logged, never raised into the dispatch path.
    """
    def __init__(self):
        self._observers: list[Observer] = []
        self._streams: set[EventStream] = set()
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def open_stream(self, maxsize: int = 1000) -> EventStream:
        stream = EventStream(self, maxsize=maxsize)
        self._streams.add(stream)
        return stream

    def publish(self, event: JobEvent):
        for stream in list(self._streams):
            stream._offer(event)

        for observer in list(self._observers):
            try:
                outcome = observer(event)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._pending.add(task)
                    task.add_done_callback(self._observer_done)
            except Exception as e:
                logger.error(f"Event observer {observer!r} failed on {event.kind}: {e}", exc_info=True)

    def _observer_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async event observer failed: {exc}", exc_info=exc)

    async def drain(self):
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
