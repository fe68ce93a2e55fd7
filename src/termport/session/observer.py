"""Observer contract and stock observers for events and fatal failures."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol, runtime_checkable

from termport.errors import SessionFailedError
from termport.protocol.models import Event

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], Awaitable[None] | None]
FatalCallback = Callable[[SessionFailedError], Awaitable[None] | None]


@runtime_checkable
class SessionObserver(Protocol):
    """Receives asynchronous events and the single fatal notification.

    Both methods are called from the session actor and must not block.
    """

    def on_event(self, event: Event) -> None:
        """Handle one decoded event."""
        ...

    def on_fatal(self, error: SessionFailedError) -> None:
        """Handle the session's irrecoverable failure (called at most once)."""
        ...


class NullObserver:
    """Drops every notification."""

    def on_event(self, event: Event) -> None:
        logger.debug("Dropping event %s (no observer)", event.type.value)

    def on_fatal(self, error: SessionFailedError) -> None:
        logger.debug("Dropping fatal notification %s (no observer)", error)


class QueueObserver:
    """Buffers notifications in an ``asyncio.Queue`` for a consumer task.

    After ``close()`` further notifications are dropped.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[Event | SessionFailedError] = asyncio.Queue(
            maxsize=maxsize
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def on_event(self, event: Event) -> None:
        self._offer(event)

    def on_fatal(self, error: SessionFailedError) -> None:
        self._offer(error)

    async def next_event(self, timeout: float | None = None) -> Event:
        """Wait for the next event.

        Raises the session's ``SessionFailedError`` if that arrives first and
        ``TimeoutError`` if *timeout* elapses.
        """
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if isinstance(item, SessionFailedError):
            raise item
        return item

    async def events(self) -> AsyncIterator[Event]:
        """Iterate over events until the session fails."""
        while True:
            item = await self._queue.get()
            if isinstance(item, SessionFailedError):
                return
            yield item

    def _offer(self, item: Event | SessionFailedError) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Observer queue full (%d items), dropping notification",
                           self._queue.maxsize)


class CallbackObserver:
    """Adapts plain or async callables to the observer contract.

    Coroutine callbacks are scheduled as tasks so the actor never waits on
    them; their failures are logged.
    """

    def __init__(
        self,
        on_event: EventCallback | None = None,
        on_fatal: FatalCallback | None = None,
    ) -> None:
        self._on_event = on_event
        self._on_fatal = on_fatal
        self._tasks: set[asyncio.Task[None]] = set()

    def on_event(self, event: Event) -> None:
        if self._on_event is not None:
            self._dispatch(self._on_event(event))

    def on_fatal(self, error: SessionFailedError) -> None:
        if self._on_fatal is not None:
            self._dispatch(self._on_fatal(error))

    def _dispatch(self, result: Awaitable[None] | None) -> None:
        if not inspect.isawaitable(result):
            return
        task = asyncio.ensure_future(result)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Observer callback failed: %s", task.exception())
