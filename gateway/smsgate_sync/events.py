"""Registration event sink.

Listeners are registered explicitly; a caller that prefers to drain events
can attach an ``asyncio.Queue`` instead.  Each registration attempt emits
exactly one event, so a queue sees one item per attempt.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from .models import RegistrationEvent

logger = logging.getLogger(__name__)

Listener = Callable[[RegistrationEvent], Awaitable[None] | None]


class RegistrationEvents:
    """Fan-out of registration outcomes to listeners and queues."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._queues: list[asyncio.Queue[RegistrationEvent]] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def subscribe(self) -> asyncio.Queue[RegistrationEvent]:
        """Return a queue that receives every subsequent event."""
        queue: asyncio.Queue[RegistrationEvent] = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[RegistrationEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    async def emit(self, event: RegistrationEvent) -> None:
        for queue in list(self._queues):
            queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Registration listener failed for %s", type(event).__name__
                )
