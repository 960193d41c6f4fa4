from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional, Protocol

from orderflow.common.logging import log_event
from orderflow.orders.models import ProgressEvent

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], Awaitable[None]]
Unsubscribe = Callable[[], None]

DEFAULT_MAX_BACKLOG = 1000

_sequence = itertools.count(1)


def next_sequence() -> int:
    """Process-wide, strictly increasing stamp shared by events and subscriptions."""
    return next(_sequence)


def missed(event: ProgressEvent, joined: int) -> bool:
    """True when `event` entered dispatch before a subscriber joined at `joined`."""
    return event.sequence is not None and event.sequence < joined


class BroadcastBus(Protocol):
    """
    Single-topic progress channel.

    `publish` is fire-and-forget: it returns without waiting for any listener and
    never raises into the caller. Listeners only see events published after they
    subscribed.
    """

    async def start(self) -> None: ...

    async def publish(self, event: ProgressEvent) -> None: ...

    def subscribe(self, listener: ProgressListener) -> Unsubscribe: ...

    async def close(self) -> None: ...


class ListenerDispatcher:
    """
    Delivers events to listeners from one background task, in publish order.

    Every offered event is stamped with `next_sequence()`; a listener is skipped
    for events stamped before it subscribed, however long the backlog. The
    backlog is bounded; when it is full the event is dropped with a warning
    (delivery is best-effort). Listener errors are logged and swallowed.
    """

    def __init__(self, *, name: str, max_backlog: int = DEFAULT_MAX_BACKLOG) -> None:
        self._name = name
        self._listeners: list[tuple[ProgressListener, int]] = []
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max(1, int(max_backlog)))
        self._task: Optional[asyncio.Task[None]] = None
        self.dropped = 0

    def subscribe(self, listener: ProgressListener) -> Unsubscribe:
        entry = (listener, next_sequence())
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"{self._name}-dispatch")

    def offer(self, event: ProgressEvent) -> None:
        try:
            self._queue.put_nowait(replace(event, sequence=next_sequence()))
        except asyncio.QueueFull:
            self.dropped += 1
            log_event(logger, "bus.event_dropped", severity="WARNING", bus=self._name, order_id=event.order_id)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            # Snapshot: listeners may (un)subscribe while we deliver.
            for listener, joined in list(self._listeners):
                if missed(event, joined):
                    continue
                try:
                    await listener(event)
                except Exception:
                    log_event(
                        logger,
                        "bus.listener_failed",
                        severity="ERROR",
                        bus=self._name,
                        order_id=event.order_id,
                        exc_info=True,
                    )
            self._queue.task_done()

    async def join(self) -> None:
        """Wait until every offered event has been handed to the listeners."""
        await self._queue.join()

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None


class InMemoryBroadcastBus:
    """Process-local bus: publishers and listeners share one event loop."""

    def __init__(self, *, max_backlog: int = DEFAULT_MAX_BACKLOG) -> None:
        self._dispatcher = ListenerDispatcher(name="memory-bus", max_backlog=max_backlog)
        self._started = False

    async def start(self) -> None:
        self._dispatcher.start()
        self._started = True

    async def publish(self, event: ProgressEvent) -> None:
        if not self._started:
            log_event(logger, "bus.publish_dropped", severity="WARNING", reason="not_started", order_id=event.order_id)
            return
        self._dispatcher.offer(event)

    def subscribe(self, listener: ProgressListener) -> Unsubscribe:
        return self._dispatcher.subscribe(listener)

    async def flush(self) -> None:
        await self._dispatcher.join()

    async def close(self) -> None:
        self._started = False
        await self._dispatcher.close()
