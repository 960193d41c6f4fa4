from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from orderflow.common.logging import log_event
from orderflow.messaging.bus import DEFAULT_MAX_BACKLOG, ListenerDispatcher, ProgressListener, Unsubscribe
from orderflow.messaging.envelope import ORDER_PROGRESS_EVENT, EventEnvelope
from orderflow.messaging.publisher import PubSubPublisher
from orderflow.messaging.subscriber import PubSubSubscriber
from orderflow.orders.models import ProgressEvent, utc_now

logger = logging.getLogger(__name__)


class PubSubBroadcastBus:
    """
    Cross-process bus over one Pub/Sub topic.

    Publishing goes through a single sender task so a job's events leave in the
    order they were produced; the blocking client call runs in a thread.
    Receiving is optional (worker processes only publish). Envelopes produced
    before this bus started are dropped: subscribers never see history.
    """

    def __init__(
        self,
        *,
        publisher: PubSubPublisher,
        subscriber: Optional[PubSubSubscriber] = None,
        max_backlog: int = DEFAULT_MAX_BACKLOG,
        flush_timeout_s: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._publisher = publisher
        self._subscriber = subscriber
        self._clock = clock
        self._flush_timeout_s = max(0.0, float(flush_timeout_s))
        self._dispatcher = ListenerDispatcher(name="pubsub-bus", max_backlog=max_backlog)
        self._outbound: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max(1, int(max_backlog)))
        self._sender: Optional[asyncio.Task[None]] = None
        self._streaming: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._started_at: Optional[datetime] = None

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    async def start(self) -> None:
        if self._sender is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._started_at = self._clock()
        self._dispatcher.start()
        self._sender = asyncio.create_task(self._send_loop(), name="pubsub-bus-sender")
        if self._subscriber is not None:
            self._streaming = self._subscriber.subscribe(self._on_envelope)
        log_event(
            logger,
            "bus.started",
            topic=self._publisher.topic_path,
            subscription=self._subscriber.subscription_path if self._subscriber else None,
        )

    async def publish(self, event: ProgressEvent) -> None:
        if self._sender is None:
            log_event(logger, "bus.publish_dropped", severity="WARNING", reason="not_started", order_id=event.order_id)
            return
        try:
            self._outbound.put_nowait(event)
        except asyncio.QueueFull:
            log_event(logger, "bus.publish_dropped", severity="WARNING", reason="backlog_full", order_id=event.order_id)

    def subscribe(self, listener: ProgressListener) -> Unsubscribe:
        return self._dispatcher.subscribe(listener)

    async def _send_loop(self) -> None:
        while True:
            event = await self._outbound.get()
            envelope = EventEnvelope.new(
                event_type=ORDER_PROGRESS_EVENT,
                producer=self._publisher.producer,
                payload=event.to_dict(),
            )
            try:
                await asyncio.to_thread(self._publisher.publish_envelope, envelope)
            except Exception as e:
                log_event(
                    logger,
                    "bus.publish_failed",
                    severity="ERROR",
                    order_id=event.order_id,
                    status=event.status.value,
                    error=str(e),
                )
            finally:
                self._outbound.task_done()

    def _on_envelope(self, envelope: EventEnvelope) -> None:
        # Runs on a Pub/Sub callback thread.
        if envelope.event_type != ORDER_PROGRESS_EVENT:
            return
        started_at = self._started_at
        try:
            if started_at is not None and envelope.produced_at < started_at:
                return
            event = ProgressEvent.from_dict(envelope.payload)
        except ValueError as e:
            log_event(logger, "bus.envelope_invalid", severity="WARNING", trace_id=envelope.trace_id, error=str(e))
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatcher.offer, event)
        except RuntimeError:
            # Loop shut down between the check and the call.
            return

    async def close(self) -> None:
        if self._streaming is not None:
            self._streaming.cancel()
            self._streaming = None
        if self._sender is not None:
            try:
                await asyncio.wait_for(self._outbound.join(), timeout=self._flush_timeout_s)
            except asyncio.TimeoutError:
                log_event(logger, "bus.flush_timeout", severity="WARNING", pending=self._outbound.qsize())
            self._sender.cancel()
            await asyncio.gather(self._sender, return_exceptions=True)
            self._sender = None
        await self._dispatcher.close()
        await asyncio.to_thread(self._publisher.close)
        if self._subscriber is not None:
            await asyncio.to_thread(self._subscriber.close)
        log_event(logger, "bus.closed")
