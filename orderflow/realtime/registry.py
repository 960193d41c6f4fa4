from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

from starlette.websockets import WebSocketState

from orderflow.common.logging import log_event
from orderflow.messaging.bus import BroadcastBus, Unsubscribe, missed, next_sequence
from orderflow.orders.models import ProgressEvent

logger = logging.getLogger(__name__)

CONNECTED_MESSAGE = "WebSocket connected. You will receive order updates."


class SubscriberHandle(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self) -> None: ...


class WebSocketSubscriber:
    """SubscriberHandle over an accepted Starlette/FastAPI websocket."""

    def __init__(self, websocket: Any) -> None:
        self._ws = websocket

    @property
    def is_open(self) -> bool:
        return (
            self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        await self._ws.send_text(text)

    async def close(self) -> None:
        if self.is_open:
            await self._ws.close()


def update_message(event: ProgressEvent) -> str:
    return json.dumps({"type": "order-update", **event.to_dict()}, separators=(",", ":"))


class SubscriberRegistry:
    """
    Live subscribers of the progress feed.

    A handle added by `connect` only sees events that entered bus dispatch
    after it joined (compared by `next_sequence` stamps); there is no replay.
    Delivery iterates a snapshot, so connects and disconnects can interleave
    with a broadcast. Closed or failing handles are pruned lazily.
    """

    def __init__(self, *, send_timeout_s: float = 5.0) -> None:
        self._handles: dict[SubscriberHandle, int] = {}
        self._send_timeout_s = max(0.1, float(send_timeout_s))
        self._unsubscribe: Optional[Unsubscribe] = None

    def count(self) -> int:
        return len(self._handles)

    def attach(self, bus: BroadcastBus) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = bus.subscribe(self.broadcast)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def connect(self, handle: SubscriberHandle) -> None:
        await handle.send_text(json.dumps({"type": "connected", "message": CONNECTED_MESSAGE}))
        self._handles[handle] = next_sequence()
        log_event(logger, "subscriber.connected", subscribers=len(self._handles))

    def disconnect(self, handle: SubscriberHandle) -> None:
        if handle in self._handles:
            del self._handles[handle]
            log_event(logger, "subscriber.disconnected", subscribers=len(self._handles))

    async def _send(self, handle: SubscriberHandle, text: str) -> bool:
        if not handle.is_open:
            return False
        try:
            await asyncio.wait_for(handle.send_text(text), timeout=self._send_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_event(logger, "subscriber.send_failed", severity="WARNING", error=f"{type(e).__name__}: {e}")
            return False
        return True

    async def broadcast(self, event: ProgressEvent) -> int:
        """Send one event to every connected handle; returns the number reached."""
        targets = [h for h, joined in list(self._handles.items()) if not missed(event, joined)]
        if not targets:
            return 0
        text = update_message(event)
        results = await asyncio.gather(*(self._send(h, text) for h in targets))
        for handle, ok in zip(targets, results):
            if not ok:
                self.disconnect(handle)
        return sum(1 for ok in results if ok)

    async def close(self) -> None:
        self.detach()
        handles = list(self._handles)
        self._handles.clear()
        for handle in handles:
            try:
                await handle.close()
            except Exception as e:
                log_event(logger, "subscriber.close_failed", severity="WARNING", error=str(e))
        log_event(logger, "subscriber_registry.closed", closed=len(handles))
