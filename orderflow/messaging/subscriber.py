from __future__ import annotations

import logging
from typing import Any, Callable

from orderflow.common.logging import log_event
from orderflow.messaging.envelope import EventEnvelope

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[EventEnvelope], None]


class PubSubSubscriber:
    """
    Google Pub/Sub streaming-pull subscriber.

    The handler runs on the client's callback thread pool, not the event loop.
    """

    def __init__(
        self,
        *,
        project_id: str,
        subscription_id: str,
        subscriber_client: Any = None,
    ) -> None:
        self.project_id = str(project_id)
        self.subscription_id = str(subscription_id)

        if subscriber_client is None:
            try:
                from google.cloud import pubsub_v1  # type: ignore
            except Exception as e:  # pragma: no cover
                raise RuntimeError(
                    "google-cloud-pubsub is required to use PubSubSubscriber. "
                    "Install with: pip install google-cloud-pubsub"
                ) from e
            subscriber_client = pubsub_v1.SubscriberClient()

        self._client = subscriber_client
        self._subscription_path = self._client.subscription_path(self.project_id, self.subscription_id)

    @property
    def subscription_path(self) -> str:
        return self._subscription_path

    def subscribe(self, handler: EnvelopeHandler) -> Any:
        """
        Start a streaming pull subscription and return its StreamingPullFuture.

        Undecodable messages are acked and dropped (redelivery cannot fix them);
        handler exceptions nack so Pub/Sub redelivers.
        The caller owns the future (`future.cancel()`).
        """

        def _callback(message: Any) -> None:
            try:
                envelope = EventEnvelope.from_bytes(message.data)
            except Exception as e:
                log_event(
                    logger,
                    "pubsub.message_invalid",
                    severity="WARNING",
                    message_id=str(getattr(message, "message_id", "")),
                    error=str(e),
                )
                message.ack()
                return
            try:
                handler(envelope)
            except Exception:
                log_event(logger, "pubsub.handler_failed", severity="ERROR", trace_id=envelope.trace_id, exc_info=True)
                message.nack()
                return
            message.ack()

        return self._client.subscribe(self._subscription_path, callback=_callback)

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()
