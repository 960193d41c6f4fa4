from __future__ import annotations

import logging
import random
import time
from typing import Any

from orderflow.common.logging import log_event
from orderflow.messaging.envelope import EventEnvelope

logger = logging.getLogger(__name__)

_RETRYABLE_CODES = {
    "UNAVAILABLE",
    "DEADLINE_EXCEEDED",
    "ABORTED",
    "INTERNAL",
    "RESOURCE_EXHAUSTED",
    "UNKNOWN",
}
_NON_RETRYABLE_CODES = {
    "INVALID_ARGUMENT",
    "PERMISSION_DENIED",
    "UNAUTHENTICATED",
    "FAILED_PRECONDITION",
    "NOT_FOUND",
    "ALREADY_EXISTS",
}
_RETRYABLE_NAMES = {
    "ServiceUnavailable",
    "DeadlineExceeded",
    "InternalServerError",
    "Aborted",
    "ResourceExhausted",
    "Unknown",
}
_NON_RETRYABLE_NAMES = {"Unauthenticated", "PermissionDenied", "InvalidArgument", "NotFound"}


def _exc_code(exc: BaseException) -> str:
    try:
        code = getattr(exc, "code", None)
        if callable(code):
            code = code()
        if code is None:
            return ""
        # grpc StatusCode enums stringify as "StatusCode.UNAVAILABLE".
        return str(getattr(code, "name", code))
    except Exception:
        return ""


def is_retryable_publish_error(exc: BaseException) -> bool:
    if isinstance(exc, (ValueError, TypeError, AttributeError)):
        return False
    code = _exc_code(exc).upper()
    if code in _RETRYABLE_CODES:
        return True
    if code in _NON_RETRYABLE_CODES:
        return False
    name = exc.__class__.__name__
    if name in _RETRYABLE_NAMES:
        return True
    if name in _NON_RETRYABLE_NAMES:
        return False
    return True


class PubSubPublisher:
    """
    Google Pub/Sub publisher for progress envelopes.

    Blocking: call it from a worker thread (`asyncio.to_thread`). Lazy-imports
    `google.cloud.pubsub_v1` so the in-memory deployment does not need it.
    """

    def __init__(
        self,
        *,
        project_id: str,
        topic_id: str,
        producer: str,
        publisher_client: Any = None,
        max_attempts: int = 5,
        initial_backoff_s: float = 0.25,
        max_backoff_s: float = 5.0,
        deadline_s: float = 15.0,
        sleep=time.sleep,
    ) -> None:
        self.project_id = str(project_id)
        self.topic_id = str(topic_id)
        self.producer = str(producer)
        self._max_attempts = max(1, int(max_attempts))
        self._initial_backoff_s = max(0.0, float(initial_backoff_s))
        self._max_backoff_s = max(0.0, float(max_backoff_s))
        self._deadline_s = max(0.1, float(deadline_s))
        self._sleep = sleep

        if publisher_client is None:
            try:
                from google.cloud import pubsub_v1  # type: ignore
            except Exception as e:  # pragma: no cover
                raise RuntimeError(
                    "google-cloud-pubsub is required to use PubSubPublisher. "
                    "Install with: pip install google-cloud-pubsub"
                ) from e
            publisher_client = pubsub_v1.PublisherClient()

        self._client = publisher_client
        self._topic_path = self._client.topic_path(self.project_id, self.topic_id)

    @property
    def topic_path(self) -> str:
        return self._topic_path

    def _backoff(self, attempt: int) -> float:
        base = self._initial_backoff_s * (2 ** max(0, attempt - 1))
        # Full jitter (avoid thundering herd).
        sleep_s = min(self._max_backoff_s, base) * random.uniform(0.5, 1.5)
        self._sleep(max(0.0, sleep_s))
        return sleep_s

    def publish_envelope(self, envelope: EventEnvelope) -> str:
        """Publish one envelope; returns the Pub/Sub message id."""
        started = time.monotonic()
        attrs = {
            "event_type": envelope.event_type,
            "schema_version": str(envelope.schemaVersion),
            "producer": envelope.producer,
            "trace_id": envelope.trace_id,
            "ts": envelope.ts,
        }
        for attempt in range(1, self._max_attempts + 1):
            try:
                remaining = max(0.1, self._deadline_s - (time.monotonic() - started))
                future = self._client.publish(self._topic_path, envelope.to_bytes(), **attrs)
                message_id = str(future.result(timeout=remaining))
                log_event(
                    logger,
                    "pubsub.publish_success",
                    severity="DEBUG",
                    topic=self._topic_path,
                    message_id=message_id,
                    trace_id=envelope.trace_id,
                    attempt=attempt,
                    elapsed_ms=int((time.monotonic() - started) * 1000),
                )
                return message_id
            except Exception as e:
                retryable = is_retryable_publish_error(e)
                final = (not retryable) or attempt >= self._max_attempts
                log_event(
                    logger,
                    "pubsub.publish_failure",
                    severity="ERROR" if final else "WARNING",
                    topic=self._topic_path,
                    trace_id=envelope.trace_id,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    retryable=retryable,
                    error_type=e.__class__.__name__,
                    error_code=_exc_code(e),
                    error=str(e),
                )
                if final:
                    raise
                self._backoff(attempt)
        raise RuntimeError("Pub/Sub publish failed without exception")

    def close(self) -> None:
        """Best-effort shutdown of batching threads and the gRPC transport."""
        client = self._client
        for name in ("stop", "close"):
            fn = getattr(client, name, None)
            if callable(fn):
                try:
                    fn()
                except Exception:
                    log_event(logger, "pubsub.close_failed", severity="WARNING", step=name, exc_info=True)
        transport_close = getattr(getattr(client, "transport", None), "close", None)
        if callable(transport_close):
            try:
                transport_close()
            except Exception:
                log_event(logger, "pubsub.close_failed", severity="WARNING", step="transport", exc_info=True)

    def __enter__(self) -> "PubSubPublisher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()
