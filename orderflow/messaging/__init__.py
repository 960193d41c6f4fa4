"""
Progress broadcast over an event bus abstraction.

This package provides:
- A small JSON envelope (`EventEnvelope`)
- Google Pub/Sub publisher/subscriber clients (lazy-imported)
- An in-memory bus for single-process deployments and tests
"""

from .bus import BroadcastBus, InMemoryBroadcastBus
from .envelope import EventEnvelope
from .publisher import PubSubPublisher
from .pubsub_bus import PubSubBroadcastBus
from .subscriber import PubSubSubscriber

__all__ = [
    "BroadcastBus",
    "EventEnvelope",
    "InMemoryBroadcastBus",
    "PubSubBroadcastBus",
    "PubSubPublisher",
    "PubSubSubscriber",
]
