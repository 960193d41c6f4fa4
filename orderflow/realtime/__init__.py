from .registry import SubscriberRegistry, WebSocketSubscriber

__all__ = ["SubscriberRegistry", "WebSocketSubscriber"]
