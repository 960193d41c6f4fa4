from .app import CreateOrderRequest, create_app

__all__ = ["CreateOrderRequest", "create_app"]
