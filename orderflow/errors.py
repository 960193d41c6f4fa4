from __future__ import annotations


class OrderflowError(RuntimeError):
    """Base class for errors raised by the order pipeline and its services."""


class OrderValidationError(OrderflowError, ValueError):
    """
    Raised for malformed or out-of-range submissions.

    Raised before any side effect: no order is created and no job is enqueued.
    """

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class OrderNotFoundError(OrderflowError, LookupError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = str(order_id)


class TransientPipelineError(OrderflowError):
    """
    A stage failed in a way that may succeed on a later attempt
    (venue quote failure, settlement failure, stage deadline).
    """


class PermanentJobError(OrderflowError):
    """
    The job can never succeed; the queue dead-letters it without further retries.
    """
