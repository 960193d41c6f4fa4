from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from orderflow.common.logging import log_event
from orderflow.errors import OrderNotFoundError, OrderValidationError
from orderflow.jobs.queue import JobQueue
from orderflow.orders.models import JobPayload, Order
from orderflow.persistence.order_store import OrderStore

logger = logging.getLogger(__name__)

# Matches the orders.amount column, NUMERIC(20, 8).
AMOUNT_SCALE = 8
AMOUNT_LIMIT = Decimal(10) ** (20 - AMOUNT_SCALE)


def normalize_token(value: Any, *, field: str) -> str:
    token = str(value or "").strip().upper()
    if not token:
        raise OrderValidationError(f"{field} is required", field=field)
    return token


def parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise OrderValidationError("amount must be a number", field="amount")
    try:
        # str() first so floats keep their shortest repr (0.1 -> "0.1").
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise OrderValidationError("amount must be a number", field="amount") from e
    if not amount.is_finite():
        raise OrderValidationError("amount must be a finite number", field="amount")
    if amount <= 0:
        raise OrderValidationError("amount must be positive", field="amount")
    if amount >= AMOUNT_LIMIT:
        raise OrderValidationError(f"amount must be below {AMOUNT_LIMIT}", field="amount")
    if amount != amount.quantize(Decimal(1).scaleb(-AMOUNT_SCALE)):
        raise OrderValidationError(f"amount allows at most {AMOUNT_SCALE} decimal places", field="amount")
    return amount


class OrderService:
    """
    Accepts order submissions: validate, persist as `pending`, enqueue one job.

    Validation happens before any side effect, so a rejected submission leaves
    neither an order nor a job behind.
    """

    def __init__(self, *, store: OrderStore, queue: JobQueue) -> None:
        self._store = store
        self._queue = queue

    async def submit(self, *, from_token: Any, to_token: Any, amount: Any) -> Order:
        src = normalize_token(from_token, field="fromToken")
        dst = normalize_token(to_token, field="toToken")
        qty = parse_amount(amount)

        order = await self._store.create(from_token=src, to_token=dst, amount=qty)
        log_event(
            logger,
            "order.created",
            order_id=order.order_id,
            from_token=src,
            to_token=dst,
            amount=qty,
        )
        job_id = await self._queue.enqueue(
            JobPayload(order_id=order.order_id, from_token=src, to_token=dst, amount=qty)
        )
        log_event(logger, "order.enqueued", order_id=order.order_id, job_id=job_id)
        return order

    async def get_order(self, order_id: str) -> Order:
        order = await self._store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_orders(self) -> list[Order]:
        return await self._store.list()
