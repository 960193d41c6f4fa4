from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from decimal import Decimal
from typing import Any, Optional, Protocol

from orderflow.common.logging import log_event
from orderflow.execution.lifecycle import status_message
from orderflow.orders.models import Order, OrderStatus, utc_now

logger = logging.getLogger(__name__)

# Fields an update may set; anything else is a programming error.
UPDATABLE_FIELDS = frozenset({"selected_venue", "output_amount", "settlement_reference"})


def check_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise TypeError(f"Unsupported order fields: {sorted(unknown)}")


def log_status_update(order: Order) -> None:
    log_event(
        logger,
        "order.status_updated",
        severity="DEBUG",
        message=status_message(order.status),
        order_id=order.order_id,
        status=order.status.value,
    )


class OrderStore(Protocol):
    """
    Authoritative order state.

    `update` merges only the provided non-None fields into fields that are
    still empty (stage fields are write-once), always refreshes `updated_at`,
    and returns None (without writing) for an unknown id.
    """

    async def create(self, *, from_token: str, to_token: str, amount: Decimal) -> Order: ...

    async def get(self, order_id: str) -> Optional[Order]: ...

    async def update(self, order_id: str, status: OrderStatus, **fields: Any) -> Optional[Order]: ...

    async def list(self) -> list[Order]: ...

    async def close(self) -> None: ...


class InMemoryOrderStore:
    """
    Process-local order store.

    Writes are serialized per order id (one asyncio.Lock each), so concurrent
    workers touching different orders never wait on each other.
    """

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(self, *, from_token: str, to_token: str, amount: Decimal) -> Order:
        now = utc_now()
        order = Order(
            order_id=uuid.uuid4().hex,
            from_token=str(from_token),
            to_token=str(to_token),
            amount=Decimal(amount),
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self._orders[order.order_id] = order
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(str(order_id))

    async def update(self, order_id: str, status: OrderStatus, **fields: Any) -> Optional[Order]:
        check_update_fields(fields)
        oid = str(order_id)
        if oid not in self._orders:
            log_event(logger, "order_store.not_found", severity="WARNING", order_id=oid)
            return None
        async with self._locks[oid]:
            current = self._orders[oid]
            updated = current.merged(status=OrderStatus(status), updated_at=utc_now(), **fields)
            self._orders[oid] = updated
        log_status_update(updated)
        return updated

    async def list(self) -> list[Order]:
        return sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)

    async def close(self) -> None:
        return None
