from __future__ import annotations

import asyncio
import logging
import uuid
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from orderflow.common.logging import log_event
from orderflow.orders.models import Order, OrderStatus, utc_now
from orderflow.persistence.order_store import check_update_fields, log_status_update

logger = logging.getLogger(__name__)

_COLUMNS = (
    "order_id, from_token, to_token, amount, status, selected_venue, "
    "output_amount, settlement_reference, created_at, updated_at"
)


def row_to_order(row: Mapping[str, Any]) -> Order:
    out = row.get("output_amount")
    return Order(
        order_id=str(row["order_id"]),
        from_token=str(row["from_token"]),
        to_token=str(row["to_token"]),
        amount=Decimal(str(row["amount"])),
        status=OrderStatus(str(row["status"])),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        selected_venue=row.get("selected_venue"),
        output_amount=None if out is None else Decimal(str(out)),
        settlement_reference=row.get("settlement_reference"),
    )


def psycopg_connector(database_url: str) -> Callable[[], Any]:
    """Connection factory: autocommit connections returning dict rows."""
    import psycopg
    from psycopg.rows import dict_row

    def _connect() -> Any:
        return psycopg.connect(database_url, autocommit=True, row_factory=dict_row)

    return _connect


class PostgresOrderStore:
    """
    Postgres-backed order store (table `orders`, see persistence.migrate).

    psycopg is synchronous here; calls run in a worker thread so the event loop
    never blocks. Each update is one `UPDATE ... RETURNING` statement, which gives
    per-row isolation without any cross-order locking.
    """

    def __init__(self, *, database_url: str | None = None, connect: Callable[[], Any] | None = None) -> None:
        if connect is None:
            if not database_url:
                raise RuntimeError("Missing required env vars: DATABASE_URL")
            connect = psycopg_connector(database_url)
        self._connect = connect

    def _fetchone(self, sql: str, params: tuple[Any, ...]) -> Optional[Mapping[str, Any]]:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[Mapping[str, Any]]:
        with self._connect() as conn:
            return list(conn.execute(sql, params).fetchall())

    async def create(self, *, from_token: str, to_token: str, amount: Decimal) -> Order:
        now = utc_now()
        row = await asyncio.to_thread(
            self._fetchone,
            f"INSERT INTO orders (order_id, from_token, to_token, amount, status, created_at, updated_at) "
            f"VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING {_COLUMNS}",
            (uuid.uuid4().hex, str(from_token), str(to_token), Decimal(amount), OrderStatus.PENDING.value, now, now),
        )
        assert row is not None  # INSERT ... RETURNING always yields the row
        return row_to_order(row)

    async def get(self, order_id: str) -> Optional[Order]:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_COLUMNS} FROM orders WHERE order_id = %s", (str(order_id),)
        )
        return None if row is None else row_to_order(row)

    async def update(self, order_id: str, status: OrderStatus, **fields: Any) -> Optional[Order]:
        check_update_fields(fields)
        assignments = ["status = %s", "updated_at = %s"]
        params: list[Any] = [OrderStatus(status).value, utc_now()]
        # Sorted for a stable statement text across calls. COALESCE keeps a
        # value that is already recorded.
        for name in sorted(fields):
            value = fields[name]
            if value is None:
                continue
            assignments.append(f"{name} = COALESCE({name}, %s)")
            params.append(value)
        params.append(str(order_id))

        row = await asyncio.to_thread(
            self._fetchone,
            f"UPDATE orders SET {', '.join(assignments)} WHERE order_id = %s RETURNING {_COLUMNS}",
            tuple(params),
        )
        if row is None:
            log_event(logger, "order_store.not_found", severity="WARNING", order_id=str(order_id))
            return None
        order = row_to_order(row)
        log_status_update(order)
        return order

    async def list(self) -> list[Order]:
        rows = await asyncio.to_thread(self._fetchall, f"SELECT {_COLUMNS} FROM orders ORDER BY created_at DESC")
        return [row_to_order(r) for r in rows]

    async def close(self) -> None:
        return None
