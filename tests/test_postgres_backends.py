import json
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from orderflow.jobs.models import BackoffPolicy, JobState
from orderflow.jobs.postgres_queue import PostgresJobQueue, row_to_job
from orderflow.orders.models import JobPayload, OrderStatus
from orderflow.persistence.migrate import SCHEMA_STATEMENTS, apply_schema
from orderflow.persistence.postgres_order_store import PostgresOrderStore

NOW = datetime(2026, 1, 8, 12, 0, tzinfo=timezone.utc)


class _Cursor:
    def __init__(self, result: Any) -> None:
        self._result = result

    def fetchone(self) -> Any:
        if isinstance(self._result, list):
            return self._result[0] if self._result else None
        return self._result

    def fetchall(self) -> Any:
        if self._result is None:
            return []
        return self._result if isinstance(self._result, list) else [self._result]


class FakeConnection:
    """Scripted psycopg connection: each execute() consumes the next result."""

    def __init__(self, results: list[Any]) -> None:
        self.results = results
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.transactions = 0

    def __enter__(self) -> "FakeConnection":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> _Cursor:
        self.executed.append((sql, params))
        return _Cursor(self.results.pop(0) if self.results else None)

    @contextmanager
    def transaction(self):  # type: ignore[no-untyped-def]
        self.transactions += 1
        yield


def _order_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "order_id": "o1",
        "from_token": "SOL",
        "to_token": "USDC",
        "amount": Decimal("1.00000000"),
        "status": "pending",
        "selected_venue": None,
        "output_amount": None,
        "settlement_reference": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _job_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "job_id": "j1",
        "payload": {"orderId": "o1", "fromToken": "SOL", "toToken": "USDC", "amount": "1"},
        "state": "active",
        "attempts": 1,
        "max_attempts": 3,
        "backoff_base_s": 2.0,
        "backoff_max_s": 30.0,
        "available_at": NOW,
        "last_error": None,
        "retry_delays": [],
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_store_update_writes_only_provided_fields() -> None:
    conn = FakeConnection([_order_row(status="building", selected_venue="meteora", output_amount=Decimal("99.2"))])
    store = PostgresOrderStore(connect=lambda: conn)

    order = await store.update("o1", OrderStatus.BUILDING, selected_venue="meteora", output_amount=Decimal("99.2"), settlement_reference=None)

    sql, params = conn.executed[0]
    assert sql.startswith(
        "UPDATE orders SET status = %s, updated_at = %s, "
        "output_amount = COALESCE(output_amount, %s), selected_venue = COALESCE(selected_venue, %s) "
        "WHERE order_id = %s"
    )
    assert params[0] == "building"
    assert params[2:] == (Decimal("99.2"), "meteora", "o1")
    assert order is not None and order.selected_venue == "meteora"


@pytest.mark.asyncio
async def test_store_update_unknown_id_returns_none() -> None:
    conn = FakeConnection([None])
    store = PostgresOrderStore(connect=lambda: conn)
    assert await store.update("missing", OrderStatus.ROUTING) is None


@pytest.mark.asyncio
async def test_store_create_get_and_list() -> None:
    conn = FakeConnection([_order_row(), _order_row(), [_order_row(order_id="o2"), _order_row()], None])
    store = PostgresOrderStore(connect=lambda: conn)

    created = await store.create(from_token="SOL", to_token="USDC", amount=Decimal("1"))
    fetched = await store.get("o1")
    listed = await store.list()
    missing = await store.get("nope")

    assert created.status == OrderStatus.PENDING
    assert fetched == created
    assert [o.order_id for o in listed] == ["o2", "o1"]
    assert missing is None
    assert "ORDER BY created_at DESC" in conn.executed[2][0]


def test_store_requires_database_url() -> None:
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        PostgresOrderStore()


def test_row_to_job_accepts_text_json() -> None:
    job = row_to_job(_job_row(payload=json.dumps(_job_row()["payload"]), retry_delays="[2.0]"))
    assert job.payload.amount == Decimal("1")
    assert job.retry_delays == (2.0,)
    assert job.backoff == BackoffPolicy(base_delay_s=2.0, max_delay_s=30.0)


@pytest.mark.asyncio
async def test_queue_enqueue_stores_payload_as_jsonb() -> None:
    conn = FakeConnection([{"job_id": "ignored"}])
    queue = PostgresJobQueue(connect=lambda: conn, max_attempts=4)

    job_id = await queue.enqueue(JobPayload(order_id="o1", from_token="SOL", to_token="USDC", amount=Decimal("1.5")))

    sql, params = conn.executed[0]
    assert "%s::jsonb" in sql
    assert params[0] == job_id
    assert json.loads(params[1]) == {"orderId": "o1", "fromToken": "SOL", "toToken": "USDC", "amount": "1.5"}
    assert params[2:] == (4, 2.0, 30.0)


@pytest.mark.asyncio
async def test_queue_dequeue_sweeps_then_claims_with_skip_locked() -> None:
    conn = FakeConnection([[], _job_row()])
    queue = PostgresJobQueue(connect=lambda: conn, lease_s=60)

    job = await queue.dequeue(timeout_s=0)

    assert job is not None and job.state == JobState.ACTIVE
    sweep_sql, _ = conn.executed[0]
    claim_sql, claim_params = conn.executed[1]
    assert "dead_lettered" in sweep_sql
    assert "FOR UPDATE SKIP LOCKED" in claim_sql
    assert claim_params == (60.0,)


@pytest.mark.asyncio
async def test_queue_fail_schedules_retry_with_backoff() -> None:
    conn = FakeConnection([_job_row(attempts=1), _job_row(state="waiting", retry_delays=[2.0])])
    queue = PostgresJobQueue(connect=lambda: conn)

    job = await queue.fail("j1", RuntimeError("boom"))

    assert conn.transactions == 1
    update_sql, params = conn.executed[1]
    assert "SET state = 'waiting'" in update_sql
    assert params[0] == "RuntimeError: boom"
    assert json.loads(params[2]) == [2.0]
    assert job is not None and job.state == JobState.WAITING


@pytest.mark.asyncio
async def test_queue_fail_on_last_attempt_dead_letters() -> None:
    conn = FakeConnection([_job_row(attempts=3), _job_row(state="dead_lettered", attempts=3)])
    queue = PostgresJobQueue(connect=lambda: conn)

    job = await queue.fail("j1", "still broken")

    assert "SET state = 'dead_lettered'" in conn.executed[1][0]
    assert job is not None and job.state == JobState.DEAD_LETTERED


@pytest.mark.asyncio
async def test_queue_stats_fill_missing_states() -> None:
    conn = FakeConnection([[{"state": "waiting", "n": 2}, {"state": "completed", "n": 5}]])
    queue = PostgresJobQueue(connect=lambda: conn)
    assert await queue.stats() == {"waiting": 2, "active": 0, "completed": 5, "dead_lettered": 0}


def test_apply_schema_runs_every_statement() -> None:
    conn = FakeConnection([None] * len(SCHEMA_STATEMENTS) + [{"n": 7}])
    assert apply_schema(lambda: conn) == 7
    assert len(conn.executed) == len(SCHEMA_STATEMENTS) + 1
    assert any("CREATE TABLE IF NOT EXISTS order_jobs" in sql for sql, _ in conn.executed)


@pytest.mark.asyncio
async def test_queue_heartbeat_extends_lease_of_the_delivered_attempt() -> None:
    conn = FakeConnection([{"job_id": "j1"}, None])
    queue = PostgresJobQueue(connect=lambda: conn, lease_s=90)

    assert queue.lease_renewal_s == 30.0
    assert await queue.heartbeat("j1", attempt=1) is True
    assert await queue.heartbeat("j1", attempt=1) is False

    sql, params = conn.executed[0]
    assert "SET locked_until = now() + make_interval(secs => %s)" in sql
    assert "AND attempts = %s" in sql
    assert params == (90.0, "j1", 1)


@pytest.mark.asyncio
async def test_queue_acks_are_fenced_on_attempt() -> None:
    conn = FakeConnection([None, None, None])
    queue = PostgresJobQueue(connect=lambda: conn)

    assert await queue.complete("j1", attempt=1) is None
    assert await queue.fail("j1", "late", attempt=1) is None
    assert await queue.release("j1", attempt=1) is None

    for sql, params in conn.executed:
        assert "job_id = %s AND state = 'active' AND attempts = %s" in sql
        assert params[-2:] == ("j1", 1)
    assert len(conn.executed) == 3


@pytest.mark.asyncio
async def test_queue_complete_without_attempt_matches_any_active_delivery() -> None:
    conn = FakeConnection([_job_row(state="completed")])
    queue = PostgresJobQueue(connect=lambda: conn)

    job = await queue.complete("j1")

    sql, params = conn.executed[0]
    assert "AND attempts" not in sql
    assert params == ("j1",)
    assert job is not None and job.state == JobState.COMPLETED
