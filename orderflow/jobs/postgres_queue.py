from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

from orderflow.common.logging import log_event
from orderflow.jobs.models import BackoffPolicy, Job, JobState
from orderflow.jobs.queue import error_text, log_failure_outcome
from orderflow.orders.models import JobPayload, utc_now
from orderflow.persistence.postgres_order_store import psycopg_connector

logger = logging.getLogger(__name__)

_COLUMNS = (
    "job_id, payload, state, attempts, max_attempts, backoff_base_s, backoff_max_s, "
    "available_at, last_error, retry_delays, created_at, updated_at"
)

# Stale leases whose attempts are used up can never be re-delivered.
_SWEEP_EXHAUSTED_SQL = (
    "UPDATE order_jobs SET state = 'dead_lettered', locked_until = NULL, updated_at = now(), "
    "last_error = COALESCE(last_error, 'lease expired') "
    "WHERE state = 'active' AND locked_until < now() AND attempts >= max_attempts "
    "RETURNING job_id, payload"
)

_CLAIM_SQL = (
    "UPDATE order_jobs SET state = 'active', attempts = attempts + 1, "
    "locked_until = now() + make_interval(secs => %s), updated_at = now() "
    "WHERE job_id = ("
    "  SELECT job_id FROM order_jobs "
    "  WHERE (state = 'waiting' AND available_at <= now()) "
    "     OR (state = 'active' AND locked_until < now() AND attempts < max_attempts) "
    "  ORDER BY available_at "
    "  FOR UPDATE SKIP LOCKED LIMIT 1"
    f") RETURNING {_COLUMNS}"
)


def _fence(job_id: str, attempt: Optional[int]) -> tuple[str, tuple[Any, ...]]:
    # An ack naming its attempt only matches the delivery that attempt started.
    if attempt is None:
        return "job_id = %s AND state = 'active'", (str(job_id),)
    return "job_id = %s AND state = 'active' AND attempts = %s", (str(job_id), int(attempt))


def _json_value(v: Any) -> Any:
    # psycopg decodes jsonb already; plain text comes back from fakes / json columns.
    if isinstance(v, (str, bytes)):
        return json.loads(v)
    return v


def row_to_job(row: Mapping[str, Any]) -> Job:
    return Job(
        job_id=str(row["job_id"]),
        payload=JobPayload.from_dict(_json_value(row["payload"])),
        state=JobState(str(row["state"])),
        attempts=int(row["attempts"]),
        max_attempts=int(row["max_attempts"]),
        backoff=BackoffPolicy(base_delay_s=float(row["backoff_base_s"]), max_delay_s=float(row["backoff_max_s"])),
        available_at=row["available_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_error=row.get("last_error"),
        retry_delays=tuple(float(d) for d in (_json_value(row.get("retry_delays")) or [])),
    )


class PostgresJobQueue:
    """
    Durable job queue on the `order_jobs` table.

    Claims use `FOR UPDATE SKIP LOCKED`, so any number of worker processes can
    poll the same table and each job has at most one active lease. Workers renew
    the lease through `heartbeat` while a handler runs, and every ack is fenced
    on the attempt it was delivered with. A lease that expires (worker crash) is
    re-delivered while attempts remain, which is the at-least-once half of the
    contract.
    """

    def __init__(
        self,
        *,
        database_url: str | None = None,
        connect: Callable[[], Any] | None = None,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        lease_s: float = 300.0,
        poll_interval_s: float = 0.5,
    ) -> None:
        if connect is None:
            if not database_url:
                raise RuntimeError("Missing required env vars: DATABASE_URL")
            connect = psycopg_connector(database_url)
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._connect = connect
        self._max_attempts = int(max_attempts)
        self._backoff = backoff or BackoffPolicy()
        self._lease_s = float(lease_s)
        self._poll_interval_s = max(0.01, float(poll_interval_s))
        self._closed = False

    @property
    def lease_renewal_s(self) -> Optional[float]:
        return self._lease_s / 3

    def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> Optional[Mapping[str, Any]]:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[Mapping[str, Any]]:
        with self._connect() as conn:
            return list(conn.execute(sql, params).fetchall())

    async def enqueue(
        self,
        payload: JobPayload,
        *,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> str:
        policy = backoff or self._backoff
        job_id = uuid.uuid4().hex
        attempts_cap = int(max_attempts or self._max_attempts)
        await asyncio.to_thread(
            self._fetchone,
            "INSERT INTO order_jobs (job_id, payload, state, attempts, max_attempts, backoff_base_s, backoff_max_s, "
            "available_at, retry_delays, created_at, updated_at) "
            "VALUES (%s, %s::jsonb, 'waiting', 0, %s, %s, %s, now(), '[]'::jsonb, now(), now()) RETURNING job_id",
            (job_id, json.dumps(payload.to_dict()), attempts_cap, policy.base_delay_s, policy.max_delay_s),
        )
        log_event(logger, "job.enqueued", job_id=job_id, order_id=payload.order_id, max_attempts=attempts_cap)
        return job_id

    def _claim_sync(self) -> Optional[Mapping[str, Any]]:
        with self._connect() as conn:
            for swept in conn.execute(_SWEEP_EXHAUSTED_SQL).fetchall():
                log_event(
                    logger,
                    "job.dead_lettered",
                    severity="ERROR",
                    job_id=str(swept["job_id"]),
                    error="lease expired",
                )
            return conn.execute(_CLAIM_SQL, (self._lease_s,)).fetchone()

    async def dequeue(self, timeout_s: Optional[float] = None) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = None if timeout_s is None else loop.time() + max(0.0, float(timeout_s))
        while not self._closed:
            row = await asyncio.to_thread(self._claim_sync)
            if row is not None:
                return row_to_job(row)
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return None
            await asyncio.sleep(self._poll_interval_s if remaining is None else min(self._poll_interval_s, remaining))
        return None

    async def heartbeat(self, job_id: str, *, attempt: int) -> bool:
        """Extend the lease of one delivery; False once that delivery no longer holds it."""
        row = await asyncio.to_thread(
            self._fetchone,
            "UPDATE order_jobs SET locked_until = now() + make_interval(secs => %s), updated_at = now() "
            "WHERE job_id = %s AND state = 'active' AND attempts = %s RETURNING job_id",
            (self._lease_s, str(job_id), int(attempt)),
        )
        return row is not None

    async def complete(self, job_id: str, *, attempt: Optional[int] = None) -> Optional[Job]:
        fence, params = _fence(job_id, attempt)
        row = await asyncio.to_thread(
            self._fetchone,
            "UPDATE order_jobs SET state = 'completed', locked_until = NULL, updated_at = now() "
            f"WHERE {fence} RETURNING {_COLUMNS}",
            params,
        )
        if row is None:
            log_event(logger, "job.ack_ignored", severity="WARNING", job_id=str(job_id), op="complete", attempt=attempt)
            return None
        return row_to_job(row)

    def _fail_sync(
        self, job_id: str, text: str, permanent: bool, attempt: Optional[int]
    ) -> Optional[Mapping[str, Any]]:
        fence, params = _fence(job_id, attempt)
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(f"SELECT {_COLUMNS} FROM order_jobs WHERE {fence} FOR UPDATE", params).fetchone()
                if row is None:
                    return None
                job = row_to_job(row)
                if permanent or job.attempts >= job.max_attempts:
                    return conn.execute(
                        "UPDATE order_jobs SET state = 'dead_lettered', last_error = %s, locked_until = NULL, "
                        f"updated_at = now() WHERE job_id = %s RETURNING {_COLUMNS}",
                        (text, job_id),
                    ).fetchone()
                delay = job.backoff.delay_for(job.attempts)
                return conn.execute(
                    "UPDATE order_jobs SET state = 'waiting', last_error = %s, locked_until = NULL, "
                    "available_at = %s, retry_delays = %s::jsonb, updated_at = now() "
                    f"WHERE job_id = %s RETURNING {_COLUMNS}",
                    (
                        text,
                        utc_now() + timedelta(seconds=delay),
                        json.dumps(list(job.retry_delays) + [delay]),
                        job_id,
                    ),
                ).fetchone()

    async def fail(
        self, job_id: str, error: BaseException | str, *, permanent: bool = False, attempt: Optional[int] = None
    ) -> Optional[Job]:
        text = error_text(error)
        row = await asyncio.to_thread(self._fail_sync, str(job_id), text, bool(permanent), attempt)
        if row is None:
            log_event(logger, "job.ack_ignored", severity="WARNING", job_id=str(job_id), op="fail", attempt=attempt)
            return None
        job = row_to_job(row)
        log_failure_outcome(job, text)
        return job

    async def release(self, job_id: str, *, attempt: Optional[int] = None) -> Optional[Job]:
        fence, params = _fence(job_id, attempt)
        row = await asyncio.to_thread(
            self._fetchone,
            "UPDATE order_jobs SET state = 'waiting', attempts = GREATEST(attempts - 1, 0), locked_until = NULL, "
            f"updated_at = now() WHERE {fence} RETURNING {_COLUMNS}",
            params,
        )
        return None if row is None else row_to_job(row)

    async def get(self, job_id: str) -> Optional[Job]:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_COLUMNS} FROM order_jobs WHERE job_id = %s", (str(job_id),)
        )
        return None if row is None else row_to_job(row)

    async def stats(self) -> dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT state, COUNT(*) AS n FROM order_jobs GROUP BY state"
        )
        counts = {str(r["state"]): int(r["n"]) for r in rows}
        return {s.value: counts.get(s.value, 0) for s in JobState}

    async def dead_letters(self) -> list[Job]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM order_jobs WHERE state = 'dead_lettered' ORDER BY updated_at DESC",
        )
        return [row_to_job(r) for r in rows]

    async def purge_completed(self, *, older_than_s: float) -> int:
        rows = await asyncio.to_thread(
            self._fetchall,
            "DELETE FROM order_jobs WHERE state = 'completed' "
            "AND updated_at <= now() - make_interval(secs => %s) RETURNING job_id",
            (max(0.0, float(older_than_s)),),
        )
        return len(rows)

    async def close(self) -> None:
        self._closed = True
