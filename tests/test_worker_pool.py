import asyncio
from decimal import Decimal

import pytest

from orderflow.errors import PermanentJobError
from orderflow.jobs.models import BackoffPolicy, Job, JobState
from orderflow.jobs.queue import InMemoryJobQueue
from orderflow.jobs.worker_pool import WorkerPool
from orderflow.orders.models import JobPayload
from tests.fakes import drain_once, wait_for


def _payload(i: int) -> JobPayload:
    return JobPayload(order_id=f"o{i}", from_token="SOL", to_token="USDC", amount=Decimal("1"))


@pytest.mark.asyncio
async def test_pool_never_exceeds_concurrency() -> None:
    q = InMemoryJobQueue()
    ids = [await q.enqueue(_payload(i)) for i in range(6)]
    active = 0
    peak = 0

    async def handler(job: Job) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1

    pool = WorkerPool(queue=q, handler=handler, concurrency=2, poll_s=0.01)
    pool.start()
    try:
        async def all_done() -> bool:
            states = [(await q.get(i)).state for i in ids]  # type: ignore[union-attr]
            return all(s == JobState.COMPLETED for s in states)

        for _ in range(200):
            if await all_done():
                break
            await asyncio.sleep(0.01)
        assert await all_done()
    finally:
        await pool.stop()

    assert peak == 2


@pytest.mark.asyncio
async def test_handler_error_is_retried_by_queue() -> None:
    q = InMemoryJobQueue(max_attempts=2, backoff=BackoffPolicy(base_delay_s=0.01, max_delay_s=0.01))
    job_id = await q.enqueue(_payload(1))
    calls: list[int] = []

    async def handler(job: Job) -> None:
        calls.append(job.attempts)
        if job.attempts == 1:
            raise RuntimeError("first try fails")

    pool = WorkerPool(queue=q, handler=handler, concurrency=1, poll_s=0.01)
    pool.start()
    try:
        await wait_for(lambda: len(calls) == 2)
        await asyncio.sleep(0.02)
    finally:
        await pool.stop()

    assert calls == [1, 2]
    assert (await q.get(job_id)).state == JobState.COMPLETED  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_permanent_error_dead_letters_on_first_attempt() -> None:
    q = InMemoryJobQueue(max_attempts=3)
    job_id = await q.enqueue(_payload(1))

    async def handler(job: Job) -> None:
        raise PermanentJobError("cannot ever work")

    assert await drain_once(q, handler, timeout_s=0.1) is True
    job = await q.get(job_id)
    assert job is not None
    assert job.state == JobState.DEAD_LETTERED
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_stop_releases_jobs_that_outlive_the_drain() -> None:
    q = InMemoryJobQueue()
    job_id = await q.enqueue(_payload(1))
    started = asyncio.Event()

    async def handler(job: Job) -> None:
        started.set()
        await asyncio.Event().wait()

    pool = WorkerPool(queue=q, handler=handler, concurrency=1, poll_s=0.01, drain_timeout_s=0.05)
    pool.start()
    await asyncio.wait_for(started.wait(), timeout=1.0)
    assert [j.job_id for j in pool.in_flight()] == [job_id]

    await pool.stop()

    job = await q.get(job_id)
    assert job is not None
    assert job.state == JobState.WAITING
    assert job.attempts == 0
    assert not pool.running


class LeasedQueue(InMemoryJobQueue):
    """In-memory queue that asks for lease renewal and records heartbeats."""

    def __init__(self, **kw) -> None:  # type: ignore[no-untyped-def]
        super().__init__(**kw)
        self.beats: list[tuple[str, int]] = []
        self.acks: list[tuple[str, int | None]] = []

    @property
    def lease_renewal_s(self) -> float:
        return 0.01

    async def heartbeat(self, job_id: str, *, attempt: int) -> bool:
        self.beats.append((job_id, attempt))
        return await super().heartbeat(job_id, attempt=attempt)

    async def complete(self, job_id: str, *, attempt: int | None = None):  # type: ignore[no-untyped-def]
        self.acks.append(("complete", attempt))
        return await super().complete(job_id, attempt=attempt)


@pytest.mark.asyncio
async def test_lease_is_renewed_while_handler_runs_and_ack_names_attempt() -> None:
    q = LeasedQueue()
    job_id = await q.enqueue(_payload(1))

    async def handler(job: Job) -> None:
        await asyncio.sleep(0.08)

    assert await drain_once(q, handler, timeout_s=0.1) is True
    beats = len(q.beats)
    await asyncio.sleep(0.05)

    assert beats >= 2
    assert set(q.beats) == {(job_id, 1)}
    assert len(q.beats) == beats
    assert q.acks == [("complete", 1)]
    assert (await q.get(job_id)).state == JobState.COMPLETED  # type: ignore[union-attr]
