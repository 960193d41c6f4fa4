import asyncio
from decimal import Decimal

import pytest

from orderflow.jobs.models import BackoffPolicy, JobState
from orderflow.jobs.queue import InMemoryJobQueue
from orderflow.orders.models import JobPayload


def _payload(order_id: str = "o1") -> JobPayload:
    return JobPayload(order_id=order_id, from_token="SOL", to_token="USDC", amount=Decimal("1"))


def test_backoff_doubles_and_caps() -> None:
    policy = BackoffPolicy(base_delay_s=2.0, max_delay_s=30.0)
    delays = [policy.delay_for(n) for n in range(1, 7)]
    assert delays == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert delays == sorted(delays)


def test_backoff_rejects_negative_delays() -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(base_delay_s=-1.0)


@pytest.mark.asyncio
async def test_dequeue_marks_active_and_counts_attempt() -> None:
    q = InMemoryJobQueue()
    job_id = await q.enqueue(_payload())

    job = await q.dequeue(timeout_s=0.1)

    assert job is not None
    assert job.job_id == job_id
    assert job.state == JobState.ACTIVE
    assert job.attempts == 1
    assert job.max_attempts == 3


@pytest.mark.asyncio
async def test_dequeue_with_zero_timeout_takes_ready_job() -> None:
    q = InMemoryJobQueue()
    await q.enqueue(_payload())
    assert await q.dequeue(timeout_s=0.0) is not None
    assert await q.dequeue(timeout_s=0.0) is None


@pytest.mark.asyncio
async def test_job_is_never_delivered_to_two_consumers() -> None:
    q = InMemoryJobQueue()
    await q.enqueue(_payload())

    results = await asyncio.gather(q.dequeue(timeout_s=0.05), q.dequeue(timeout_s=0.05))

    assert sum(1 for r in results if r is not None) == 1


@pytest.mark.asyncio
async def test_failing_job_retries_until_max_attempts_then_dead_letters() -> None:
    q = InMemoryJobQueue(max_attempts=3, backoff=BackoffPolicy(base_delay_s=0.01, max_delay_s=0.05))
    job_id = await q.enqueue(_payload())

    deliveries = 0
    while True:
        job = await q.dequeue(timeout_s=0.3)
        if job is None:
            break
        deliveries += 1
        await q.fail(job.job_id, RuntimeError("boom"))

    final = await q.get(job_id)
    assert deliveries == 3
    assert final is not None
    assert final.state == JobState.DEAD_LETTERED
    assert final.attempts == 3
    assert final.retry_delays == (0.01, 0.02)
    assert final.last_error == "RuntimeError: boom"
    assert [j.job_id for j in await q.dead_letters()] == [job_id]


@pytest.mark.asyncio
async def test_retry_waits_for_backoff() -> None:
    q = InMemoryJobQueue(max_attempts=2, backoff=BackoffPolicy(base_delay_s=0.2, max_delay_s=1.0))
    await q.enqueue(_payload())
    job = await q.dequeue(timeout_s=0.1)
    assert job is not None
    await q.fail(job.job_id, "transient")

    assert await q.dequeue(timeout_s=0.05) is None
    again = await q.dequeue(timeout_s=0.5)
    assert again is not None
    assert again.attempts == 2


@pytest.mark.asyncio
async def test_permanent_failure_dead_letters_immediately() -> None:
    q = InMemoryJobQueue(max_attempts=5)
    job_id = await q.enqueue(_payload())
    job = await q.dequeue(timeout_s=0.1)
    assert job is not None

    failed = await q.fail(job.job_id, "order vanished", permanent=True)

    assert failed is not None
    assert failed.state == JobState.DEAD_LETTERED
    assert failed.attempts == 1
    assert await q.dequeue(timeout_s=0.05) is None
    assert (await q.get(job_id)).state == JobState.DEAD_LETTERED  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_release_returns_job_without_spending_attempt() -> None:
    q = InMemoryJobQueue()
    await q.enqueue(_payload())
    job = await q.dequeue(timeout_s=0.1)
    assert job is not None

    released = await q.release(job.job_id)
    assert released is not None
    assert released.state == JobState.WAITING
    assert released.attempts == 0

    again = await q.dequeue(timeout_s=0.1)
    assert again is not None
    assert again.attempts == 1


@pytest.mark.asyncio
async def test_acks_on_inactive_jobs_are_ignored() -> None:
    q = InMemoryJobQueue()
    job_id = await q.enqueue(_payload())

    assert await q.complete(job_id) is None
    assert await q.fail(job_id, "x") is None
    assert await q.complete("missing") is None
    assert (await q.get(job_id)).state == JobState.WAITING  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_acks_for_another_attempt_are_ignored() -> None:
    q = InMemoryJobQueue()
    job_id = await q.enqueue(_payload())
    job = await q.dequeue(timeout_s=0.1)
    assert job is not None and job.attempts == 1

    assert q.lease_renewal_s is None
    assert await q.heartbeat(job_id, attempt=1) is True
    assert await q.heartbeat(job_id, attempt=2) is False
    assert await q.complete(job_id, attempt=2) is None
    assert await q.fail(job_id, "stale", attempt=2) is None
    assert (await q.get(job_id)).state == JobState.ACTIVE  # type: ignore[union-attr]

    done = await q.complete(job_id, attempt=1)
    assert done is not None and done.state == JobState.COMPLETED
    assert await q.heartbeat(job_id, attempt=1) is False


@pytest.mark.asyncio
async def test_stats_and_purge_completed() -> None:
    q = InMemoryJobQueue()
    first = await q.enqueue(_payload("o1"))
    await q.enqueue(_payload("o2"))
    job = await q.dequeue(timeout_s=0.1)
    assert job is not None and job.job_id == first
    await q.complete(first)

    assert await q.stats() == {"waiting": 1, "active": 0, "completed": 1, "dead_lettered": 0}
    assert await q.purge_completed(older_than_s=3600) == 0
    assert await q.purge_completed(older_than_s=0) == 1
    assert await q.get(first) is None


@pytest.mark.asyncio
async def test_per_job_max_attempts_override() -> None:
    q = InMemoryJobQueue(max_attempts=3)
    await q.enqueue(_payload(), max_attempts=1)
    job = await q.dequeue(timeout_s=0.1)
    assert job is not None and job.is_final_attempt

    failed = await q.fail(job.job_id, "nope")
    assert failed is not None and failed.state == JobState.DEAD_LETTERED


@pytest.mark.asyncio
async def test_closed_queue_rejects_enqueue() -> None:
    q = InMemoryJobQueue()
    await q.close()
    with pytest.raises(RuntimeError):
        await q.enqueue(_payload())
