from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import replace
from datetime import timedelta
from typing import Optional, Protocol

from orderflow.common.logging import log_event
from orderflow.jobs.models import BackoffPolicy, Job, JobState
from orderflow.orders.models import JobPayload, utc_now

logger = logging.getLogger(__name__)


def error_text(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"[:2000]
    return str(error)[:2000]


class JobQueue(Protocol):
    """
    Retrying work queue.

    - `dequeue` hands each job to exactly one caller at a time and counts the attempt.
    - `fail` re-schedules with exponential backoff until `max_attempts`, then
      dead-letters; dead-lettered jobs are never delivered again automatically.
    - Acks (`complete`, `fail`, `release`) given `attempt` only apply to that
      delivery, so a stale worker cannot settle a later one.
    - Queues that lease deliveries report `lease_renewal_s`; the worker calls
      `heartbeat` at that interval while the handler runs.
    - Delivery is at-least-once.
    """

    @property
    def lease_renewal_s(self) -> Optional[float]: ...

    async def enqueue(
        self,
        payload: JobPayload,
        *,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> str: ...

    async def dequeue(self, timeout_s: Optional[float] = None) -> Optional[Job]: ...

    async def heartbeat(self, job_id: str, *, attempt: int) -> bool: ...

    async def complete(self, job_id: str, *, attempt: Optional[int] = None) -> Optional[Job]: ...

    async def fail(
        self, job_id: str, error: BaseException | str, *, permanent: bool = False, attempt: Optional[int] = None
    ) -> Optional[Job]: ...

    async def release(self, job_id: str, *, attempt: Optional[int] = None) -> Optional[Job]: ...

    async def get(self, job_id: str) -> Optional[Job]: ...

    async def stats(self) -> dict[str, int]: ...

    async def dead_letters(self) -> list[Job]: ...

    async def purge_completed(self, *, older_than_s: float) -> int: ...

    async def close(self) -> None: ...


def log_failure_outcome(job: Job, error: str) -> None:
    if job.state == JobState.DEAD_LETTERED:
        log_event(
            logger,
            "job.dead_lettered",
            severity="ERROR",
            job_id=job.job_id,
            order_id=job.payload.order_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            error=error,
        )
    else:
        log_event(
            logger,
            "job.retry_scheduled",
            severity="WARNING",
            job_id=job.job_id,
            order_id=job.payload.order_id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            delay_s=job.retry_delays[-1] if job.retry_delays else 0.0,
            error=error,
        )


class InMemoryJobQueue:
    """
    asyncio job queue for a single process.

    Deliverable job ids sit in an asyncio.Queue; a retry is parked on a loop
    timer until its backoff elapses. A job id is in the ready queue at most
    once, and only WAITING jobs are handed out, which gives at-most-one active
    delivery per job.
    """

    def __init__(self, *, max_attempts: int = 3, backoff: Optional[BackoffPolicy] = None) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = int(max_attempts)
        self._backoff = backoff or BackoffPolicy()
        self._jobs: dict[str, Job] = {}
        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._closed = False

    async def enqueue(
        self,
        payload: JobPayload,
        *,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> str:
        if self._closed:
            raise RuntimeError("queue is closed")
        now = utc_now()
        job = Job(
            job_id=uuid.uuid4().hex,
            payload=payload,
            state=JobState.WAITING,
            attempts=0,
            max_attempts=int(max_attempts or self._max_attempts),
            backoff=backoff or self._backoff,
            available_at=now,
            created_at=now,
            updated_at=now,
        )
        self._jobs[job.job_id] = job
        self._ready.put_nowait(job.job_id)
        log_event(logger, "job.enqueued", job_id=job.job_id, order_id=payload.order_id, max_attempts=job.max_attempts)
        return job.job_id

    async def dequeue(self, timeout_s: Optional[float] = None) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = None if timeout_s is None else loop.time() + max(0.0, float(timeout_s))
        while not self._closed:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                # Out of time: still take a job that is already deliverable.
                try:
                    job_id = self._ready.get_nowait()
                except asyncio.QueueEmpty:
                    return None
            else:
                try:
                    job_id = await asyncio.wait_for(self._ready.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    return None
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.WAITING:
                continue
            job = replace(job, state=JobState.ACTIVE, attempts=job.attempts + 1, updated_at=utc_now())
            self._jobs[job_id] = job
            return job
        return None

    def _make_ready(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is not None and job.state == JobState.WAITING and not self._closed:
            self._ready.put_nowait(job_id)

    @property
    def lease_renewal_s(self) -> Optional[float]:
        # Deliveries live in this process; there is no lease to renew.
        return None

    def _active(self, job_id: str, op: str, attempt: Optional[int] = None) -> Optional[Job]:
        job = self._jobs.get(str(job_id))
        if job is None or job.state != JobState.ACTIVE or (attempt is not None and job.attempts != attempt):
            log_event(
                logger,
                "job.ack_ignored",
                severity="WARNING",
                job_id=str(job_id),
                op=op,
                state=None if job is None else job.state.value,
                attempt=attempt,
            )
            return None
        return job

    async def heartbeat(self, job_id: str, *, attempt: int) -> bool:
        job = self._jobs.get(str(job_id))
        return job is not None and job.state == JobState.ACTIVE and job.attempts == attempt

    async def complete(self, job_id: str, *, attempt: Optional[int] = None) -> Optional[Job]:
        job = self._active(job_id, "complete", attempt)
        if job is None:
            return None
        job = replace(job, state=JobState.COMPLETED, updated_at=utc_now())
        self._jobs[job.job_id] = job
        return job

    async def fail(
        self, job_id: str, error: BaseException | str, *, permanent: bool = False, attempt: Optional[int] = None
    ) -> Optional[Job]:
        job = self._active(job_id, "fail", attempt)
        if job is None:
            return None
        now = utc_now()
        text = error_text(error)
        if permanent or job.attempts >= job.max_attempts:
            job = replace(job, state=JobState.DEAD_LETTERED, last_error=text, updated_at=now)
            self._jobs[job.job_id] = job
        else:
            delay = job.backoff.delay_for(job.attempts)
            job = replace(
                job,
                state=JobState.WAITING,
                last_error=text,
                available_at=now + timedelta(seconds=delay),
                retry_delays=job.retry_delays + (delay,),
                updated_at=now,
            )
            self._jobs[job.job_id] = job
            loop = asyncio.get_running_loop()
            self._timers[job.job_id] = loop.call_later(delay, self._make_ready, job.job_id)
        log_failure_outcome(job, text)
        return job

    async def release(self, job_id: str, *, attempt: Optional[int] = None) -> Optional[Job]:
        job = self._active(job_id, "release", attempt)
        if job is None:
            return None
        job = replace(job, state=JobState.WAITING, attempts=max(0, job.attempts - 1), updated_at=utc_now())
        self._jobs[job.job_id] = job
        if not self._closed:
            self._ready.put_nowait(job.job_id)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(str(job_id))

    async def stats(self) -> dict[str, int]:
        counts = Counter(j.state.value for j in self._jobs.values())
        return {s.value: int(counts.get(s.value, 0)) for s in JobState}

    async def dead_letters(self) -> list[Job]:
        return [j for j in self._jobs.values() if j.state == JobState.DEAD_LETTERED]

    async def purge_completed(self, *, older_than_s: float) -> int:
        cutoff = utc_now() - timedelta(seconds=max(0.0, float(older_than_s)))
        stale = [j.job_id for j in self._jobs.values() if j.state == JobState.COMPLETED and j.updated_at <= cutoff]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    async def close(self) -> None:
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
