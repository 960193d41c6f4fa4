from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from orderflow.common.logging import log_event
from orderflow.errors import PermanentJobError
from orderflow.jobs.models import Job
from orderflow.jobs.queue import JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]


class WorkerPool:
    """
    Fixed number of worker tasks pulling from a JobQueue.

    Each worker runs one job end-to-end before taking another, so the pool size
    is the concurrency bound. Handler success completes the job; an exception
    fails it and the queue decides between retry and dead-letter.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 5,
        poll_s: float = 1.0,
        drain_timeout_s: float = 8.0,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._concurrency = max(1, int(concurrency))
        self._poll_s = max(0.01, float(poll_s))
        self._drain_timeout_s = max(0.0, float(drain_timeout_s))
        self._workers: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._in_flight: dict[int, Job] = {}

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._stopping.is_set()

    def in_flight(self) -> list[Job]:
        return list(self._in_flight.values())

    def start(self) -> None:
        if self._workers:
            return
        self._stopping.clear()
        for i in range(self._concurrency):
            self._workers.append(asyncio.create_task(self._worker_loop(i), name=f"order-worker-{i}"))
        log_event(logger, "worker_pool.started", concurrency=self._concurrency)

    async def stop(self) -> None:
        if not self._workers:
            return
        self._stopping.set()
        _done, pending = await asyncio.wait(self._workers, timeout=self._drain_timeout_s)
        for t in pending:
            t.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        log_event(
            logger,
            "worker_pool.stopped",
            drained=not pending,
            cancelled_workers=len(pending),
        )
        self._workers = []

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._stopping.is_set():
            job = await self._queue.dequeue(timeout_s=self._poll_s)
            if job is None:
                continue
            self._in_flight[worker_id] = job
            try:
                await self.run_job(job)
            finally:
                self._in_flight.pop(worker_id, None)

    async def run_job(self, job: Job) -> None:
        """Run the handler for one delivered job and acknowledge the outcome."""
        heartbeat = self._start_heartbeat(job)
        try:
            try:
                await self._handler(job)
            finally:
                await self._stop_heartbeat(heartbeat)
        except asyncio.CancelledError:
            # Interrupted, not failed: hand the job back without spending the attempt.
            await self._queue.release(job.job_id, attempt=job.attempts)
            log_event(logger, "job.released", severity="WARNING", job_id=job.job_id, order_id=job.payload.order_id)
            raise
        except PermanentJobError as e:
            await self._queue.fail(job.job_id, e, permanent=True, attempt=job.attempts)
        except Exception as e:
            log_event(
                logger,
                "job.failed",
                severity="WARNING",
                job_id=job.job_id,
                order_id=job.payload.order_id,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                error=f"{type(e).__name__}: {e}",
            )
            await self._queue.fail(job.job_id, e, attempt=job.attempts)
        else:
            await self._queue.complete(job.job_id, attempt=job.attempts)
            log_event(
                logger,
                "job.completed",
                job_id=job.job_id,
                order_id=job.payload.order_id,
                attempt=job.attempts,
            )

    def _start_heartbeat(self, job: Job) -> Optional[asyncio.Task[None]]:
        interval = self._queue.lease_renewal_s
        if not interval:
            return None
        return asyncio.create_task(self._heartbeat(job, interval), name=f"job-heartbeat-{job.job_id}")

    async def _heartbeat(self, job: Job, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self._queue.heartbeat(job.job_id, attempt=job.attempts)
            except Exception:
                log_event(logger, "job.heartbeat_failed", severity="WARNING", job_id=job.job_id, exc_info=True)
                continue
            if not held:
                log_event(
                    logger,
                    "job.lease_lost",
                    severity="ERROR",
                    job_id=job.job_id,
                    order_id=job.payload.order_id,
                    attempt=job.attempts,
                )
                return

    async def _stop_heartbeat(self, task: Optional[asyncio.Task[None]]) -> None:
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

