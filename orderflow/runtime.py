from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Sequence

from orderflow.common.config import Settings
from orderflow.common.logging import log_event
from orderflow.execution.pipeline import OrderPipeline
from orderflow.execution.settlement import Settlement, SimulatedSettlement
from orderflow.jobs.models import BackoffPolicy
from orderflow.jobs.queue import InMemoryJobQueue, JobQueue
from orderflow.jobs.worker_pool import WorkerPool
from orderflow.messaging.bus import BroadcastBus, InMemoryBroadcastBus
from orderflow.orders.service import OrderService
from orderflow.persistence.order_store import InMemoryOrderStore, OrderStore
from orderflow.realtime.registry import SubscriberRegistry
from orderflow.routing.router import PriceRouter
from orderflow.routing.venues import DEFAULT_PROFILES, SimulatedVenue, Venue

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Process-wide components, owned by `open_runtime`."""

    settings: Settings
    store: OrderStore
    queue: JobQueue
    bus: BroadcastBus
    router: PriceRouter
    pipeline: OrderPipeline
    registry: SubscriberRegistry
    service: OrderService
    workers: Optional[WorkerPool] = None


def build_store(settings: Settings) -> OrderStore:
    if settings.store_backend == "postgres":
        from orderflow.persistence.postgres_order_store import PostgresOrderStore

        return PostgresOrderStore(database_url=settings.database_url)
    return InMemoryOrderStore()


def build_queue(settings: Settings) -> JobQueue:
    backoff = BackoffPolicy(base_delay_s=settings.backoff_base_s, max_delay_s=settings.backoff_max_s)
    if settings.queue_backend == "postgres":
        from orderflow.jobs.postgres_queue import PostgresJobQueue

        return PostgresJobQueue(
            database_url=settings.database_url,
            max_attempts=settings.job_max_attempts,
            backoff=backoff,
            lease_s=settings.job_lease_s,
            poll_interval_s=settings.queue_poll_s,
        )
    return InMemoryJobQueue(max_attempts=settings.job_max_attempts, backoff=backoff)


def build_bus(settings: Settings, *, receive: bool = True) -> BroadcastBus:
    if settings.bus_backend == "pubsub":
        from orderflow.messaging.publisher import PubSubPublisher
        from orderflow.messaging.pubsub_bus import PubSubBroadcastBus
        from orderflow.messaging.subscriber import PubSubSubscriber

        subscriber = None
        if receive and settings.pubsub_subscription:
            subscriber = PubSubSubscriber(
                project_id=str(settings.gcp_project),
                subscription_id=settings.pubsub_subscription,
            )
        return PubSubBroadcastBus(
            publisher=PubSubPublisher(
                project_id=str(settings.gcp_project),
                topic_id=settings.pubsub_topic,
                producer=settings.service_name,
            ),
            subscriber=subscriber,
        )
    return InMemoryBroadcastBus()


def build_router(settings: Settings, *, rng: Optional[random.Random] = None) -> PriceRouter:
    venues: list[Venue] = [SimulatedVenue(p, delay_s=settings.quote_delay_s, rng=rng) for p in DEFAULT_PROFILES]
    return PriceRouter(venues, priority=settings.venue_priority)


def build_settlement(settings: Settings, *, rng: Optional[random.Random] = None) -> Settlement:
    delay = settings.settlement_delay_s
    return SimulatedSettlement(delay_s=delay, jitter_s=1.0 if delay > 0 else 0.0, rng=rng)


async def _purge_loop(queue: JobQueue, *, retention_s: float, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            removed = await queue.purge_completed(older_than_s=retention_s)
        except Exception:
            log_event(logger, "queue.purge_failed", severity="ERROR", exc_info=True)
            continue
        if removed:
            log_event(logger, "queue.purged", removed=removed)


@asynccontextmanager
async def open_runtime(
    settings: Settings,
    *,
    run_workers: Optional[bool] = None,
    receive_updates: bool = True,
    store: Optional[OrderStore] = None,
    queue: Optional[JobQueue] = None,
    bus: Optional[BroadcastBus] = None,
    venues: Optional[Sequence[Venue]] = None,
    settlement: Optional[Settlement] = None,
    rng: Optional[random.Random] = None,
) -> AsyncIterator[Runtime]:
    """
    Build, start and (on exit) tear down every component, in reverse order.

    Components passed in explicitly replace the settings-selected ones and are
    still closed on exit.
    """
    store = store if store is not None else build_store(settings)
    queue = queue if queue is not None else build_queue(settings)
    bus = bus if bus is not None else build_bus(settings, receive=receive_updates)
    router = (
        PriceRouter(venues, priority=settings.venue_priority) if venues else build_router(settings, rng=rng)
    )
    pipeline = OrderPipeline(
        store=store,
        router=router,
        settlement=settlement if settlement is not None else build_settlement(settings, rng=rng),
        bus=bus,
        failure_policy=settings.failure_policy,
        stage_timeout_s=settings.stage_timeout_s,
    )
    registry = SubscriberRegistry()
    runtime = Runtime(
        settings=settings,
        store=store,
        queue=queue,
        bus=bus,
        router=router,
        pipeline=pipeline,
        registry=registry,
        service=OrderService(store=store, queue=queue),
    )

    want_workers = settings.run_workers if run_workers is None else run_workers
    purge_task: Optional[asyncio.Task[None]] = None
    await bus.start()
    try:
        if receive_updates:
            registry.attach(bus)
        if want_workers:
            runtime.workers = WorkerPool(
                queue=queue,
                handler=pipeline,
                concurrency=settings.worker_concurrency,
                poll_s=settings.queue_poll_s,
                drain_timeout_s=settings.shutdown_drain_s,
            )
            runtime.workers.start()
            purge_task = asyncio.create_task(
                _purge_loop(
                    queue,
                    retention_s=settings.completed_retention_s,
                    interval_s=max(1.0, min(60.0, settings.completed_retention_s)),
                ),
                name="queue-purge",
            )
        log_event(
            logger,
            "runtime.started",
            store_backend=settings.store_backend,
            queue_backend=settings.queue_backend,
            bus_backend=settings.bus_backend,
            workers=settings.worker_concurrency if want_workers else 0,
            venues=list(router.venue_names),
        )
        yield runtime
    finally:
        if runtime.workers is not None:
            await runtime.workers.stop()
        if purge_task is not None:
            purge_task.cancel()
            await asyncio.gather(purge_task, return_exceptions=True)
        await registry.close()
        await bus.close()
        await queue.close()
        await store.close()
        log_event(logger, "runtime.stopped")
