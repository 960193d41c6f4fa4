from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from orderflow.common.logging import log_event
from orderflow.errors import PermanentJobError, TransientPipelineError
from orderflow.execution.lifecycle import (
    FAILURE_PROGRESS,
    STAGE_PROGRESS,
    OrderLifecycleError,
    resolve_stage_status,
    status_message,
    validate_transition,
)
from orderflow.execution.settlement import Settlement
from orderflow.jobs.models import Job
from orderflow.messaging.bus import BroadcastBus
from orderflow.orders.models import Order, OrderStatus, ProgressEvent
from orderflow.persistence.order_store import OrderStore
from orderflow.routing.router import PriceRouter

logger = logging.getLogger(__name__)

FAILURE_POLICY_RETAIN = "retain"
FAILURE_POLICY_MARK_FAILED = "mark_failed"
FAILURE_POLICIES = frozenset({FAILURE_POLICY_RETAIN, FAILURE_POLICY_MARK_FAILED})

T = TypeVar("T")


def stage_data(stage: OrderStatus, order: Order) -> dict[str, Any]:
    """Event payload for a stage, read from the stored order so retries repeat recorded values."""
    if stage == OrderStatus.BUILDING:
        return {"selectedVenue": order.selected_venue, "outputAmount": order.output_amount}
    if stage == OrderStatus.SUBMITTED:
        return {"settlementReference": order.settlement_reference}
    return {}


class OrderPipeline:
    """
    Per-delivery state machine: routing -> building -> submitted -> confirmed.

    Invoked once per job delivery by the worker pool. Every stage writes the
    store first and then publishes its progress event. Errors are reported on the
    bus and re-raised; retry policy belongs to the queue.

    Stage results (venue, output amount, settlement reference) are write-once:
    a retry reuses what an earlier attempt recorded instead of quoting or
    settling again.
    """

    def __init__(
        self,
        *,
        store: OrderStore,
        router: PriceRouter,
        settlement: Settlement,
        bus: BroadcastBus,
        failure_policy: str = FAILURE_POLICY_RETAIN,
        stage_timeout_s: Optional[float] = None,
    ) -> None:
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"unknown failure policy: {failure_policy!r}")
        self._store = store
        self._router = router
        self._settlement = settlement
        self._bus = bus
        self._failure_policy = failure_policy
        self._stage_timeout_s = stage_timeout_s if stage_timeout_s and stage_timeout_s > 0 else None

    @property
    def failure_policy(self) -> str:
        return self._failure_policy

    async def __call__(self, job: Job) -> None:
        await self.process(job)

    async def process(self, job: Job) -> None:
        payload = job.payload
        order = await self._store.get(payload.order_id)
        if order is None:
            raise PermanentJobError(f"Order {payload.order_id} not found")
        if order.status == OrderStatus.CONFIRMED:
            log_event(logger, "pipeline.duplicate_delivery", order_id=order.order_id, job_id=job.job_id)
            return
        if order.status == OrderStatus.FAILED:
            raise PermanentJobError(f"Order {order.order_id} already failed")

        recorded = order.status
        try:
            order = await self._advance(order, OrderStatus.ROUTING, recorded)
            recorded = order.status

            fields: dict[str, Any] = {}
            if order.selected_venue is None:
                quote = await self._stage(
                    "routing", self._router.route(payload.from_token, payload.to_token, payload.amount)
                )
                fields = {"selected_venue": quote.venue, "output_amount": quote.output_amount}
            else:
                log_event(logger, "pipeline.route_reused", order_id=order.order_id, venue=order.selected_venue)
            order = await self._advance(order, OrderStatus.BUILDING, recorded, **fields)
            recorded = order.status

            reference = order.settlement_reference
            if reference is None:
                receipt = await self._stage(
                    "submitted", self._settlement.submit(order_id=order.order_id, venue=str(order.selected_venue))
                )
                reference = receipt.reference
            else:
                log_event(logger, "pipeline.settlement_reused", order_id=order.order_id, reference=reference)
            order = await self._advance(order, OrderStatus.SUBMITTED, recorded, settlement_reference=reference)
            recorded = order.status

            await self._advance(order, OrderStatus.CONFIRMED, recorded)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._report_failure(job, recorded, e)
            raise

    async def _stage(self, stage: str, work: Awaitable[T]) -> T:
        if self._stage_timeout_s is None:
            return await work
        try:
            return await asyncio.wait_for(work, timeout=self._stage_timeout_s)
        except asyncio.TimeoutError as e:
            raise TransientPipelineError(f"stage {stage} exceeded {self._stage_timeout_s}s") from e

    async def _advance(self, order: Order, stage: OrderStatus, recorded: OrderStatus, **fields: Any) -> Order:
        status = resolve_stage_status(recorded=recorded, stage=stage)
        if not validate_transition(prev=recorded, nxt=status):
            raise OrderLifecycleError(f"illegal transition {recorded.value} -> {status.value}")
        updated = await self._stage(stage.value, self._store.update(order.order_id, status, **fields))
        if updated is None:
            raise PermanentJobError(f"Order {order.order_id} not found")
        log_event(
            logger,
            "pipeline.stage",
            order_id=order.order_id,
            stage=stage.value,
            status=updated.status.value,
            progress=STAGE_PROGRESS[stage],
        )
        await self._publish(
            ProgressEvent(
                order_id=order.order_id,
                status=stage,
                progress=STAGE_PROGRESS[stage],
                message=status_message(stage),
                data=stage_data(stage, updated),
            )
        )
        return updated

    async def _report_failure(self, job: Job, recorded: OrderStatus, error: Exception) -> None:
        status = recorded
        terminal = isinstance(error, PermanentJobError) or job.is_final_attempt
        if terminal and self._failure_policy == FAILURE_POLICY_MARK_FAILED:
            try:
                if await self._store.update(job.payload.order_id, OrderStatus.FAILED) is not None:
                    status = OrderStatus.FAILED
            except Exception:
                log_event(
                    logger,
                    "pipeline.mark_failed_error",
                    severity="ERROR",
                    order_id=job.payload.order_id,
                    exc_info=True,
                )
        await self._publish(
            ProgressEvent(
                order_id=job.payload.order_id,
                status=status,
                progress=FAILURE_PROGRESS,
                message=f"Order failed (attempt {job.attempts}/{job.max_attempts}): {error}",
            )
        )

    async def _publish(self, event: ProgressEvent) -> None:
        try:
            await self._bus.publish(event)
        except Exception:
            # Broadcast is best-effort; the order state is already persisted.
            log_event(
                logger,
                "bus.publish_failed",
                severity="ERROR",
                order_id=event.order_id,
                status=event.status.value,
                exc_info=True,
            )
