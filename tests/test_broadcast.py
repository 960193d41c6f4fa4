import json

import pytest

from orderflow.messaging.bus import InMemoryBroadcastBus
from orderflow.orders.models import OrderStatus, ProgressEvent
from orderflow.realtime.registry import CONNECTED_MESSAGE, SubscriberRegistry
from tests.fakes import FakeHandle


def _event(progress: int = 20, status: OrderStatus = OrderStatus.ROUTING) -> ProgressEvent:
    return ProgressEvent(order_id="o1", status=status, progress=progress, message="m")


@pytest.mark.asyncio
async def test_bus_delivers_in_publish_order_to_current_listeners_only() -> None:
    bus = InMemoryBroadcastBus()
    await bus.start()
    early: list[int] = []
    late: list[int] = []

    async def on_early(e: ProgressEvent) -> None:
        early.append(e.progress)

    async def on_late(e: ProgressEvent) -> None:
        late.append(e.progress)

    bus.subscribe(on_early)
    await bus.publish(_event(20))
    await bus.flush()
    bus.subscribe(on_late)
    await bus.publish(_event(40))
    await bus.publish(_event(60))
    await bus.flush()
    await bus.close()

    assert early == [20, 40, 60]
    assert late == [40, 60]


@pytest.mark.asyncio
async def test_failing_listener_does_not_affect_others_or_publisher() -> None:
    bus = InMemoryBroadcastBus()
    await bus.start()
    seen: list[int] = []

    async def broken(e: ProgressEvent) -> None:
        raise RuntimeError("listener bug")

    async def healthy(e: ProgressEvent) -> None:
        seen.append(e.progress)

    bus.subscribe(broken)
    bus.subscribe(healthy)
    await bus.publish(_event(20))
    await bus.flush()
    await bus.close()

    assert seen == [20]


@pytest.mark.asyncio
async def test_unsubscribe_and_publish_before_start() -> None:
    bus = InMemoryBroadcastBus()
    seen: list[int] = []

    async def listener(e: ProgressEvent) -> None:
        seen.append(e.progress)

    unsubscribe = bus.subscribe(listener)
    await bus.publish(_event(20))  # dropped: not started, must not raise
    await bus.start()
    unsubscribe()
    unsubscribe()
    await bus.publish(_event(40))
    await bus.flush()
    await bus.close()

    assert seen == []


@pytest.mark.asyncio
async def test_connect_acknowledges_before_any_update() -> None:
    registry = SubscriberRegistry()
    handle = FakeHandle()

    await registry.connect(handle)
    await registry.broadcast(_event(20))

    assert json.loads(handle.sent[0]) == {"type": "connected", "message": CONNECTED_MESSAGE}
    update = json.loads(handle.sent[1])
    assert update == {"type": "order-update", "orderId": "o1", "status": "routing", "progress": 20, "message": "m"}
    assert registry.count() == 1


@pytest.mark.asyncio
async def test_late_subscriber_gets_no_replay() -> None:
    registry = SubscriberRegistry()
    first = FakeHandle()
    await registry.connect(first)
    await registry.broadcast(_event(20))

    second = FakeHandle()
    await registry.connect(second)
    await registry.broadcast(_event(40, OrderStatus.BUILDING))

    assert [json.loads(t)["type"] for t in first.sent] == ["connected", "order-update", "order-update"]
    assert [json.loads(t).get("progress") for t in second.sent] == [None, 40]


@pytest.mark.asyncio
async def test_closed_and_failing_handles_are_pruned() -> None:
    registry = SubscriberRegistry()
    good, closed, broken = FakeHandle(), FakeHandle(), FakeHandle()
    for h in (good, closed, broken):
        await registry.connect(h)
    closed.open = False
    broken.fail = True

    reached = await registry.broadcast(_event(20))

    assert reached == 1
    assert registry.count() == 1
    assert len(good.sent) == 2


@pytest.mark.asyncio
async def test_registry_follows_the_bus_and_closes_handles() -> None:
    bus = InMemoryBroadcastBus()
    await bus.start()
    registry = SubscriberRegistry()
    registry.attach(bus)
    handle = FakeHandle()
    await registry.connect(handle)

    await bus.publish(_event(100, OrderStatus.CONFIRMED))
    await bus.flush()
    await registry.close()
    await bus.publish(_event(100, OrderStatus.CONFIRMED))
    await bus.flush()
    await bus.close()

    assert [json.loads(t).get("status") for t in handle.sent] == [None, "confirmed"]
    assert handle.closed
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_subscriber_connecting_during_dispatch_lag_misses_earlier_event() -> None:
    bus = InMemoryBroadcastBus()
    await bus.start()
    registry = SubscriberRegistry()
    registry.attach(bus)
    early = FakeHandle()
    await registry.connect(early)

    await bus.publish(_event(20))
    late = FakeHandle()
    await registry.connect(late)
    await bus.flush()

    assert [json.loads(t).get("progress") for t in early.sent] == [None, 20]
    assert [json.loads(t).get("progress") for t in late.sent] == [None]

    await bus.publish(_event(40, OrderStatus.BUILDING))
    await bus.flush()
    await registry.close()
    await bus.close()

    assert [json.loads(t).get("progress") for t in late.sent] == [None, 40]


@pytest.mark.asyncio
async def test_listener_subscribing_after_publish_skips_queued_event() -> None:
    bus = InMemoryBroadcastBus()
    await bus.start()
    seen: list[int] = []

    async def listener(e: ProgressEvent) -> None:
        seen.append(e.progress)

    await bus.publish(_event(20))
    bus.subscribe(listener)
    await bus.publish(_event(40))
    await bus.flush()
    await bus.close()

    assert seen == [40]
