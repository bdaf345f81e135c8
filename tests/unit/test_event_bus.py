import asyncio

import pytest

from flowpilot.contracts import EventType, FlowEvent
from flowpilot.events import EventBus


def _event(flow_id: str, event_type: EventType = EventType.STAGE_STARTED) -> FlowEvent:
    return FlowEvent(type=event_type, flow_id=flow_id)


@pytest.mark.asyncio
async def test_delivers_to_flow_and_global_subscribers_in_order():
    bus = EventBus()
    per_flow, everything = [], []
    bus.subscribe(per_flow.append, "flow_a")
    bus.subscribe(everything.append)

    await bus.publish(_event("flow_a", EventType.FLOW_STARTED))
    await bus.publish(_event("flow_b"))
    await bus.publish(_event("flow_a", EventType.FLOW_COMPLETED))

    assert [e.type for e in per_flow] == [EventType.FLOW_STARTED, EventType.FLOW_COMPLETED]
    assert [e.flow_id for e in everything] == ["flow_a", "flow_b", "flow_a"]


@pytest.mark.asyncio
async def test_async_callbacks_and_unsubscribe():
    bus = EventBus()
    received = []

    async def callback(event):
        await asyncio.sleep(0)
        received.append(event.flow_id)

    unsubscribe = bus.subscribe(callback, "flow_a")
    await bus.publish(_event("flow_a"))
    unsubscribe()
    unsubscribe()
    await bus.publish(_event("flow_a"))

    assert received == ["flow_a"]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others(caplog):
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    await bus.publish(_event("flow_a"))

    assert len(received) == 1
    assert "subscriber bug" in caplog.text


@pytest.mark.asyncio
async def test_stream_yields_published_events_until_lifespan():
    bus = EventBus()
    collected = []

    async def consume():
        async for event in bus.stream("flow_a", lifespan=0.2):
            collected.append(event.type)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    await bus.publish(_event("flow_a", EventType.FLOW_STARTED))
    await bus.publish(_event("flow_b"))
    await bus.publish(_event("flow_a", EventType.FLOW_COMPLETED))
    await consumer

    assert collected == [EventType.FLOW_STARTED, EventType.FLOW_COMPLETED]
