"""Tests for the lifecycle event bus."""

import asyncio

import pytest

from agentcore.app.models.task import AgentTask, TaskStatus
from agentcore.orchestrator.events import EventBus, EventType


def test_callbacks_receive_events_in_order():
    bus = EventBus()
    seen = []
    bus.subscribe(lambda event: seen.append((event.type, event.agent_id)))

    bus.emit(EventType.AGENT_CREATED, "a1")
    bus.emit(EventType.TASK_STARTED, "a1")
    bus.emit(EventType.AGENT_DELETED, "a1")

    assert seen == [
        (EventType.AGENT_CREATED, "a1"),
        (EventType.TASK_STARTED, "a1"),
        (EventType.AGENT_DELETED, "a1"),
    ]


def test_payload_models_are_dumped():
    bus = EventBus()
    event = bus.emit(
        EventType.TASK_COMPLETED, "a1",
        task=AgentTask(id="t1", description="do it", status=TaskStatus.COMPLETED),
        status=TaskStatus.COMPLETED
    )
    assert event.payload["task"]["id"] == "t1"
    assert event.payload["task"]["status"] == "completed"
    assert event.payload["status"] == "completed"


def test_failing_subscriber_does_not_stop_others():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    bus.subscribe(lambda event: seen.append(event.type))
    bus.emit(EventType.AGENT_PAUSED, "a1")

    assert seen == [EventType.AGENT_PAUSED]


def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(lambda event: seen.append(event.type))
    unsubscribe()
    bus.emit(EventType.AGENT_STOPPED, "a1")
    assert seen == []


@pytest.mark.asyncio
async def test_queue_subscriber_and_overflow():
    bus = EventBus()
    queue = bus.subscribe_queue(maxsize=2)

    bus.emit(EventType.AGENT_CREATED, "a1")
    bus.emit(EventType.AGENT_PAUSED, "a1")
    bus.emit(EventType.AGENT_RESUMED, "a1")  # dropped

    first = await asyncio.wait_for(queue.get(), timeout=1)
    second = await asyncio.wait_for(queue.get(), timeout=1)
    assert [first.type, second.type] == [EventType.AGENT_CREATED, EventType.AGENT_PAUSED]
    assert queue.empty()

    bus.unsubscribe_queue(queue)
    bus.emit(EventType.AGENT_STOPPED, "a1")
    assert queue.empty()
