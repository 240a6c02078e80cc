"""Lifecycle event notifier for the agent orchestration core."""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from agentcore.app.models.task import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Every notification the core emits outward."""
    AGENT_CREATED = "agent.created"
    AGENT_DELETED = "agent.deleted"
    AGENT_PAUSED = "agent.paused"
    AGENT_RESUMED = "agent.resumed"
    AGENT_STOPPED = "agent.stopped"
    MESSAGE_APPENDED = "agent.message"
    SKILL_APPLIED = "skill.applied"
    TASK_STARTED = "task.started"
    TASK_PROGRESS = "task.progress"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_CANCELLED = "task.cancelled"
    TOOL_EXECUTED = "tool.executed"
    CHANGE_CREATED = "change.created"
    CHANGE_RESOLVED = "change.resolved"
    PERMISSION_MODE_CHANGED = "permission.mode_changed"
    PERMISSION_REQUESTED = "permission.requested"
    PERMISSION_RESOLVED = "permission.resolved"


class AgentEvent(BaseModel):
    """One emitted notification."""
    type: EventType
    agent_id: Optional[str] = None
    payload: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utc_now)


EventCallback = Callable[[AgentEvent], None]


class EventBus:
    """
    Fan-out of lifecycle events to unrelated subscribers.

    Emission is synchronous and in call order, so events for one agent reach
    every subscriber in the order they happened. Subscribers either register a
    callback or take an asyncio.Queue to consume from.
    """

    def __init__(self):
        self._callbacks: list[EventCallback] = []
        self._queues: list[asyncio.Queue] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register a callback for every event.

        Args:
            callback: Called with each AgentEvent

        Returns:
            Function that removes the subscription
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def subscribe_queue(self, maxsize: int = 0) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(
        self,
        event_type: EventType,
        agent_id: Optional[str] = None,
        **payload: Any
    ) -> AgentEvent:
        """
        Publish an event to all subscribers.

        Pydantic models in the payload are dumped to JSON-compatible dicts.
        A failing subscriber is logged and skipped.
        """
        event = AgentEvent(
            type=event_type,
            agent_id=agent_id,
            payload={key: _dump(value) for key, value in payload.items()}
        )

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event_type.value}: {e}", exc_info=True)

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event queue full, dropping {event_type.value} for {agent_id}")

        return event


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_dump(item) for item in value]
    return value
