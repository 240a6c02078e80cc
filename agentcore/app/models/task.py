"""Domain models for agent tasks."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Timezone-aware current time used for every record timestamp."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})


class AgentTask(BaseModel):
    """One unit of requested work."""
    id: str
    description: str
    status: TaskStatus = TaskStatus.RUNNING
    progress: int = 0  # 0-100
    result: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES
