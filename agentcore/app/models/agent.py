"""Domain models for agents."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentcore.app.models.task import AgentTask, utc_now
from agentcore.orchestrator.permission_gate import PermissionMode


class AgentStatus(str, Enum):
    """Agent lifecycle status."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class AgentMessage(BaseModel):
    """One entry in an agent's ordered conversation history."""
    id: str
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = {}


class AgentCreate(BaseModel):
    """Configuration accepted by AgentRegistry.create_agent."""
    name: str
    project_path: str
    provider_id: str
    model: str
    skills: list[str] = []
    system_prompt: Optional[str] = None
    permission_mode: Optional[PermissionMode] = None
    tool_calling: bool = False  # drive tasks through the tool-calling loop
    metadata: dict[str, Any] = {}


class Agent(BaseModel):
    """A coding assistant bound to one isolated workspace."""
    id: str
    name: str
    status: AgentStatus = AgentStatus.IDLE
    project_path: str
    worktree_name: str
    worktree_path: str
    provider_id: str
    model: str
    skills: list[str] = []
    permission_mode: PermissionMode = PermissionMode.ASK
    tool_calling: bool = False
    messages: list[AgentMessage] = []
    tasks: list[AgentTask] = []
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_active_at: Optional[datetime] = None

    def find_task(self, task_id: str) -> Optional[AgentTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None
