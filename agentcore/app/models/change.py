"""Domain models for code changes derived from model output."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from agentcore.app.models.task import utc_now


class ChangeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CodeChange(BaseModel):
    """A single file mutation matched from a diff block."""
    id: str
    file_path: str
    original_content: str
    new_content: str
    diff: str
    agent_id: str
    task_id: str
    status: ChangeStatus = ChangeStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
