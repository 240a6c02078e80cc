"""AI backend interface consumed by the orchestration core."""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel


class AIResponse(BaseModel):
    """Final text answer from the AI backend."""
    content: str
    metadata: dict[str, Any] = {}


class ToolCall(BaseModel):
    """One tool invocation requested by the model."""
    id: str
    name: str
    arguments: dict[str, Any] = {}


class ToolResponse(BaseModel):
    """Backend reply in a tool-calling conversation."""
    content: str = ""
    tool_calls: list[ToolCall] = []
    metadata: dict[str, Any] = {}


@dataclass
class SendOptions:
    """Per-call options passed to the backend."""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    on_progress: Optional[Callable[[int], None]] = None


@dataclass
class StreamCallbacks:
    """Receivers for a streamed assistant reply."""
    on_chunk: Callable[[str], None]
    on_complete: Callable[[], None]
    on_error: Callable[[Exception], None]


@runtime_checkable
class AIBackend(Protocol):
    """
    Minimal backend contract.

    Messages are plain dicts with "role" and "content". Tool-calling
    conversations additionally carry assistant messages with "tool_calls"
    (list of ToolCall dicts) and "tool" messages with "tool_call_id".
    """

    async def send_message(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: Optional[SendOptions] = None
    ) -> AIResponse:
        ...


@runtime_checkable
class ToolCallingBackend(AIBackend, Protocol):
    async def send_with_tools(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        options: Optional[SendOptions] = None
    ) -> ToolResponse:
        ...


@runtime_checkable
class StreamingBackend(AIBackend, Protocol):
    def stream_message(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: Optional[SendOptions] = None
    ) -> AsyncIterator[str]:
        ...
