"""Shared stubs and fixtures for the agentcore tests."""

import asyncio
import copy
import shutil
import time
from pathlib import Path
from typing import Any, Optional

import pytest

from agentcore.app.config import OrchestratorConfig
from agentcore.app.models.agent import AgentCreate
from agentcore.git.worktree_manager import WorkspaceHandle
from agentcore.llm.backend import AIResponse, SendOptions, ToolCall, ToolResponse
from agentcore.llm.retry import RetryPolicy
from agentcore.orchestrator.events import EventBus
from agentcore.orchestrator.registry import AgentRegistry
from agentcore.storage.base import InMemoryAgentStore


README_DIFF = """I'll add the README.

```diff
diff --git a/README.md b/README.md
new file mode 100644
--- /dev/null
+++ b/README.md
@@ -0,0 +1 @@
+# Title
```
"""


class ScriptedBackend:
    """
    AI backend replaying a script of replies.

    Each script entry is a reply string, an exception to raise, or "block"
    to wait until cancelled. The last entry repeats once the script runs out.
    """

    def __init__(self, *script: Any):
        self.script = list(script) or [""]
        self.calls: list[list[dict[str, Any]]] = []
        self.started = asyncio.Event()

    def _next(self) -> Any:
        if len(self.script) > 1:
            return self.script.pop(0)
        return self.script[0]

    async def send_message(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: Optional[SendOptions] = None
    ) -> AIResponse:
        self.calls.append(copy.deepcopy(messages))
        self.started.set()
        step = self._next()
        if step == "block":
            await asyncio.Event().wait()
        if isinstance(step, BaseException):
            raise step
        return AIResponse(content=step, metadata={"model": model})


class ScriptedToolBackend(ScriptedBackend):
    """Tool-calling backend; script entries are ToolResponse objects."""

    async def send_with_tools(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        options: Optional[SendOptions] = None
    ) -> ToolResponse:
        self.calls.append(copy.deepcopy(messages))
        self.started.set()
        step = self._next()
        if step == "block":
            await asyncio.Event().wait()
        if isinstance(step, BaseException):
            raise step
        return step


class StreamingStubBackend(ScriptedBackend):

    def __init__(self, chunks: list[str]):
        super().__init__("".join(chunks))
        self.chunks = chunks

    async def stream_message(self, model, messages, options=None):
        self.calls.append(copy.deepcopy(messages))
        for chunk in self.chunks:
            yield chunk


def tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> ToolResponse:
    return ToolResponse(content="", tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)])


def final_answer(text: str) -> ToolResponse:
    return ToolResponse(content=text)


class TempWorkspaceProvider:
    """Workspace provider handing out plain temp directories."""

    def __init__(self, root: Path):
        self.root = root
        self.created: list[str] = []
        self.removed: list[str] = []
        self.fail_create = False
        self.fail_remove = False
        self.remove_delay = 0.0  # seconds

    def create_workspace(self, project: str, name: str) -> WorkspaceHandle:
        if self.fail_create:
            raise OSError("disk full")
        path = self.root / name
        path.mkdir(parents=True)
        self.created.append(name)
        return WorkspaceHandle(name=name, path=str(path), branch=f"codex/{name}")

    def remove_workspace(self, project: str, name: str) -> None:
        if self.remove_delay:
            time.sleep(self.remove_delay)
        if self.fail_remove:
            raise OSError("worktree locked")
        shutil.rmtree(self.root / name, ignore_errors=True)
        self.removed.append(name)


@pytest.fixture
def workspaces(tmp_path: Path) -> TempWorkspaceProvider:
    return TempWorkspaceProvider(tmp_path / "workspaces")


@pytest.fixture
def make_registry(workspaces: TempWorkspaceProvider):
    """Factory building a registry around the given backend."""

    def factory(backend: Any = None, store: Any = None, skills: Any = None, **overrides: Any) -> AgentRegistry:
        settings = {
            "retry_policy": RetryPolicy(max_retries=3, base_delay=0.0),
            "task_timeout": 30,
            "tool_timeout": 10,
        }
        settings.update(overrides)
        return AgentRegistry(
            OrchestratorConfig(**settings),
            backends={"stub": backend or ScriptedBackend("ok")},
            workspaces=workspaces,
            store=store or InMemoryAgentStore(),
            skills=skills,
            events=EventBus()
        )

    return factory


def agent_config(**overrides: Any) -> AgentCreate:
    fields = {"name": "test-agent", "project_path": "/proj", "provider_id": "stub", "model": "stub-model"}
    fields.update(overrides)
    return AgentCreate(**fields)
