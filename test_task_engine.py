"""Tests for task execution: terminal states, pause/resume, timeout and progress."""

import asyncio
from pathlib import Path

import pytest

from agentcore.app.models.agent import AgentStatus
from agentcore.app.models.change import ChangeStatus
from agentcore.app.models.task import TaskStatus
from agentcore.llm.backend import AIResponse
from agentcore.orchestrator.events import EventType
from agentcore.orchestrator.permission_gate import PermissionMode, RequestStatus
from agentcore.orchestrator.task_engine import AgentBusyError

from conftest import (
    README_DIFF,
    ScriptedBackend,
    ScriptedToolBackend,
    agent_config,
    final_answer,
    tool_call,
)


def live_tokens(registry, agent_id: str) -> int:
    return registry.engine.live_token_count(agent_id)


@pytest.mark.asyncio
async def test_readme_task_completes_with_pending_change(make_registry):
    registry = make_registry(ScriptedBackend(README_DIFF))
    agent = await registry.create_agent(agent_config())

    task = await registry.execute_task(agent.id, "add a README")
    assert task.status == TaskStatus.RUNNING

    task = await registry.wait_for_task(task.id, timeout=5)
    assert task.status == TaskStatus.COMPLETED
    assert task.progress == 100
    assert task.result == README_DIFF

    readme = Path(agent.worktree_path) / "README.md"
    assert readme.read_bytes() == b"# Title\n"

    changes = await registry.get_code_changes(agent.id)
    assert len(changes) == 1
    assert changes[0].file_path == "README.md"
    assert changes[0].status == ChangeStatus.PENDING
    assert changes[0].task_id == task.id

    agent = registry.get_agent(agent.id)
    assert agent.status == AgentStatus.IDLE
    assert agent.messages[-1].metadata["changes"] == [changes[0].id]
    assert live_tokens(registry, agent.id) == 0


@pytest.mark.asyncio
async def test_task_prompt_carries_history_and_instructions(make_registry):
    backend = ScriptedBackend("no changes")
    registry = make_registry(backend)
    agent = await registry.create_agent(agent_config(
        system_prompt="Be brief.", metadata={"project_context": "A FastAPI service"}
    ))

    task = await registry.execute_task(agent.id, "tidy up")
    await registry.wait_for_task(task.id, timeout=5)

    messages = backend.calls[0]
    assert messages[0]["role"] == "system"
    assert "diff --git" in messages[0]["content"]
    assert "A FastAPI service" in messages[0]["content"]
    assert messages[1] == {"role": "system", "content": "Be brief."}
    assert messages[-1] == {"role": "user", "content": "[TASK] tidy up"}


@pytest.mark.asyncio
async def test_running_agent_has_exactly_one_live_token(make_registry):
    backend = ScriptedBackend("block")
    registry = make_registry(backend)
    agent = await registry.create_agent(agent_config())

    await registry.execute_task(agent.id, "first")
    await backend.started.wait()

    assert registry.get_agent(agent.id).status == AgentStatus.RUNNING
    assert live_tokens(registry, agent.id) == 1

    with pytest.raises(AgentBusyError):
        await registry.execute_task(agent.id, "second")
    assert live_tokens(registry, agent.id) == 1
    assert len(registry.get_agent(agent.id).tasks) == 1

    await registry.stop_agent(agent.id)


@pytest.mark.asyncio
async def test_failure_records_error_and_sets_agent_error(make_registry):
    registry = make_registry(ScriptedBackend(ValueError("model rejected the request")))
    agent = await registry.create_agent(agent_config())

    task = await registry.execute_task(agent.id, "break")
    task = await registry.wait_for_task(task.id, timeout=5)

    assert task.status == TaskStatus.FAILED
    assert task.error == "model rejected the request"
    assert task.completed_at is not None
    assert registry.get_agent(agent.id).status == AgentStatus.ERROR
    assert live_tokens(registry, agent.id) == 0


@pytest.mark.asyncio
async def test_timeout_cancels_task(make_registry):
    registry = make_registry(ScriptedBackend("block"))
    agent = await registry.create_agent(agent_config())

    task = await registry.execute_task(agent.id, "slow", timeout=0.1)
    task = await registry.wait_for_task(task.id, timeout=5)

    assert task.status == TaskStatus.CANCELLED
    assert task.error == "Task timed out after 0.1s"
    assert registry.get_agent(agent.id).status == AgentStatus.IDLE


@pytest.mark.asyncio
async def test_pause_then_stop(make_registry):
    backend = ScriptedBackend("block")
    registry = make_registry(backend)
    agent = await registry.create_agent(agent_config())

    task = await registry.execute_task(agent.id, "long job")
    await backend.started.wait()

    await registry.pause_agent(agent.id)
    assert registry.get_task(task.id).status == TaskStatus.PAUSED
    assert registry.get_agent(agent.id).status == AgentStatus.PAUSED
    assert live_tokens(registry, agent.id) == 0

    # the interrupted run ends but the task stays paused
    task = await registry.wait_for_task(task.id, timeout=5)
    assert task.status == TaskStatus.PAUSED

    with pytest.raises(AgentBusyError):
        await registry.execute_task(agent.id, "while paused")

    await registry.stop_agent(agent.id)
    assert registry.get_task(task.id).status == TaskStatus.CANCELLED
    assert registry.get_agent(agent.id).status == AgentStatus.IDLE


@pytest.mark.asyncio
async def test_resume_restarts_paused_task(make_registry):
    backend = ScriptedBackend("block", README_DIFF)
    registry = make_registry(backend)
    agent = await registry.create_agent(agent_config())

    task = await registry.execute_task(agent.id, "add a README")
    await backend.started.wait()
    await registry.pause_agent(agent.id)

    resumed = await registry.resume_agent(agent.id)
    assert resumed.id == task.id

    task = await registry.wait_for_task(task.id, timeout=5)
    assert task.status == TaskStatus.COMPLETED
    assert registry.get_agent(agent.id).status == AgentStatus.IDLE
    assert len(backend.calls) == 2


@pytest.mark.asyncio
async def test_resume_without_paused_task_returns_idle(make_registry):
    registry = make_registry()
    agent = await registry.create_agent(agent_config())

    await registry.pause_agent(agent.id)
    assert await registry.resume_agent(agent.id) is None
    assert registry.get_agent(agent.id).status == AgentStatus.IDLE


class ProgressBackend:
    """Reports progress out of order before answering."""

    async def send_message(self, model, messages, options=None):
        for value in (30, 20, 60, 150):
            options.on_progress(value)
        return AIResponse(content="done")


@pytest.mark.asyncio
async def test_progress_never_decreases(make_registry):
    registry = make_registry(ProgressBackend())
    progress = []
    registry.events.subscribe(
        lambda event: progress.append(event.payload["progress"])
        if event.type == EventType.TASK_PROGRESS else None
    )
    agent = await registry.create_agent(agent_config())

    task = await registry.execute_task(agent.id, "report")
    task = await registry.wait_for_task(task.id, timeout=5)

    assert progress == [30, 60, 100]
    assert task.progress == 100


@pytest.mark.asyncio
async def test_progress_frozen_after_cancellation(make_registry):
    backend = ScriptedBackend("block")
    registry = make_registry(backend)
    agent = await registry.create_agent(agent_config())

    task = await registry.execute_task(agent.id, "job")
    await backend.started.wait()
    await registry.stop_agent(agent.id)
    await registry.wait_for_task(task.id, timeout=5)

    live_task = registry._agents[agent.id].find_task(task.id)
    frozen = live_task.progress
    registry.engine.set_progress(agent.id, live_task, 90)
    assert live_task.progress == frozen
    assert live_task.status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_tool_calling_task(make_registry):
    backend = ScriptedToolBackend(
        tool_call("bash", command="echo hi > out.txt"),
        final_answer("wrote out.txt")
    )
    registry = make_registry(backend)
    registry.gate.set_allow_bypass_mode(True)
    executed = []
    registry.events.subscribe(
        lambda event: executed.append(event.payload["call"]["name"])
        if event.type == EventType.TOOL_EXECUTED else None
    )
    agent = await registry.create_agent(
        agent_config(tool_calling=True, permission_mode=PermissionMode.BYPASS)
    )

    task = await registry.execute_task(agent.id, "write a file")
    task = await registry.wait_for_task(task.id, timeout=5)

    assert task.status == TaskStatus.COMPLETED
    assert task.result == "wrote out.txt"
    assert (Path(agent.worktree_path) / "out.txt").read_text() == "hi\n"
    assert executed == ["bash"]


@pytest.mark.asyncio
async def test_tool_calling_task_blocks_on_permission(make_registry):
    backend = ScriptedToolBackend(
        tool_call("bash", command="echo hi"),
        final_answer("done")
    )
    registry = make_registry(backend)
    agent = await registry.create_agent(agent_config(tool_calling=True))

    task = await registry.execute_task(agent.id, "run something")
    while not registry.get_pending_requests(agent.id):
        await asyncio.sleep(0.01)
    assert registry.get_task(task.id).status == TaskStatus.RUNNING

    request = registry.get_pending_requests(agent.id)[0]
    assert registry.approve_request(request.id) is True
    assert registry.approve_request(request.id) is False

    task = await registry.wait_for_task(task.id, timeout=5)
    assert task.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_stopping_a_task_expires_its_permission_request(make_registry):
    backend = ScriptedToolBackend(tool_call("bash", command="echo hi"), final_answer("done"))
    registry = make_registry(backend)
    agent = await registry.create_agent(agent_config(tool_calling=True))

    task = await registry.execute_task(agent.id, "run something")
    while not registry.get_pending_requests(agent.id):
        await asyncio.sleep(0.01)
    request = registry.get_pending_requests(agent.id)[0]

    await registry.stop_agent(agent.id)
    task = await registry.wait_for_task(task.id, timeout=5)

    assert task.status == TaskStatus.CANCELLED
    assert registry.get_pending_requests(agent.id) == []
    assert registry.gate.get_request(request.id).status == RequestStatus.EXPIRED
    assert registry.approve_request(request.id) is False
