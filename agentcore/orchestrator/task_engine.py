"""Detached execution of agent tasks with cancellation and timeout."""

import asyncio
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from agentcore.app.models.agent import Agent, AgentMessage, AgentStatus, MessageRole
from agentcore.app.models.task import AgentTask, TaskStatus, utc_now
from agentcore.llm.backend import AIBackend, SendOptions, ToolCall, ToolCallingBackend
from agentcore.llm.prompt_templates import (
    get_diff_task_system_prompt,
    get_task_message,
    get_tool_task_system_prompt,
)
from agentcore.llm.retry import RetryPolicy, get_ai_response_with_retry
from agentcore.orchestrator.cancellation import CancellationToken
from agentcore.orchestrator.diff_engine import DiffEngine
from agentcore.orchestrator.events import EventBus, EventType
from agentcore.orchestrator.permission_gate import PermissionGate
from agentcore.orchestrator.tool_loop import DEFAULT_MAX_ITERATIONS, ToolCallingLoop
from agentcore.sandbox.tools import Sandbox, ToolResult
from agentcore.storage.base import AgentStore

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT = 1800.0  # seconds
RESPONSE_PROGRESS = 50
TOOL_LOOP_PROGRESS_START = 10
TOOL_LOOP_PROGRESS_END = 90


class TaskExecutionEngine:
    """
    Runs agent tasks end-to-end as detached asyncio tasks.

    A task moves running -> completed | failed | cancelled, with paused as an
    interruption that resume_task turns back into running. Each run owns one
    cancellation token and one timeout timer; both are released when the run
    ends, whatever the outcome. The engine mutates the Agent objects handed to
    it, so callers must pass the registry's live records, not copies.
    """

    def __init__(
        self,
        store: AgentStore,
        gate: PermissionGate,
        events: Optional[EventBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        default_timeout: float = DEFAULT_TASK_TIMEOUT,
        max_tool_iterations: int = DEFAULT_MAX_ITERATIONS,
        agent_exists: Optional[Callable[[str], bool]] = None
    ):
        """
        Initialize task execution engine.

        Args:
            store: Persistence for agents and code changes
            gate: Permission gate for tool-calling tasks
            events: Event bus for task notifications
            retry_policy: Retry policy for AI backend calls
            default_timeout: Seconds before a task is cancelled
            max_tool_iterations: Iteration cap for tool-calling tasks
            agent_exists: Checked before persisting, so a deleted agent is not written back
        """
        self.store = store
        self.gate = gate
        self.events = events or EventBus()
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_timeout = default_timeout
        self.max_tool_iterations = max_tool_iterations
        self.agent_exists = agent_exists or (lambda agent_id: True)
        self.diff_engine = DiffEngine(store, self.events)

        self._tokens: dict[str, CancellationToken] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._runners: dict[str, asyncio.Task] = {}
        self._task_agents: dict[str, str] = {}

    def live_token_count(self, agent_id: str) -> int:
        """Number of uncancelled task tokens owned by an agent."""
        return sum(
            1 for task_id, token in self._tokens.items()
            if self._task_agents.get(task_id) == agent_id and not token.cancelled
        )

    def is_active(self, task_id: str) -> bool:
        return task_id in self._runners

    def start_task(
        self,
        agent: Agent,
        description: str,
        backend: AIBackend,
        sandbox: Sandbox,
        timeout: Optional[float] = None
    ) -> AgentTask:
        """
        Start a task and return immediately with it at running.

        Args:
            agent: Live agent record
            description: What the agent should do
            backend: AI backend for the agent's provider
            sandbox: Sandbox bound to the agent's workspace
            timeout: Seconds before cancellation (default: engine default)

        Returns:
            The new task at status running

        Raises:
            AgentBusyError: If the agent already has a live task or is paused
        """
        if agent.status == AgentStatus.PAUSED:
            raise AgentBusyError(f"Agent {agent.id} is paused; resume or stop it first")
        if self.live_token_count(agent.id) > 0:
            raise AgentBusyError(f"Agent {agent.id} already has a running task")

        task = AgentTask(id=str(uuid.uuid4()), description=description)
        agent.tasks.append(task)
        agent.messages.append(AgentMessage(
            id=str(uuid.uuid4()),
            role=MessageRole.USER,
            content=get_task_message(description)
        ))
        self._mark_running(agent)

        self._launch(agent, task, backend, sandbox, timeout)
        self.events.emit(EventType.TASK_STARTED, agent.id, task=task)
        logger.info(f"Started task {task.id} for agent {agent.id}: {description}")
        return task

    async def resume_task(
        self,
        agent: Agent,
        task_id: str,
        backend: AIBackend,
        sandbox: Sandbox,
        timeout: Optional[float] = None
    ) -> Optional[AgentTask]:
        """
        Restart a paused task with a fresh token, keeping its progress.

        Waits for the interrupted run to finish first. Returns None if the
        task is no longer paused by then (e.g. it was stopped meanwhile).
        """
        await self.wait(task_id)

        task = agent.find_task(task_id)
        if task is None or task.status != TaskStatus.PAUSED:
            logger.info(f"Task {task_id} no longer paused; not resuming")
            return None
        if self.live_token_count(agent.id) > 0:
            raise AgentBusyError(f"Agent {agent.id} already has a running task")

        task.status = TaskStatus.RUNNING
        task.completed_at = None
        self._mark_running(agent)

        self._launch(agent, task, backend, sandbox, timeout)
        logger.info(f"Resumed task {task.id} for agent {agent.id} at {task.progress}%")
        return task

    @contextmanager
    def message_token(self, agent: Agent) -> Iterator[CancellationToken]:
        """
        Hold the agent's single live token for the length of a chat exchange.

        The agent is running while the block executes; pause and stop cancel
        the token like a task's. The token is released on exit, but the agent
        status is left for the caller to settle.

        Raises:
            AgentBusyError: If the agent is paused or already has a live token
        """
        if agent.status == AgentStatus.PAUSED:
            raise AgentBusyError(f"Agent {agent.id} is paused; resume or stop it first")
        if self.live_token_count(agent.id) > 0:
            raise AgentBusyError(f"Agent {agent.id} is busy")

        key = f"message-{uuid.uuid4()}"
        token = CancellationToken(owner=key)
        self._tokens[key] = token
        self._task_agents[key] = agent.id
        self._mark_running(agent)
        try:
            yield token
        finally:
            if self._tokens.get(key) is token:
                del self._tokens[key]
            self._task_agents.pop(key, None)

    def cancel_agent_tasks(self, agent: Agent, reason: str, pause: bool = False) -> list[str]:
        """
        Signal cancellation to every live task of an agent.

        Args:
            agent: Live agent record
            reason: Reason recorded on the tokens
            pause: Mark running tasks paused instead of letting them end cancelled

        Returns:
            Ids of the tasks whose tokens were signalled (message tokens are
            cancelled too but not listed)
        """
        cancelled = []
        for task_id, token in list(self._tokens.items()):
            if self._task_agents.get(task_id) != agent.id:
                continue
            task = agent.find_task(task_id)
            if pause and task is not None and task.status == TaskStatus.RUNNING:
                task.status = TaskStatus.PAUSED
            if token.cancel(reason) and task is not None:
                cancelled.append(task_id)
        return cancelled

    def stop_agent_tasks(self, agent: Agent, reason: str = "stopped") -> list[str]:
        """
        Cancel every running or paused task of an agent for good.

        Returns:
            Ids of the tasks that became cancelled
        """
        self.cancel_agent_tasks(agent, reason)

        stopped = []
        for task in agent.tasks:
            if task.status not in (TaskStatus.RUNNING, TaskStatus.PAUSED):
                continue
            was_paused = task.status == TaskStatus.PAUSED
            task.status = TaskStatus.CANCELLED
            task.error = task.error or reason
            task.completed_at = utc_now()
            stopped.append(task.id)
            if was_paused and not self.is_active(task.id):
                self.events.emit(EventType.TASK_CANCELLED, agent.id, task=task, reason=reason)
        return stopped

    async def wait(self, task_id: str, timeout: Optional[float] = None) -> None:
        """Wait for a task's current run to end (no-op if nothing is running)."""
        runner = self._runners.get(task_id)
        if runner is None:
            return
        await asyncio.wait_for(asyncio.shield(runner), timeout=timeout)

    async def drain_agent(self, agent_id: str) -> None:
        """Wait for every run owned by an agent to end."""
        runners = [
            runner for task_id, runner in self._runners.items()
            if self._task_agents.get(task_id) == agent_id
        ]
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

    def set_progress(self, agent_id: str, task: AgentTask, progress: int) -> None:
        """Raise a running task's progress; lower values and frozen tasks are ignored."""
        if task.status != TaskStatus.RUNNING:
            return
        progress = max(0, min(100, int(progress)))
        if progress <= task.progress:
            return
        task.progress = progress
        self.events.emit(EventType.TASK_PROGRESS, agent_id, task_id=task.id, progress=progress)

    def _mark_running(self, agent: Agent) -> None:
        agent.status = AgentStatus.RUNNING
        agent.last_active_at = utc_now()
        agent.updated_at = agent.last_active_at

    def _launch(
        self,
        agent: Agent,
        task: AgentTask,
        backend: AIBackend,
        sandbox: Sandbox,
        timeout: Optional[float]
    ) -> None:
        timeout = timeout or self.default_timeout
        token = CancellationToken(owner=task.id)
        loop = asyncio.get_running_loop()

        self._tokens[task.id] = token
        self._task_agents[task.id] = agent.id
        self._timers[task.id] = loop.call_later(
            timeout, token.cancel, f"Task timed out after {timeout:g}s"
        )

        runner = asyncio.create_task(self._run(agent, task, backend, sandbox, token))
        self._runners[task.id] = runner

        def forget(finished: asyncio.Task) -> None:
            if self._runners.get(task.id) is finished:
                del self._runners[task.id]
                self._task_agents.pop(task.id, None)

        runner.add_done_callback(forget)

    async def _run(
        self,
        agent: Agent,
        task: AgentTask,
        backend: AIBackend,
        sandbox: Sandbox,
        token: CancellationToken
    ) -> None:
        try:
            if agent.tool_calling and isinstance(backend, ToolCallingBackend):
                content = await self._run_tool_loop(agent, task, backend, sandbox, token)
                change_ids: list[str] = []
            else:
                if agent.tool_calling:
                    logger.warning(
                        f"Backend for agent {agent.id} has no tool calling; applying diffs instead"
                    )
                content = await self._run_diff_task(agent, task, backend, token)
                changes = await self.diff_engine.apply_response(
                    content, sandbox, agent.id, task.id, token
                )
                change_ids = [change.id for change in changes]
            token.raise_if_cancelled()
            self._complete(agent, task, content, change_ids)
        except asyncio.CancelledError:
            token.cancel("runner cancelled")
            self._cancelled(agent, task, token)
            raise
        except Exception as e:
            if token.cancelled:
                self._cancelled(agent, task, token)
            else:
                self._failed(agent, task, e)
        finally:
            timer = self._timers.pop(task.id, None)
            if timer is not None:
                timer.cancel()
            if self._tokens.get(task.id) is token:
                del self._tokens[task.id]
            await self._persist(agent)

    async def _run_diff_task(
        self,
        agent: Agent,
        task: AgentTask,
        backend: AIBackend,
        token: CancellationToken
    ) -> str:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": get_diff_task_system_prompt(agent.metadata.get("project_context"))}
        ]
        messages.extend(
            {"role": message.role.value, "content": message.content}
            for message in agent.messages
            if message.role != MessageRole.TOOL
        )
        options = SendOptions(on_progress=lambda value: self.set_progress(agent.id, task, value))

        response = await get_ai_response_with_retry(
            lambda: backend.send_message(agent.model, messages, options),
            policy=self.retry_policy,
            token=token,
            label=f"task {task.id}"
        )
        self.set_progress(agent.id, task, RESPONSE_PROGRESS)
        return response.content

    async def _run_tool_loop(
        self,
        agent: Agent,
        task: AgentTask,
        backend: ToolCallingBackend,
        sandbox: Sandbox,
        token: CancellationToken
    ) -> str:
        system_parts = [m.content for m in agent.messages if m.role == MessageRole.SYSTEM]
        system_parts.append(get_tool_task_system_prompt(agent.metadata.get("project_context")))
        span = TOOL_LOOP_PROGRESS_END - TOOL_LOOP_PROGRESS_START

        def on_iteration(iteration: int) -> None:
            self.set_progress(
                agent.id, task,
                TOOL_LOOP_PROGRESS_START + span * iteration // self.max_tool_iterations
            )

        def on_tool_call(agent_id: str, call: ToolCall, result: ToolResult) -> None:
            self.events.emit(
                EventType.TOOL_EXECUTED, agent_id, task_id=task.id, call=call, result=result
            )

        tool_loop = ToolCallingLoop(
            backend,
            sandbox,
            self.gate,
            agent.id,
            retry_policy=self.retry_policy,
            max_iterations=self.max_tool_iterations,
            observer=on_tool_call,
            on_iteration=on_iteration
        )
        self.set_progress(agent.id, task, TOOL_LOOP_PROGRESS_START)
        return await tool_loop.run(
            agent.model, "\n\n".join(system_parts), get_task_message(task.description), token
        )

    def _complete(self, agent: Agent, task: AgentTask, content: str, change_ids: list[str]) -> None:
        task.progress = 100
        task.result = content
        task.status = TaskStatus.COMPLETED
        task.completed_at = utc_now()

        agent.messages.append(AgentMessage(
            id=str(uuid.uuid4()),
            role=MessageRole.ASSISTANT,
            content=content,
            metadata={"task_id": task.id, "changes": change_ids}
        ))
        if agent.status == AgentStatus.RUNNING:
            agent.status = AgentStatus.IDLE
        agent.last_active_at = utc_now()
        agent.updated_at = agent.last_active_at

        self.events.emit(EventType.TASK_COMPLETED, agent.id, task=task)
        logger.info(f"Task {task.id} completed with {len(change_ids)} changes")

    def _failed(self, agent: Agent, task: AgentTask, error: Exception) -> None:
        task.status = TaskStatus.FAILED
        task.error = str(error) or type(error).__name__
        task.completed_at = utc_now()
        if agent.status == AgentStatus.RUNNING:
            agent.status = AgentStatus.ERROR
        agent.updated_at = utc_now()

        self.events.emit(EventType.TASK_FAILED, agent.id, task=task, error=task.error)
        logger.error(f"Task {task.id} failed: {task.error}", exc_info=error)

    def _cancelled(self, agent: Agent, task: AgentTask, token: CancellationToken) -> None:
        if task.status == TaskStatus.PAUSED:
            logger.info(f"Task {task.id} paused at {task.progress}%")
        else:
            if task.status != TaskStatus.CANCELLED:
                task.status = TaskStatus.CANCELLED
                task.error = token.reason
                task.completed_at = utc_now()
            self.events.emit(EventType.TASK_CANCELLED, agent.id, task=task, reason=token.reason)
            logger.info(f"Task {task.id} cancelled: {token.reason}")

        if agent.status == AgentStatus.RUNNING:
            agent.status = AgentStatus.IDLE
        agent.updated_at = utc_now()

    async def _persist(self, agent: Agent) -> None:
        if not self.agent_exists(agent.id):
            logger.debug(f"Agent {agent.id} deleted during task; not persisting")
            return
        try:
            await self.store.update_agent(agent)
        except Exception as e:
            logger.error(f"Failed to persist agent {agent.id}: {e}", exc_info=True)


class AgentBusyError(Exception):
    """Raised when an agent already has a live task or is paused."""
    pass
