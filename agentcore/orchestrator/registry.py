"""Agent registry: owns agent records and exposes the lifecycle operations."""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from agentcore.app.config import OrchestratorConfig
from agentcore.app.models.agent import Agent, AgentCreate, AgentMessage, AgentStatus, MessageRole
from agentcore.app.models.change import ChangeStatus, CodeChange
from agentcore.app.models.task import AgentTask, TaskStatus, utc_now
from agentcore.git.worktree_manager import WorkspaceProvider
from agentcore.llm.backend import AIBackend, StreamCallbacks, StreamingBackend
from agentcore.llm.prompt_templates import get_skill_message
from agentcore.llm.retry import get_ai_response_with_retry
from agentcore.orchestrator.cancellation import TaskCancelledError
from agentcore.orchestrator.events import EventBus, EventType
from agentcore.orchestrator.permission_gate import (
    BypassNotAllowedError,
    PermissionGate,
    PermissionMode,
    PermissionRequest,
)
from agentcore.orchestrator.task_engine import TaskExecutionEngine
from agentcore.sandbox.tools import Sandbox
from agentcore.skills.skill_provider import SkillProvider
from agentcore.storage.base import AgentStore, InMemoryAgentStore

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Owns every agent record and composes the per-agent components.

    Callers hold agent ids; every read returns a copy, and all mutation goes
    through the operations here or the task engine. Nothing is locked:
    sequences that await in the middle re-check the records afterwards.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        backends: dict[str, AIBackend],
        workspaces: WorkspaceProvider,
        store: Optional[AgentStore] = None,
        skills: Optional[SkillProvider] = None,
        events: Optional[EventBus] = None,
        gate: Optional[PermissionGate] = None
    ):
        """
        Initialize agent registry.

        Args:
            config: Timeouts, retry policy, reaper and permission settings
            backends: AI backends keyed by provider id
            workspaces: Workspace isolation provider
            store: Persistence (default: in-memory)
            skills: Skill provider for instruction injection
            events: Event bus shared by every component
            gate: Permission gate (default: built from config)
        """
        self.config = config
        self.backends = backends
        self.workspaces = workspaces
        self.store = store or InMemoryAgentStore()
        self.skills = skills
        self.events = events or EventBus()
        self.gate = gate or PermissionGate(
            self.events,
            allow_bypass_mode=config.allow_bypass_mode,
            default_mode=config.default_permission_mode
        )
        self.engine = TaskExecutionEngine(
            self.store,
            self.gate,
            self.events,
            retry_policy=config.retry_policy,
            default_timeout=config.task_timeout,
            max_tool_iterations=config.max_tool_iterations,
            agent_exists=lambda agent_id: agent_id in self._agents
        )

        self._agents: dict[str, Agent] = {}
        self._sandboxes: dict[str, Sandbox] = {}
        self._resolving_changes: set[str] = set()
        self._deleting: set[str] = set()
        self._reaper: Optional[asyncio.Task] = None

    # -- lifecycle of the registry itself --

    async def initialize(self) -> None:
        """
        Load persisted agents.

        Running state cannot be restored: agents persisted as running are
        marked error and their running tasks failed. Paused tasks stay
        paused and can be resumed.
        """
        agents = await self.store.get_all_agents()
        for agent in agents:
            self._agents[agent.id] = agent
            try:
                self.gate.set_agent_mode(agent.id, agent.permission_mode)
            except BypassNotAllowedError:
                logger.warning(f"Agent {agent.id} was in bypass mode; bypass is disabled, using ask")
                agent.permission_mode = PermissionMode.ASK
                self.gate.set_agent_mode(agent.id, agent.permission_mode)

            interrupted = [t for t in agent.tasks if t.status == TaskStatus.RUNNING]
            for task in interrupted:
                task.status = TaskStatus.FAILED
                task.error = "Interrupted by restart"
                task.completed_at = utc_now()
            if agent.status == AgentStatus.RUNNING or interrupted:
                if agent.status == AgentStatus.RUNNING:
                    agent.status = AgentStatus.ERROR
                await self._persist(agent)

        logger.info(f"Loaded {len(agents)} agents from storage")

    def start(self) -> None:
        """Start the inactive-agent reaper."""
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_loop())
            logger.info(f"Agent reaper started (every {self.config.reaper_interval:g}s)")

    async def close(self) -> None:
        """Stop the reaper and pause every running agent."""
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        running = [a.id for a in self._agents.values() if a.status == AgentStatus.RUNNING]
        for agent_id in running:
            await self.pause_agent(agent_id)
        for agent_id in running:
            await self.engine.drain_agent(agent_id)
        logger.info(f"Registry closed ({len(running)} running agents paused)")

    # -- reads --

    def list_agents(self) -> list[Agent]:
        return [agent.model_copy(deep=True) for agent in self._agents.values()]

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    def require_agent(self, agent_id: str) -> Agent:
        """
        Raises:
            AgentNotFoundError: If no such agent exists
        """
        return self._require(agent_id).model_copy(deep=True)

    def get_task(self, task_id: str) -> Optional[AgentTask]:
        for agent in self._agents.values():
            task = agent.find_task(task_id)
            if task:
                return task.model_copy(deep=True)
        return None

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> AgentTask:
        """
        Wait until a task's current run ends.

        Raises:
            TaskNotFoundError: If no agent owns the task
            asyncio.TimeoutError: If timeout elapses first
        """
        if self.get_task(task_id) is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        await self.engine.wait(task_id, timeout=timeout)
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    # -- agent operations --

    async def create_agent(self, config: AgentCreate) -> Agent:
        """
        Create an agent in its own workspace.

        Args:
            config: Agent configuration

        Returns:
            The new agent at status idle

        Raises:
            ProviderNotFoundError: If the provider id is unknown
            BypassNotAllowedError: If bypass mode is requested but disabled
            WorkspaceAllocationError: If the workspace cannot be created
        """
        self._backend(config.provider_id)
        mode = config.permission_mode or self.gate.default_mode
        self.gate.validate_mode(mode)

        agent_id = str(uuid.uuid4())
        worktree_name = f"codex-agent-{agent_id[:8]}"
        try:
            handle = await asyncio.to_thread(
                self.workspaces.create_workspace, config.project_path, worktree_name
            )
        except Exception as e:
            logger.error(f"Failed to allocate workspace for agent {config.name}: {e}")
            raise WorkspaceAllocationError(f"Failed to create workspace: {e}") from e

        agent = Agent(
            id=agent_id,
            name=config.name,
            project_path=config.project_path,
            worktree_name=worktree_name,
            worktree_path=handle.path,
            provider_id=config.provider_id,
            model=config.model,
            skills=list(dict.fromkeys(config.skills)),
            permission_mode=mode,
            tool_calling=config.tool_calling,
            metadata=dict(config.metadata)
        )

        if config.system_prompt:
            agent.messages.append(AgentMessage(
                id=str(uuid.uuid4()),
                role=MessageRole.SYSTEM,
                content=config.system_prompt
            ))
        if agent.skills:
            await self._inject_skills(agent, agent.skills)

        self._agents[agent.id] = agent
        self.gate.set_agent_mode(agent.id, mode)
        await self.store.create_agent(agent)

        self.events.emit(EventType.AGENT_CREATED, agent.id, agent=agent)
        logger.info(f"Created agent {agent.id} ({agent.name}) in {handle.path}")
        return agent.model_copy(deep=True)

    async def send_message(self, agent_id: str, text: str) -> AgentMessage:
        """
        Send a chat message and wait for the assistant reply.

        Returns:
            The assistant message

        Raises:
            AgentNotFoundError: If no such agent exists
            AgentBusyError: If the agent is paused or has a live token
            TaskCancelledError: If the agent is paused or stopped mid-reply
            Exception: The backend failure after retries (agent set to error)
        """
        agent = self._require_live(agent_id)
        backend = self._backend(agent.provider_id)

        with self.engine.message_token(agent) as token:
            try:
                await self._append_user_message(agent, text)
                response = await get_ai_response_with_retry(
                    lambda: backend.send_message(agent.model, self._conversation(agent)),
                    policy=self.config.retry_policy,
                    token=token,
                    label=f"message for agent {agent.id}"
                )
            except TaskCancelledError:
                logger.info(f"Message to agent {agent.id} interrupted: {token.reason}")
                await self._persist(agent)
                raise
            except Exception as e:
                logger.error(f"Message to agent {agent.id} failed: {e}")
                await self._set_error(agent)
                raise

            message = await self._append_assistant_message(agent, response.content, response.metadata)
        return message.model_copy()

    async def send_message_stream(
        self,
        agent_id: str,
        text: str,
        callbacks: StreamCallbacks
    ) -> None:
        """
        Send a chat message and stream the reply through callbacks.

        Backends without streaming deliver the full reply as one chunk.
        Backend failures go to callbacks.on_error, not to the caller.

        Raises:
            AgentNotFoundError: If no such agent exists
            AgentBusyError: If the agent is paused or has a live token
        """
        agent = self._require_live(agent_id)
        backend = self._backend(agent.provider_id)

        with self.engine.message_token(agent) as token:
            try:
                await self._append_user_message(agent, text)
                if isinstance(backend, StreamingBackend):
                    content = ""
                    async for chunk in backend.stream_message(agent.model, self._conversation(agent)):
                        token.raise_if_cancelled()
                        content += chunk
                        callbacks.on_chunk(chunk)
                    token.raise_if_cancelled()
                    metadata: dict[str, Any] = {}
                else:
                    response = await get_ai_response_with_retry(
                        lambda: backend.send_message(agent.model, self._conversation(agent)),
                        policy=self.config.retry_policy,
                        token=token,
                        label=f"message for agent {agent.id}"
                    )
                    content, metadata = response.content, response.metadata
                    callbacks.on_chunk(content)

                await self._append_assistant_message(agent, content, metadata)
                callbacks.on_complete()
            except TaskCancelledError as e:
                logger.info(f"Streamed message to agent {agent.id} interrupted: {e}")
                await self._persist(agent)
                callbacks.on_error(e)
            except Exception as e:
                logger.error(f"Streamed message to agent {agent.id} failed: {e}")
                await self._set_error(agent)
                callbacks.on_error(e)

    async def execute_task(
        self,
        agent_id: str,
        description: str,
        timeout: Optional[float] = None
    ) -> AgentTask:
        """
        Start a task; returns at once with the task at running.

        Raises:
            AgentNotFoundError: If no such agent exists
            ProviderNotFoundError: If the agent's provider is gone
            AgentBusyError: If the agent is paused or already has a live task
        """
        agent = self._require_live(agent_id)
        backend = self._backend(agent.provider_id)
        task = self.engine.start_task(
            agent, description, backend, self._sandbox(agent),
            timeout=timeout or self.config.task_timeout
        )
        await self._persist(agent)
        return task.model_copy(deep=True)

    async def pause_agent(self, agent_id: str) -> None:
        """Cancel the agent's live tasks, marking them paused, and pause the agent."""
        agent = self._require(agent_id)
        paused = self.engine.cancel_agent_tasks(agent, "paused", pause=True)
        agent.status = AgentStatus.PAUSED
        await self._persist(agent)

        self.events.emit(EventType.AGENT_PAUSED, agent_id, task_ids=paused)
        logger.info(f"Paused agent {agent_id} ({len(paused)} tasks interrupted)")

    async def resume_agent(self, agent_id: str) -> Optional[AgentTask]:
        """
        Resume a paused agent, restarting its paused task if it has one.

        Returns:
            The resumed task, or None if there was nothing to resume
        """
        agent = self._require_live(agent_id)
        if agent.status != AgentStatus.PAUSED:
            logger.info(f"Agent {agent_id} is not paused; nothing to resume")
            return None

        resumed = None
        paused_tasks = [t for t in agent.tasks if t.status == TaskStatus.PAUSED]
        if paused_tasks:
            resumed = await self.engine.resume_task(
                agent,
                paused_tasks[-1].id,
                self._backend(agent.provider_id),
                self._sandbox(agent),
                timeout=self.config.task_timeout
            )

        if agent_id not in self._agents or agent_id in self._deleting:
            return None
        if agent.status == AgentStatus.PAUSED:
            agent.status = AgentStatus.IDLE
        await self._persist(agent)

        self.events.emit(EventType.AGENT_RESUMED, agent_id, task_id=resumed.id if resumed else None)
        logger.info(f"Resumed agent {agent_id}")
        return resumed.model_copy(deep=True) if resumed else None

    async def stop_agent(self, agent_id: str) -> None:
        """Cancel every running or paused task and return the agent to idle."""
        agent = self._require(agent_id)
        stopped = self.engine.stop_agent_tasks(agent, "stopped")
        agent.status = AgentStatus.IDLE
        await self._persist(agent)

        self.events.emit(EventType.AGENT_STOPPED, agent_id, task_ids=stopped)
        logger.info(f"Stopped agent {agent_id} ({len(stopped)} tasks cancelled)")

    async def delete_agent(self, agent_id: str) -> None:
        """
        Delete an agent and everything keyed by it.

        Stops its tasks and waits for them to end, removes its workspace
        (failures are logged), rejects its pending permission requests and
        drops its persisted record. From the first step on, the agent refuses
        new messages, tasks and resumes; a second concurrent delete is a no-op.
        """
        agent = self._require(agent_id)
        if agent_id in self._deleting:
            logger.info(f"Agent {agent_id} is already being deleted")
            return
        self._deleting.add(agent_id)
        try:
            await self.stop_agent(agent_id)
            await self.engine.drain_agent(agent_id)

            try:
                await asyncio.to_thread(
                    self.workspaces.remove_workspace, agent.project_path, agent.worktree_name
                )
            except Exception as e:
                logger.warning(f"Failed to remove workspace for agent {agent_id}: {e}")

            self.gate.forget_agent(agent_id)
            self._agents.pop(agent_id, None)
            self._sandboxes.pop(agent_id, None)
            await self.store.delete_agent(agent_id)
        finally:
            self._deleting.discard(agent_id)

        self.events.emit(EventType.AGENT_DELETED, agent_id)
        logger.info(f"Deleted agent {agent_id}")

    async def apply_skills(self, agent_id: str, skill_ids: list[str]) -> None:
        agent = self._require_live(agent_id)
        await self._inject_skills(agent, skill_ids)
        agent.skills = list(dict.fromkeys(agent.skills + skill_ids))
        await self._persist(agent)
        self.events.emit(EventType.SKILL_APPLIED, agent_id, skill_ids=skill_ids)

    # -- permissions --

    async def set_permission_mode(self, agent_id: str, mode: PermissionMode) -> None:
        """
        Raises:
            AgentNotFoundError: If no such agent exists
            BypassNotAllowedError: If mode is bypass and bypass is disabled
        """
        agent = self._require_live(agent_id)
        self.gate.set_agent_mode(agent_id, mode)
        agent.permission_mode = mode
        await self._persist(agent)

    def approve_request(self, request_id: str) -> bool:
        return self.gate.approve_request(request_id)

    def reject_request(self, request_id: str) -> bool:
        return self.gate.reject_request(request_id)

    def get_pending_requests(self, agent_id: Optional[str] = None) -> list[PermissionRequest]:
        return [r.model_copy(deep=True) for r in self.gate.get_pending_requests(agent_id)]

    # -- code changes --

    async def get_code_changes(self, agent_id: str) -> list[CodeChange]:
        self._require(agent_id)
        return await self.store.get_code_changes(agent_id)

    async def approve_change(self, change_id: str) -> bool:
        return await self._resolve_change(change_id, ChangeStatus.APPROVED)

    async def reject_change(self, change_id: str) -> bool:
        return await self._resolve_change(change_id, ChangeStatus.REJECTED)

    async def _resolve_change(self, change_id: str, status: ChangeStatus) -> bool:
        if change_id in self._resolving_changes:
            return False
        self._resolving_changes.add(change_id)
        try:
            change = await self.store.get_code_change(change_id)
            if change is None or change.status != ChangeStatus.PENDING:
                logger.debug(f"Code change {change_id} unknown or already resolved")
                return False
            change.status = status
            await self.store.update_code_change(change)
        finally:
            self._resolving_changes.discard(change_id)

        self.events.emit(EventType.CHANGE_RESOLVED, change.agent_id, change=change)
        logger.info(f"Code change {change_id} {status.value}")
        return True

    # -- reaper --

    async def reap_inactive_agents(self, now: Optional[datetime] = None) -> list[str]:
        """
        Delete agents idle for longer than the inactivity threshold.

        Running agents are skipped. Each candidate is checked again right
        before its deletion, since earlier deletions await. Permission
        requests resolved before the previous sweep are dropped as well.

        Returns:
            Ids of the deleted agents
        """
        now = now or utc_now()
        self.gate.clear_resolved_requests(before=now - timedelta(seconds=self.config.reaper_interval))
        candidates = [a.id for a in self._agents.values() if self._is_inactive(a, now)]

        deleted = []
        for agent_id in candidates:
            agent = self._agents.get(agent_id)
            if agent is None or not self._is_inactive(agent, now):
                logger.info(f"Agent {agent_id} became active; not reaping")
                continue
            try:
                await self.delete_agent(agent_id)
                deleted.append(agent_id)
                logger.info(f"Cleaned up inactive agent: {agent_id}")
            except Exception as e:
                logger.error(f"Failed to cleanup agent {agent_id}: {e}", exc_info=True)

        return deleted

    def _is_inactive(self, agent: Agent, now: datetime) -> bool:
        if agent.status == AgentStatus.RUNNING or self.engine.live_token_count(agent.id) > 0:
            return False
        if agent.id in self._deleting:
            return False
        last_active = agent.last_active_at or agent.updated_at
        return now - last_active > timedelta(hours=self.config.inactive_threshold_hours)

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reaper_interval)
            try:
                await self.reap_inactive_agents()
            except Exception as e:
                logger.error(f"Agent reaper failed: {e}", exc_info=True)

    # -- helpers --

    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return agent

    def _backend(self, provider_id: str) -> AIBackend:
        backend = self.backends.get(provider_id)
        if backend is None:
            raise ProviderNotFoundError(f"Provider {provider_id} not found")
        return backend

    def _sandbox(self, agent: Agent) -> Sandbox:
        if agent.id not in self._sandboxes:
            self._sandboxes[agent.id] = Sandbox(
                Path(agent.worktree_path), default_bash_timeout=self.config.tool_timeout
            )
        return self._sandboxes[agent.id]

    def _require_live(self, agent_id: str) -> Agent:
        """Like _require, but an agent mid-deletion counts as gone."""
        agent = self._require(agent_id)
        if agent_id in self._deleting:
            raise AgentNotFoundError(f"Agent {agent_id} is being deleted")
        return agent

    @staticmethod
    def _conversation(agent: Agent) -> list[dict[str, Any]]:
        return [
            {"role": message.role.value, "content": message.content}
            for message in agent.messages
            if message.role != MessageRole.TOOL
        ]

    async def _inject_skills(self, agent: Agent, skill_ids: list[str]) -> None:
        if self.skills is None:
            logger.warning(f"No skill provider configured; skipping skills {skill_ids}")
            return
        for skill_id in skill_ids:
            skill = await self.skills.get_skill(skill_id)
            if skill is None:
                logger.warning(f"Skill {skill_id} not found for agent {agent.id}")
                continue
            for instruction in skill.instruction_files:
                agent.messages.append(AgentMessage(
                    id=str(uuid.uuid4()),
                    role=MessageRole.SYSTEM,
                    content=get_skill_message(skill.name, instruction.content),
                    metadata={"skill_id": skill_id, "skill_name": skill.name}
                ))

    async def _append_user_message(self, agent: Agent, text: str) -> AgentMessage:
        message = AgentMessage(id=str(uuid.uuid4()), role=MessageRole.USER, content=text)
        agent.messages.append(message)
        agent.last_active_at = utc_now()
        await self._persist(agent)
        self.events.emit(EventType.MESSAGE_APPENDED, agent.id, message=message)
        return message

    async def _append_assistant_message(
        self,
        agent: Agent,
        content: str,
        metadata: dict[str, Any]
    ) -> AgentMessage:
        message = AgentMessage(
            id=str(uuid.uuid4()),
            role=MessageRole.ASSISTANT,
            content=content,
            metadata=metadata
        )
        agent.messages.append(message)
        if agent.status == AgentStatus.RUNNING:
            agent.status = AgentStatus.IDLE
        agent.last_active_at = utc_now()
        await self._persist(agent)
        self.events.emit(EventType.MESSAGE_APPENDED, agent.id, message=message)
        return message

    async def _set_error(self, agent: Agent) -> None:
        if agent.status == AgentStatus.RUNNING:
            agent.status = AgentStatus.ERROR
        await self._persist(agent)

    async def _persist(self, agent: Agent) -> None:
        if agent.id not in self._agents:
            return
        agent.updated_at = utc_now()
        await self.store.update_agent(agent)


class AgentNotFoundError(LookupError):
    """Raised when an agent id is unknown."""
    pass


class TaskNotFoundError(LookupError):
    """Raised when a task id is unknown."""
    pass


class ProviderNotFoundError(LookupError):
    """Raised when an agent names an AI provider that is not configured."""
    pass


class WorkspaceAllocationError(Exception):
    """Raised when the isolated workspace for a new agent cannot be created."""
    pass
