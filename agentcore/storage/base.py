"""Persistence interface for agents and code changes."""

import logging
from typing import Optional, Protocol, runtime_checkable

from agentcore.app.models.agent import Agent
from agentcore.app.models.change import CodeChange

logger = logging.getLogger(__name__)


@runtime_checkable
class AgentStore(Protocol):
    """
    Storage contract used by the registry and the diff engine.

    Stores persist copies; mutating a returned record never changes what is
    stored until it is written back.
    """

    async def create_agent(self, agent: Agent) -> None:
        ...

    async def update_agent(self, agent: Agent) -> None:
        ...

    async def delete_agent(self, agent_id: str) -> None:
        ...

    async def get_all_agents(self) -> list[Agent]:
        ...

    async def create_code_change(self, change: CodeChange) -> None:
        ...

    async def update_code_change(self, change: CodeChange) -> None:
        ...

    async def get_code_change(self, change_id: str) -> Optional[CodeChange]:
        ...

    async def get_code_changes(self, agent_id: str) -> list[CodeChange]:
        ...


class InMemoryAgentStore:
    """Process-local store; the default when no Redis URL is configured."""

    def __init__(self):
        self._agents: dict[str, Agent] = {}
        self._changes: dict[str, CodeChange] = {}

    async def create_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent.model_copy(deep=True)

    async def update_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent.model_copy(deep=True)

    async def delete_agent(self, agent_id: str) -> None:
        self._agents.pop(agent_id, None)
        for change_id in [c.id for c in self._changes.values() if c.agent_id == agent_id]:
            del self._changes[change_id]
        logger.debug(f"Deleted agent {agent_id} from memory store")

    async def get_all_agents(self) -> list[Agent]:
        return [agent.model_copy(deep=True) for agent in self._agents.values()]

    async def create_code_change(self, change: CodeChange) -> None:
        self._changes[change.id] = change.model_copy(deep=True)

    async def update_code_change(self, change: CodeChange) -> None:
        self._changes[change.id] = change.model_copy(deep=True)

    async def get_code_change(self, change_id: str) -> Optional[CodeChange]:
        change = self._changes.get(change_id)
        return change.model_copy(deep=True) if change else None

    async def get_code_changes(self, agent_id: str) -> list[CodeChange]:
        changes = [c for c in self._changes.values() if c.agent_id == agent_id]
        changes.sort(key=lambda c: c.created_at)
        return [c.model_copy(deep=True) for c in changes]
