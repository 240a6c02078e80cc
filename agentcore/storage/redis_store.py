"""Redis-backed persistence for agents and code changes."""

import logging
from typing import Optional

import redis.asyncio as redis

from agentcore.app.models.agent import Agent
from agentcore.app.models.change import CodeChange

logger = logging.getLogger(__name__)

AGENTS_KEY = "agent:ids"


class RedisAgentStore:
    """
    Agent store keeping one JSON document per record.

    Keys:
        agent:ids                   set of agent ids
        agent:{id}                  agent JSON
        agent:{id}:changes          set of code change ids for the agent
        change:{id}                 code change JSON
    """

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize Redis store.

        Args:
            redis_client: Redis async client
        """
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisAgentStore":
        return cls(redis.from_url(url))

    async def create_agent(self, agent: Agent) -> None:
        await self.redis.set(f"agent:{agent.id}", agent.model_dump_json())
        await self.redis.sadd(AGENTS_KEY, agent.id)
        logger.debug(f"Stored agent {agent.id}")

    async def update_agent(self, agent: Agent) -> None:
        await self.redis.set(f"agent:{agent.id}", agent.model_dump_json())

    async def delete_agent(self, agent_id: str) -> None:
        changes_key = f"agent:{agent_id}:changes"
        change_ids = await self.redis.smembers(changes_key)
        keys = [f"change:{_decode(change_id)}" for change_id in change_ids]

        await self.redis.delete(f"agent:{agent_id}", changes_key, *keys)
        await self.redis.srem(AGENTS_KEY, agent_id)
        logger.info(f"Deleted agent {agent_id} and {len(keys)} code changes from Redis")

    async def get_all_agents(self) -> list[Agent]:
        agents = []
        for agent_id in await self.redis.smembers(AGENTS_KEY):
            data = await self.redis.get(f"agent:{_decode(agent_id)}")
            if data is None:
                logger.warning(f"Agent {_decode(agent_id)} listed but missing from Redis")
                continue
            agents.append(Agent.model_validate_json(data))
        return agents

    async def create_code_change(self, change: CodeChange) -> None:
        await self.redis.set(f"change:{change.id}", change.model_dump_json())
        await self.redis.sadd(f"agent:{change.agent_id}:changes", change.id)

    async def update_code_change(self, change: CodeChange) -> None:
        await self.redis.set(f"change:{change.id}", change.model_dump_json())

    async def get_code_change(self, change_id: str) -> Optional[CodeChange]:
        data = await self.redis.get(f"change:{change_id}")
        if data is None:
            return None
        return CodeChange.model_validate_json(data)

    async def get_code_changes(self, agent_id: str) -> list[CodeChange]:
        changes = []
        for change_id in await self.redis.smembers(f"agent:{agent_id}:changes"):
            change = await self.get_code_change(_decode(change_id))
            if change:
                changes.append(change)
        changes.sort(key=lambda c: c.created_at)
        return changes

    async def close(self) -> None:
        await self.redis.aclose()


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else value
