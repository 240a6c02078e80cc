"""Persistence for agents and code changes."""

from agentcore.storage.base import AgentStore, InMemoryAgentStore

__all__ = ["AgentStore", "InMemoryAgentStore"]
