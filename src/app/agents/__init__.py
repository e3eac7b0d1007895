"""Agent package.

Provides the base agent abstractions and the registry the orchestration
engine uses as its capability lookup and task executor. Agents register with
capabilities, tools and an optional backup, and can be discovered by
capability name, tag, or agent ID.

Exports:
    BaseAgent: Abstract base class for runnable agents.
    AgentCapability: Capability declaration for an agent.
    AgentRegistration: Metadata describing a registered agent.
    AgentStatus: Runtime status enum (IDLE, BUSY, ERROR, OFFLINE).
    AgentRegistry: Capability lookup, alternative resolution and dispatch.
"""

from __future__ import annotations

from src.app.agents.base import (
    AgentCapability,
    AgentRegistration,
    AgentStatus,
    BaseAgent,
)
from src.app.agents.registry import AgentRegistry

__all__ = [
    "AgentCapability",
    "AgentRegistration",
    "AgentRegistry",
    "AgentStatus",
    "BaseAgent",
]
