"""Base agent abstractions for the orchestration engine.

Defines the foundational types for agent registration, capability declaration,
and the abstract base class that runnable agents implement. The BaseAgent
provides status tracking, structured logging, and an invoke() wrapper that
handles the IDLE -> BUSY -> IDLE/ERROR lifecycle and turns every run into an
AgentResult the adaptive executor can consume.

These types are consumed by the AgentRegistry (registry.py) for capability
lookup, alternative agent resolution and task dispatch.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from src.app.orchestration.schemas import AgentResult

logger = structlog.get_logger(__name__)


# ── Agent Status ─────────────────────────────────────────────────────────────


class AgentStatus(str, Enum):
    """Runtime status of an agent instance."""

    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"


# ── Agent Capability ─────────────────────────────────────────────────────────


@dataclass
class AgentCapability:
    """A named capability that an agent can perform.

    Capabilities are the primary unit of alternative-agent discovery: when an
    agent fails, agents sharing the most capabilities with it are preferred
    replacements.

    Attributes:
        name: Machine-readable capability identifier (e.g., "run_tests").
        description: Human-readable description.
    """

    name: str
    description: str = ""


# ── Agent Registration ───────────────────────────────────────────────────────


@dataclass
class AgentRegistration:
    """Metadata describing a registered agent.

    Attributes:
        agent_id: Unique identifier (e.g., "test_runner").
        name: Human-readable name (e.g., "Test Runner").
        description: What this agent does.
        capabilities: List of capabilities this agent provides.
        backup_agent_id: Preferred replacement on failure. None if no
            backup is configured.
        tags: Searchable labels (e.g., ["testing", "python"]).
        tools: Tools the agent touches; feeds tool-conflict prediction.
        specialization: Optional domain the agent is tuned for.
        success_rate: Initial success rate estimate; replaced by the tracked
            rate once the agent has run.
    """

    agent_id: str
    name: str
    description: str = ""
    capabilities: list[AgentCapability] = field(default_factory=list)
    backup_agent_id: str | None = None
    tags: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    specialization: str | None = None
    success_rate: float | None = None


# ── Base Agent ───────────────────────────────────────────────────────────────


class BaseAgent(ABC):
    """Abstract base class for runnable agents.

    Provides a consistent interface with:
    - Status lifecycle tracking (IDLE -> BUSY -> IDLE/ERROR)
    - Structured logging bound to agent_id
    - invoke() wrapper that times the run and reports an AgentResult

    Subclasses implement execute() with their domain-specific logic and may
    report token usage under the "tokens_used" key of their output.
    """

    def __init__(self, registration: AgentRegistration) -> None:
        self.registration = registration
        self.status: AgentStatus = AgentStatus.IDLE
        self._logger = structlog.get_logger(__name__).bind(
            agent_id=registration.agent_id,
            agent_name=registration.name,
        )

    @property
    def agent_id(self) -> str:
        """Shortcut to the agent's unique identifier."""
        return self.registration.agent_id

    @property
    def capabilities(self) -> list[AgentCapability]:
        """Shortcut to the agent's declared capabilities."""
        return self.registration.capabilities

    @abstractmethod
    async def execute(self, task: str, context: dict[str, Any]) -> dict[str, Any]:
        """Execute a task with the given context.

        This is the core method that subclasses implement. It should NOT
        manage status transitions -- that is handled by invoke().

        Args:
            task: Fully-formed task description.
            context: Execution context (task id, project context, ...).

        Returns:
            Result dictionary with agent-specific output.
        """
        ...

    async def invoke(self, task: str, context: dict[str, Any]) -> AgentResult:
        """Invoke the agent with status tracking, timing and error capture.

        Exceptions from execute() are captured into a failed AgentResult;
        agent failures are data for the adaptive executor, not errors.
        """
        self._logger.info("agent_task_started", task=task[:80])
        self.status = AgentStatus.BUSY
        start = time.perf_counter()

        try:
            output = await self.execute(task, context)
        except Exception as exc:
            self.status = AgentStatus.ERROR
            self._logger.error(
                "agent_task_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return AgentResult(
                agent_id=self.agent_id,
                success=False,
                error=str(exc) or type(exc).__name__,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        self.status = AgentStatus.IDLE
        self._logger.info("agent_task_completed")
        return AgentResult(
            agent_id=self.agent_id,
            success=True,
            output=output,
            duration_ms=(time.perf_counter() - start) * 1000,
            tokens_used=int(output.get("tokens_used", 0)) if isinstance(output, dict) else 0,
        )

    def to_routing_info(self) -> dict[str, Any]:
        """Serialize agent metadata with its live status."""
        return {
            "id": self.agent_id,
            "name": self.registration.name,
            "description": self.registration.description,
            "capabilities": [cap.name for cap in self.capabilities],
            "status": self.status.value,
        }
