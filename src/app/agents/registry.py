"""Agent registry for capability lookup, alternative resolution and dispatch.

The AgentRegistry is the directory of all agents the orchestration engine
may schedule. It supports:
- Registration and unregistration of agents (optionally with a runnable
  BaseAgent instance)
- Discovery by capability name or tag
- Alternative agent resolution for failure recovery: the configured backup
  first, then agents ranked by shared capabilities, then same specialization
- Tracked per-agent success rates, seeding the confidence engine's priors
- Task dispatch: execute() satisfies the TaskExecutor protocol

It satisfies the CapabilityLookup protocol. Create one per engine; there is
no module-level instance.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.app.agents.base import AgentRegistration, BaseAgent
from src.app.core.monitoring import track_agent_run
from src.app.orchestration.schemas import AgentProfile, AgentResult

logger = structlog.get_logger(__name__)


class AgentRegistry:
    """Registry for discovering, resolving and running agents.

    Thread safety note: This registry is designed for use in an async
    single-threaded event loop. If concurrent mutation is needed, external
    synchronization should be added.
    """

    def __init__(self) -> None:
        self._agents: dict[str, AgentRegistration] = {}
        self._instances: dict[str, BaseAgent] = {}
        self._outcomes: dict[str, tuple[int, int]] = {}

    def register(self, registration: AgentRegistration, agent: BaseAgent | None = None) -> None:
        """Register an agent in the registry.

        Args:
            registration: The agent's registration metadata.
            agent: Optional runnable instance used by execute().

        Raises:
            ValueError: If an agent with the same agent_id is already registered.
        """
        if registration.agent_id in self._agents:
            raise ValueError(
                f"Agent already registered: {registration.agent_id}"
            )
        self._agents[registration.agent_id] = registration
        if agent is not None:
            self._instances[registration.agent_id] = agent
        logger.info(
            "agent_registered",
            agent_id=registration.agent_id,
            agent_name=registration.name,
            capabilities=[c.name for c in registration.capabilities],
            backup_agent_id=registration.backup_agent_id,
        )

    def unregister(self, agent_id: str) -> None:
        """Remove an agent from the registry.

        Raises:
            KeyError: If no agent with the given ID is registered.
        """
        if agent_id not in self._agents:
            raise KeyError(f"Agent not registered: {agent_id}")
        del self._agents[agent_id]
        self._instances.pop(agent_id, None)
        self._outcomes.pop(agent_id, None)
        logger.info("agent_unregistered", agent_id=agent_id)

    def get(self, agent_id: str) -> AgentRegistration | None:
        return self._agents.get(agent_id)

    def get_backup(self, agent_id: str) -> AgentRegistration | None:
        """Get the configured backup agent, if both are registered."""
        agent = self._agents.get(agent_id)
        if agent is None or agent.backup_agent_id is None:
            return None
        return self._agents.get(agent.backup_agent_id)

    def find_by_capability(self, capability_name: str) -> list[AgentRegistration]:
        return [
            agent
            for agent in self._agents.values()
            if any(c.name == capability_name for c in agent.capabilities)
        ]

    def find_by_tag(self, tag: str) -> list[AgentRegistration]:
        return [
            agent
            for agent in self._agents.values()
            if tag in agent.tags
        ]

    def list_agent_ids(self) -> list[str]:
        return list(self._agents.keys())

    # ── CapabilityLookup ─────────────────────────────────────────────────

    def get_profile(self, agent_id: str) -> AgentProfile | None:
        registration = self._agents.get(agent_id)
        if registration is None:
            return None
        return AgentProfile(
            agent_id=agent_id,
            capabilities=[c.name for c in registration.capabilities],
            tools=list(registration.tools),
            specialization=registration.specialization,
            success_rate=self.success_rate(agent_id),
        )

    def find_alternatives(self, agent_id: str) -> list[str]:
        """Replacement candidates for ``agent_id``, best first.

        Returns:
            Backup agent, then agents sharing capabilities (most shared
            first, ties by tracked success rate), then agents with the same
            specialization. Empty for unknown agents.
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            return []

        ordered: list[str] = []
        backup = self.get_backup(agent_id)
        if backup is not None:
            ordered.append(backup.agent_id)

        wanted = {c.name for c in agent.capabilities}
        sharing = []
        for other in self._agents.values():
            if other.agent_id == agent_id:
                continue
            shared = len(wanted & {c.name for c in other.capabilities})
            if shared:
                sharing.append((shared, self.success_rate(other.agent_id) or 0.0, other.agent_id))
        sharing.sort(key=lambda item: (-item[0], -item[1], item[2]))
        ordered.extend(a for _, _, a in sharing)

        if agent.specialization:
            ordered.extend(
                other.agent_id
                for other in self._agents.values()
                if other.agent_id != agent_id and other.specialization == agent.specialization
            )
        return [a for a in dict.fromkeys(ordered) if a != agent_id]

    # ── Outcome tracking ─────────────────────────────────────────────────

    def record_outcome(self, agent_id: str, success: bool) -> None:
        runs, successes = self._outcomes.get(agent_id, (0, 0))
        self._outcomes[agent_id] = (runs + 1, successes + int(success))

    def success_rate(self, agent_id: str) -> float | None:
        """Tracked success rate, or the registration's estimate before any run."""
        runs, successes = self._outcomes.get(agent_id, (0, 0))
        if runs:
            return successes / runs
        registration = self._agents.get(agent_id)
        return registration.success_rate if registration is not None else None

    # ── TaskExecutor ─────────────────────────────────────────────────────

    async def execute(self, agent_id: str, task: str, context: dict[str, Any]) -> AgentResult:
        """Run ``task`` on a registered agent instance and track the outcome."""
        agent = self._instances.get(agent_id)
        if agent is None:
            return AgentResult(agent_id=agent_id, success=False, error=f"Agent not found: {agent_id}")
        async with track_agent_run(agent_id) as tracker:
            result = await agent.invoke(task, context)
            tracker["success"] = result.success
        self.record_outcome(agent_id, result.success)
        return result

    def __len__(self) -> int:
        """Return the number of registered agents."""
        return len(self._agents)

    def __contains__(self, agent_id: str) -> bool:
        """Check if an agent is registered."""
        return agent_id in self._agents
