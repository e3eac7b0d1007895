"""Tests for the agent registry, alternative resolution, dispatch and base agent.

Covers:
- Agent registration and unregistration
- Duplicate registration rejection
- Discovery by capability and tag
- Backup agent lookup
- Alternative resolution order: backup, shared capabilities, specialization
- Capability profiles and tracked success rates
- Task dispatch through execute() with outcome tracking
- BaseAgent invoke() status lifecycle and AgentResult reporting
"""

from __future__ import annotations

from typing import Any

import pytest

from src.app.agents.base import (
    AgentCapability,
    AgentRegistration,
    AgentStatus,
    BaseAgent,
)
from src.app.agents.registry import AgentRegistry


# ── Helpers ──────────────────────────────────────────────────────────────────


def _make_cap(name: str, description: str = "test capability") -> AgentCapability:
    """Create a test capability."""
    return AgentCapability(name=name, description=description)


def _make_reg(
    agent_id: str,
    capabilities: list[str] | None = None,
    backup_agent_id: str | None = None,
    tags: list[str] | None = None,
    tools: list[str] | None = None,
    specialization: str | None = None,
    success_rate: float | None = None,
) -> AgentRegistration:
    """Create a test registration with sensible defaults."""
    caps = [_make_cap(c) for c in (capabilities or ["default"])]
    return AgentRegistration(
        agent_id=agent_id,
        name=f"{agent_id.replace('_', ' ').title()}",
        description=f"Test agent: {agent_id}",
        capabilities=caps,
        backup_agent_id=backup_agent_id,
        tags=tags or [],
        tools=tools or [],
        specialization=specialization,
        success_rate=success_rate,
    )


class StubAgent(BaseAgent):
    """Concrete agent for testing BaseAgent lifecycle."""

    def __init__(self, registration: AgentRegistration, result: dict | None = None, error: Exception | None = None):
        super().__init__(registration)
        self._result = result or {"status": "ok"}
        self._error = error

    async def execute(self, task: str, context: dict[str, Any]) -> dict[str, Any]:
        if self._error:
            raise self._error
        return self._result


# ── Registration Tests ───────────────────────────────────────────────────────


def test_register_agent():
    """Register an agent and verify it is in the registry."""
    registry = AgentRegistry()
    reg = _make_reg("research_agent", capabilities=["research"])
    registry.register(reg)
    assert "research_agent" in registry
    assert len(registry) == 1


def test_register_duplicate_raises():
    """Registering the same agent_id twice raises ValueError."""
    registry = AgentRegistry()
    reg = _make_reg("research_agent")
    registry.register(reg)
    with pytest.raises(ValueError, match="Agent already registered: research_agent"):
        registry.register(reg)


def test_unregister_agent():
    """Register then unregister an agent; verify it is gone."""
    registry = AgentRegistry()
    reg = _make_reg("research_agent")
    registry.register(reg)
    assert "research_agent" in registry

    registry.unregister("research_agent")
    assert "research_agent" not in registry
    assert len(registry) == 0


def test_unregister_nonexistent_raises():
    """Unregistering a non-existent agent raises KeyError."""
    registry = AgentRegistry()
    with pytest.raises(KeyError, match="Agent not registered: ghost"):
        registry.unregister("ghost")


# ── Get / Lookup Tests ───────────────────────────────────────────────────────


def test_get_agent():
    """Register and retrieve an agent by ID."""
    registry = AgentRegistry()
    reg = _make_reg("research_agent", capabilities=["research"])
    registry.register(reg)
    result = registry.get("research_agent")
    assert result is reg
    assert result.agent_id == "research_agent"


def test_get_nonexistent_returns_none():
    """Getting an unregistered agent returns None."""
    registry = AgentRegistry()
    assert registry.get("nonexistent") is None


# ── Backup Agent Routing Tests ───────────────────────────────────────────────


def test_get_backup_agent():
    """Agent A has backup_agent_id='B', register B, get_backup('A') returns B."""
    registry = AgentRegistry()
    agent_b = _make_reg("agent_b", capabilities=["research"])
    agent_a = _make_reg("agent_a", capabilities=["research"], backup_agent_id="agent_b")

    registry.register(agent_a)
    registry.register(agent_b)

    backup = registry.get_backup("agent_a")
    assert backup is agent_b
    assert backup.agent_id == "agent_b"


def test_get_backup_no_backup_configured():
    """Agent without backup_agent_id returns None from get_backup."""
    registry = AgentRegistry()
    reg = _make_reg("agent_no_backup")
    registry.register(reg)
    assert registry.get_backup("agent_no_backup") is None


def test_get_backup_backup_not_registered():
    """Agent with backup_agent_id pointing to unregistered agent returns None."""
    registry = AgentRegistry()
    reg = _make_reg("agent_a", backup_agent_id="agent_ghost")
    registry.register(reg)
    # agent_ghost is not registered
    assert registry.get_backup("agent_a") is None


def test_get_backup_agent_not_registered():
    """get_backup for an unregistered agent returns None."""
    registry = AgentRegistry()
    assert registry.get_backup("nonexistent") is None


# ── Discovery Tests ──────────────────────────────────────────────────────────


def test_find_by_capability():
    """Find agents by capability name -- returns only matching agents."""
    registry = AgentRegistry()
    registry.register(_make_reg("researcher", capabilities=["research", "analysis"]))
    registry.register(_make_reg("writer", capabilities=["writing", "editing"]))
    registry.register(_make_reg("analyst", capabilities=["analysis", "reporting"]))

    research_agents = registry.find_by_capability("research")
    assert len(research_agents) == 1
    assert research_agents[0].agent_id == "researcher"

    analysis_agents = registry.find_by_capability("analysis")
    assert len(analysis_agents) == 2
    agent_ids = {a.agent_id for a in analysis_agents}
    assert agent_ids == {"researcher", "analyst"}

    # No agents have this capability
    assert registry.find_by_capability("nonexistent") == []


def test_find_by_tag():
    """Find agents by tag -- returns only matching agents."""
    registry = AgentRegistry()
    registry.register(_make_reg("researcher", tags=["backend", "research"]))
    registry.register(_make_reg("writer", tags=["backend", "content"]))
    registry.register(_make_reg("ops_agent", tags=["operations"]))

    backend_agents = registry.find_by_tag("backend")
    assert len(backend_agents) == 2
    agent_ids = {a.agent_id for a in backend_agents}
    assert agent_ids == {"researcher", "writer"}

    # No agents have this tag
    assert registry.find_by_tag("nonexistent") == []


# ── Alternative Resolution Tests ─────────────────────────────────────────────


def test_find_alternatives_orders_backup_then_shared_then_specialization():
    """Backup first, then most shared capabilities, then same specialization."""
    registry = AgentRegistry()
    registry.register(
        _make_reg(
            "loveless",
            capabilities=["run_tests", "review"],
            backup_agent_id="the_sentinel",
            specialization="qa",
        )
    )
    registry.register(_make_reg("the_sentinel", capabilities=["deploy"]))
    registry.register(_make_reg("reviewer", capabilities=["review"]))
    registry.register(_make_reg("tester", capabilities=["run_tests", "review"]))
    registry.register(_make_reg("auditor", capabilities=["audit"], specialization="qa"))
    registry.register(_make_reg("writer", capabilities=["document"]))

    assert registry.find_alternatives("loveless") == ["the_sentinel", "tester", "reviewer", "auditor"]


def test_find_alternatives_breaks_ties_by_success_rate():
    registry = AgentRegistry()
    registry.register(_make_reg("failed", capabilities=["build"]))
    registry.register(_make_reg("steady", capabilities=["build"], success_rate=0.6))
    registry.register(_make_reg("strong", capabilities=["build"], success_rate=0.9))

    assert registry.find_alternatives("failed") == ["strong", "steady"]

    for _ in range(3):
        registry.record_outcome("strong", False)
    assert registry.find_alternatives("failed") == ["steady", "strong"]


def test_find_alternatives_unknown_agent():
    assert AgentRegistry().find_alternatives("ghost") == []


# ── Profile & Outcome Tests ──────────────────────────────────────────────────


def test_get_profile():
    """Profiles expose capabilities, tools and the tracked success rate."""
    registry = AgentRegistry()
    registry.register(
        _make_reg(
            "hollowed_eyes",
            capabilities=["implement"],
            tools=["edit_file", "write_file"],
            specialization="backend",
            success_rate=0.8,
        )
    )

    profile = registry.get_profile("hollowed_eyes")
    assert profile.capabilities == ["implement"]
    assert profile.tools == ["edit_file", "write_file"]
    assert profile.specialization == "backend"
    assert profile.success_rate == 0.8
    assert registry.get_profile("ghost") is None


def test_success_rate_tracks_outcomes():
    """Tracked outcomes replace the registration estimate once an agent has run."""
    registry = AgentRegistry()
    registry.register(_make_reg("agent_a", success_rate=0.9))
    registry.register(_make_reg("agent_b"))

    assert registry.success_rate("agent_a") == 0.9
    assert registry.success_rate("agent_b") is None
    assert registry.success_rate("ghost") is None

    registry.record_outcome("agent_a", True)
    registry.record_outcome("agent_a", False)
    assert registry.success_rate("agent_a") == 0.5


def test_unregister_clears_outcomes():
    registry = AgentRegistry()
    registry.register(_make_reg("agent_a"))
    registry.record_outcome("agent_a", True)
    registry.unregister("agent_a")
    registry.register(_make_reg("agent_a"))
    assert registry.success_rate("agent_a") is None


def test_list_agent_ids():
    """list_agent_ids returns all registered agent IDs."""
    registry = AgentRegistry()
    registry.register(_make_reg("agent_a"))
    registry.register(_make_reg("agent_b"))
    registry.register(_make_reg("agent_c"))

    ids = registry.list_agent_ids()
    assert set(ids) == {"agent_a", "agent_b", "agent_c"}


# ── Dispatch Tests ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_execute_runs_registered_instance():
    """execute() invokes the agent instance and records the outcome."""
    registry = AgentRegistry()
    reg = _make_reg("writer")
    registry.register(reg, StubAgent(reg, result={"text": "done", "tokens_used": 321}))

    result = await registry.execute("writer", "write the changelog", {})
    assert result.success
    assert result.output == {"text": "done", "tokens_used": 321}
    assert result.tokens_used == 321
    assert registry.success_rate("writer") == 1.0


@pytest.mark.asyncio
async def test_execute_failure_is_a_result_not_an_exception():
    registry = AgentRegistry()
    reg = _make_reg("flaky")
    registry.register(reg, StubAgent(reg, error=RuntimeError("boom")))

    result = await registry.execute("flaky", "do the thing", {})
    assert not result.success
    assert result.error == "boom"
    assert registry.success_rate("flaky") == 0.0


@pytest.mark.asyncio
async def test_execute_without_instance_reports_not_found():
    registry = AgentRegistry()
    registry.register(_make_reg("metadata_only"))

    result = await registry.execute("metadata_only", "anything", {})
    assert not result.success
    assert result.error == "Agent not found: metadata_only"
    assert registry.success_rate("metadata_only") is None


# ── Dunder Method Tests ──────────────────────────────────────────────────────


def test_len_and_contains():
    """Test __len__ and __contains__ dunder methods."""
    registry = AgentRegistry()
    assert len(registry) == 0
    assert "agent_a" not in registry

    registry.register(_make_reg("agent_a"))
    assert len(registry) == 1
    assert "agent_a" in registry
    assert "agent_b" not in registry

    registry.register(_make_reg("agent_b"))
    assert len(registry) == 2
    assert "agent_b" in registry


# ── BaseAgent Lifecycle Tests ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_base_agent_invoke_success():
    """invoke() transitions IDLE -> BUSY -> IDLE and reports an AgentResult."""
    reg = _make_reg("test_agent")
    agent = StubAgent(reg, result={"answer": 42})

    assert agent.status == AgentStatus.IDLE

    result = await agent.invoke("answer the question", {})

    assert result.success
    assert result.agent_id == "test_agent"
    assert result.output == {"answer": 42}
    assert result.tokens_used == 0
    assert result.duration_ms >= 0
    assert agent.status == AgentStatus.IDLE


@pytest.mark.asyncio
async def test_base_agent_invoke_error():
    """invoke() transitions IDLE -> BUSY -> ERROR and captures the exception."""
    reg = _make_reg("failing_agent")
    agent = StubAgent(reg, error=RuntimeError("boom"))

    assert agent.status == AgentStatus.IDLE

    result = await agent.invoke("fail", {})

    assert not result.success
    assert result.error == "boom"
    assert agent.status == AgentStatus.ERROR


@pytest.mark.asyncio
async def test_base_agent_to_routing_info():
    """to_routing_info() returns correct structure with current status."""
    reg = _make_reg("research_agent", capabilities=["research", "analysis"])
    agent = StubAgent(reg)

    info = agent.to_routing_info()
    assert info["id"] == "research_agent"
    assert info["name"] == "Research Agent"
    assert info["description"] == "Test agent: research_agent"
    assert set(info["capabilities"]) == {"research", "analysis"}
    assert info["status"] == "idle"


@pytest.mark.asyncio
async def test_base_agent_properties():
    """agent_id and capabilities properties are shortcuts to registration."""
    reg = _make_reg("test_agent", capabilities=["cap_a", "cap_b"])
    agent = StubAgent(reg)

    assert agent.agent_id == "test_agent"
    assert len(agent.capabilities) == 2
    assert agent.capabilities[0].name == "cap_a"


# ── AgentRegistration Defaults Test ──────────────────────────────────────────


def test_agent_registration_defaults():
    """AgentRegistration has correct defaults for optional fields."""
    cap = _make_cap("test")
    reg = AgentRegistration(
        agent_id="minimal",
        name="Minimal Agent",
        description="Bare minimum",
        capabilities=[cap],
    )
    assert reg.backup_agent_id is None
    assert reg.tags == []
    assert reg.tools == []
    assert reg.specialization is None
    assert reg.success_rate is None
