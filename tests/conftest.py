"""Shared fixtures for orchestration engine tests.

Provides:
- A controllable clock (FakeClock) for time-aware components
- StubTaskExecutor: scripted agent outcomes, no real agents
- A fresh OrchestrationEngine wired to an in-memory knowledge store
- _make_pattern-style factories via the ``make_pattern`` fixture

Nothing here touches a database or the network.
"""

from __future__ import annotations

from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.app.orchestration.config import EngineConfig, SyncConfig
from src.app.orchestration.engine import OrchestrationEngine
from src.app.orchestration.interfaces import InMemoryKnowledgeStore
from src.app.orchestration.schemas import AgentResult, ExecutionPattern, ProjectContext

BASE_TIME = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


# ── Test Doubles ─────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StubTaskExecutor:
    """TaskExecutor double with scripted per-agent outcomes.

    ``outcomes`` maps agent_id to a queue of results; each entry is either
    True (success), an error string (failure) or an Exception to raise.
    Agents without a script succeed. Every call is recorded in ``calls``.
    """

    def __init__(self, outcomes: dict[str, list[Any]] | None = None, tokens: int = 100) -> None:
        self._outcomes: dict[str, deque[Any]] = defaultdict(deque)
        for agent_id, script in (outcomes or {}).items():
            self._outcomes[agent_id].extend(script)
        self.tokens = tokens
        self.calls: list[tuple[str, str]] = []

    async def execute(self, agent_id: str, task: str, context: dict[str, Any]) -> AgentResult:
        self.calls.append((agent_id, task))
        outcome = self._outcomes[agent_id].popleft() if self._outcomes[agent_id] else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is True:
            return AgentResult(agent_id=agent_id, success=True, output={"ok": True}, tokens_used=self.tokens)
        return AgentResult(agent_id=agent_id, success=False, error=str(outcome))

    @property
    def called_agents(self) -> list[str]:
        return [agent_id for agent_id, _ in self.calls]


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def knowledge_store() -> InMemoryKnowledgeStore:
    return InMemoryKnowledgeStore()


@pytest.fixture
def engine(clock, knowledge_store) -> OrchestrationEngine:
    """Engine with instant sync backoff so flushes never sleep."""
    config = EngineConfig(sync=SyncConfig(backoff_initial_seconds=0.0, backoff_max_seconds=0.0))
    return OrchestrationEngine(config=config, knowledge_store=knowledge_store, clock=clock)


@pytest.fixture
def make_pattern(clock):
    """Factory for ExecutionPatterns stamped relative to the fake clock."""

    def _make_pattern(
        objective: str = "implement login api",
        objective_type: str = "implement",
        agents: list[str] | None = None,
        success: bool = True,
        tags: list[str] | None = None,
        project_type: str | None = None,
        age_days: float = 0.0,
        tokens_used: int = 1000,
        **kwargs: Any,
    ) -> ExecutionPattern:
        return ExecutionPattern(
            objective=objective,
            objective_type=objective_type,
            agents_used=agents or ["hollowed_eyes", "loveless"],
            success=success,
            tags=tags if tags is not None else ["api", "auth"],
            project_context=ProjectContext(project_type=project_type) if project_type else None,
            tokens_used=tokens_used,
            timestamp=clock() - timedelta(days=age_days),
            **kwargs,
        )

    return _make_pattern
