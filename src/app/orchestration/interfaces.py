"""Injectable collaborator protocols for the orchestration engine.

The engine consumes four external capabilities and owns none of them:

- CapabilityLookup: agent capabilities/tools/specialization (read-only input)
- ObjectiveClassifier: objective text -> type, weighted tags, complexity
- KnowledgeStore: async durable key/value + search used beyond process lifetime
- TaskExecutor: actually runs an agent against a task

InMemoryKnowledgeStore is the reference KnowledgeStore used for local runs
and tests; a production deployment passes its own client.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from src.app.orchestration.schemas import (
    AgentProfile,
    AgentResult,
    ObjectiveProfile,
    PredictiveScore,
    ProjectContext,
)


class CapabilityLookup(Protocol):
    """Read-only agent directory."""

    def get_profile(self, agent_id: str) -> AgentProfile | None: ...
    def find_alternatives(self, agent_id: str) -> list[str]: ...
    def list_agent_ids(self) -> list[str]: ...


class ObjectiveClassifier(Protocol):
    def classify(self, objective: str, context: ProjectContext | None = None) -> ObjectiveProfile: ...


class KnowledgeStore(Protocol):
    """Async durable store. Every method may raise; callers degrade to no history."""

    async def put(self, namespace: str, key: str, value: dict[str, Any]) -> None: ...
    async def get(self, namespace: str, key: str) -> dict[str, Any] | None: ...
    async def search(self, namespace: str, query: str, limit: int = 20) -> list[dict[str, Any]]: ...


class TaskExecutor(Protocol):
    async def execute(self, agent_id: str, task: str, context: dict[str, Any]) -> AgentResult: ...


class PlanScorer(Protocol):
    """What the plan refiner needs from the predictive scorer."""

    def score_agents(
        self,
        agents: list[str],
        objective: str,
        context: ProjectContext | None = None,
    ) -> list[PredictiveScore]: ...


class InMemoryKnowledgeStore:
    """Dict-backed KnowledgeStore.

    Search is a case-insensitive substring match over the JSON-ish string
    form of each value, newest first. Good enough for cold-start tests and
    single-process deployments.
    """

    def __init__(self, latency_seconds: float = 0.0) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self._latency = latency_seconds
        self.writes = 0

    async def put(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        self._data.setdefault(namespace, {})[key] = dict(value)
        self.writes += 1

    async def get(self, namespace: str, key: str) -> dict[str, Any] | None:
        value = self._data.get(namespace, {}).get(key)
        return dict(value) if value is not None else None

    async def search(self, namespace: str, query: str, limit: int = 20) -> list[dict[str, Any]]:
        needle = query.lower()
        values = list(self._data.get(namespace, {}).values())
        matches = [v for v in reversed(values) if needle in str(v).lower()]
        return [dict(v) for v in matches[:limit]]

    def keys(self, namespace: str) -> list[str]:
        return list(self._data.get(namespace, {}).keys())
