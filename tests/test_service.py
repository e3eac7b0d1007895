"""Tests for the service runner and Prometheus instrumentation.

Covers:
- lifespan hydrates the engine, schedules background tasks and drains on exit
- serve() returns once its stop event is set
- track_agent_run records duration and outcome labels
- Registry dispatch is counted per agent
- get_metrics_text exposes orchestration metrics
"""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from src.app.agents.base import AgentCapability, AgentRegistration, BaseAgent
from src.app.agents.registry import AgentRegistry
from src.app.config import Settings
from src.app.core.monitoring import get_metrics_text, track_agent_run
from src.app.main import lifespan, serve
from src.app.orchestration.interfaces import InMemoryKnowledgeStore


# ── Helpers ──────────────────────────────────────────────────────────────────


def _runs(agent_id: str, status: str) -> float:
    value = REGISTRY.get_sample_value(
        "orchestration_agent_runs_total", {"agent_id": agent_id, "status": status}
    )
    return value or 0.0


class EchoAgent(BaseAgent):
    async def execute(self, task, context):
        return {"echo": task}


# ── Lifespan ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_lifespan_hydrates_and_flushes_on_exit():
    store = InMemoryKnowledgeStore()
    await store.put("execution_patterns", "p-0", {"not": "a pattern"})
    registry = AgentRegistry()
    registry.register(AgentRegistration(agent_id="the_scribe", name="Scribe", capabilities=[AgentCapability(name="document")]))

    async with lifespan(Settings(METRICS_PORT=None), registry=registry, knowledge_store=store) as engine:
        assert engine.capabilities is registry
        engine.sync.enqueue("usage_statistics", "u-1", {"plans": 1})

    assert store.keys("usage_statistics") == ["u-1"]
    assert engine.sync.queue_size == 0


@pytest.mark.asyncio
async def test_serve_stops_when_event_is_set():
    stop = asyncio.Event()
    stop.set()
    await asyncio.wait_for(serve(stop), timeout=5)


# ── Metrics ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_track_agent_run_labels_outcome():
    before_ok = _runs("metrics_agent", "success")
    before_fail = _runs("metrics_agent", "failure")
    before_err = _runs("metrics_agent", "error")

    async with track_agent_run("metrics_agent") as tracker:
        tracker["success"] = True
    async with track_agent_run("metrics_agent"):
        pass
    with pytest.raises(RuntimeError):
        async with track_agent_run("metrics_agent"):
            raise RuntimeError("agent crashed")

    assert _runs("metrics_agent", "success") == before_ok + 1
    assert _runs("metrics_agent", "failure") == before_fail + 1
    assert _runs("metrics_agent", "error") == before_err + 1


@pytest.mark.asyncio
async def test_registry_execute_is_tracked():
    registration = AgentRegistration(agent_id="echo_metrics", name="Echo")
    registry = AgentRegistry()
    registry.register(registration, EchoAgent(registration))

    before = _runs("echo_metrics", "success")
    result = await registry.execute("echo_metrics", "say hi", {})
    assert result.success
    assert _runs("echo_metrics", "success") == before + 1


def test_metrics_text_exposes_orchestration_metrics(engine):
    engine.plan("fix the login bug")
    text = get_metrics_text().decode()
    assert "orchestration_plans_total" in text
    assert "orchestration_sync_queue_size" in text
