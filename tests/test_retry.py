"""Tests for the sequential retry orchestrator.

Covers:
- An agent that failed is never selected again within one task
- Fallbacks scoring below the threshold end the task early
- Per-attempt timeouts become failed attempts
- Fallback recommendations learned from successful recoveries
- Failure and fallback writes persisted through HybridSync
- Agent priors learn from each attempt
- ScoredAgentSelector ranking and prior substitution for unseen agents
"""

from __future__ import annotations

import asyncio
import random

import pytest

from src.app.orchestration.confidence import BayesianConfidenceEngine
from src.app.orchestration.config import RetryOptions, SyncConfig
from src.app.orchestration.interfaces import InMemoryKnowledgeStore
from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.retry import RetryOrchestrator, ScoredAgentSelector
from src.app.orchestration.schemas import AgentResult, RetryTask
from src.app.orchestration.scorer import PredictiveScorer
from src.app.orchestration.sync import HybridSync
from tests.conftest import StubTaskExecutor


# ── Helpers ──────────────────────────────────────────────────────────────────


def _make_task(**kwargs) -> RetryTask:
    return RetryTask(task_id="task-1", description="write the login handler", **kwargs)


class StubSelector:
    def __init__(self, ranking: list[tuple[str, float]]) -> None:
        self.ranking = ranking

    def rank(self, task):
        return list(self.ranking)


class SlowTaskExecutor:
    """Sleeps past any reasonable timeout for the listed agents."""

    def __init__(self, slow: set[str]) -> None:
        self.slow = slow

    async def execute(self, agent_id, task, context):
        if agent_id in self.slow:
            await asyncio.sleep(5)
        return AgentResult(agent_id=agent_id, success=True)


# ── Fallback Selection ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_weak_fallback_is_not_attempted():
    orchestrator = RetryOrchestrator(StubSelector([("a", 0.9), ("b", 0.6), ("c", 0.4)]))
    tasks = StubTaskExecutor({"a": ["boom"], "b": ["boom again"]})

    result = await orchestrator.execute_with_retry(_make_task(), tasks, RetryOptions(max_attempts=3))
    assert not result.success
    assert tasks.called_agents == ["a", "b"]
    assert len(result.attempts) == 2
    assert result.excluded_agents == ["a", "b"]
    assert result.reason.startswith("No suitable fallback agent")


@pytest.mark.asyncio
async def test_first_attempt_ignores_threshold():
    orchestrator = RetryOrchestrator(StubSelector([("c", 0.2)]))
    result = await orchestrator.execute_with_retry(_make_task(), StubTaskExecutor())
    assert result.success
    assert result.agent_id == "c"


@pytest.mark.asyncio
async def test_failed_agents_are_never_retried():
    rng = random.Random(11)
    agents = [f"agent_{i}" for i in range(6)]
    for _ in range(30):
        ranking = [(a, rng.random()) for a in agents]
        ranking.sort(key=lambda pair: pair[1], reverse=True)
        outcomes = {a: ["failed"] for a in agents if rng.random() < 0.7}
        tasks = StubTaskExecutor(outcomes)
        options = RetryOptions(max_attempts=rng.randint(1, 6), fallback_score_threshold=0.0)

        result = await RetryOrchestrator(StubSelector(ranking)).execute_with_retry(_make_task(), tasks, options)
        attempted = [a.agent_id for a in result.attempts]
        assert len(attempted) == len(set(attempted))
        assert len(attempted) <= options.max_attempts
        assert set(result.excluded_agents) == {a.agent_id for a in result.attempts if not a.success}


@pytest.mark.asyncio
async def test_without_exclusion_the_same_agent_is_retried():
    orchestrator = RetryOrchestrator(StubSelector([("a", 0.9), ("b", 0.8)]))
    tasks = StubTaskExecutor({"a": ["flaky"]})
    result = await orchestrator.execute_with_retry(_make_task(), tasks, RetryOptions(exclude_on_failure=False))
    assert result.success
    assert tasks.called_agents == ["a", "a"]


@pytest.mark.asyncio
async def test_no_candidates_gives_up():
    result = await RetryOrchestrator(StubSelector([])).execute_with_retry(_make_task(), StubTaskExecutor())
    assert not result.success
    assert result.reason == "No suitable agents available after exclusions"


@pytest.mark.asyncio
async def test_exhausted_attempts_report_last_error():
    orchestrator = RetryOrchestrator(StubSelector([("a", 0.9), ("b", 0.8)]))
    tasks = StubTaskExecutor({"a": ["first"], "b": [RuntimeError("second")]})
    result = await orchestrator.execute_with_retry(_make_task(), tasks, RetryOptions(max_attempts=2))
    assert not result.success
    assert result.reason == "second"


# ── Timeouts ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_timeout_becomes_failed_attempt():
    orchestrator = RetryOrchestrator(StubSelector([("slow", 0.9), ("fast", 0.7)]))
    options = RetryOptions(timeout_seconds=0.01)

    result = await orchestrator.execute_with_retry(_make_task(), SlowTaskExecutor({"slow"}), options)
    assert result.success
    assert result.agent_id == "fast"
    assert result.attempts[0].error == "Task timeout after 0.01s"


# ── Learning ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fallback_recommendations_and_persistence():
    store = InMemoryKnowledgeStore()
    sync = HybridSync(store, SyncConfig(backoff_initial_seconds=0.0, backoff_max_seconds=0.0))
    confidence = BayesianConfidenceEngine()
    orchestrator = RetryOrchestrator(StubSelector([("a", 0.9), ("b", 0.7)]), sync=sync, confidence=confidence)

    result = await orchestrator.execute_with_retry(_make_task(), StubTaskExecutor({"a": ["boom"]}))
    assert result.success and result.agent_id == "b"

    recommendations = orchestrator.get_fallback_recommendations("a")
    assert [(r.fallback_agent, r.successes) for r in recommendations] == [("b", 1)]
    assert orchestrator.get_fallback_recommendations("b") == []

    assert sorted(store.keys("agent_selection")) == ["task-1:a:1", "task-1:b"]
    assert (await store.get("agent_selection", "task-1:b"))["failed_agents"] == ["a"]
    assert sync.stats().realtime_syncs == 2

    assert confidence.get_agent_prior("a") == pytest.approx(0.63)
    assert confidence.get_agent_prior("b") == pytest.approx(0.73)


@pytest.mark.asyncio
async def test_learning_can_be_disabled():
    store = InMemoryKnowledgeStore()
    orchestrator = RetryOrchestrator(StubSelector([("a", 0.9), ("b", 0.7)]), sync=HybridSync(store))
    options = RetryOptions(learn_from_failure=False)

    await orchestrator.execute_with_retry(_make_task(), StubTaskExecutor({"a": ["boom"]}), options)
    assert store.writes == 0
    assert orchestrator.get_fallback_recommendations("a") == []


# ── Scored Selection ─────────────────────────────────────────────────────────


def test_scored_selector_uses_priors_for_unseen_agents(clock, make_pattern):
    store = PatternStore(clock=clock)
    for _ in range(10):
        store.record(make_pattern(agents=["loveless"], success=True))
    confidence = BayesianConfidenceEngine()
    confidence.update_agent_prior("the_didact", False)

    selector = ScoredAgentSelector(PredictiveScorer(store), confidence=confidence)
    ranking = selector.rank(_make_task(objective="implement login api", candidate_agents=["the_didact", "loveless"]))
    assert [agent for agent, _ in ranking] == ["loveless", "the_didact"]
    assert ranking[1][1] == pytest.approx(0.63)
