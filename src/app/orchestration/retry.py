"""Sequential agent fallback for a single task.

Each attempt takes the best-ranked agent not yet excluded. After the first
attempt a fallback is only tried when its score reaches the fallback
threshold; otherwise the orchestrator gives up rather than hand the task to
a weak agent. Failures and successful fallbacks are persisted through
HybridSync; a persistence problem never fails the task.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import Counter, OrderedDict
from typing import Any, Protocol

import structlog

from src.app.core.monitoring import retry_attempts_total
from src.app.orchestration.config import RetryOptions
from src.app.orchestration.confidence import BayesianConfidenceEngine
from src.app.orchestration.interfaces import CapabilityLookup, PlanScorer, TaskExecutor
from src.app.orchestration.schemas import (
    AgentResult,
    FallbackRecommendation,
    RetryAttempt,
    RetryResult,
    RetryTask,
)
from src.app.orchestration.sync import HybridSync

logger = structlog.get_logger(__name__)


class AgentSelector(Protocol):
    """Ranks candidate agents for a task, best first, as (agent_id, score)."""

    def rank(self, task: RetryTask) -> list[tuple[str, float]]: ...


class ScoredAgentSelector:
    """Ranks agents with the predictive scorer.

    Agents the scorer has never seen (confidence 0) are ranked by their
    learned prior from the confidence engine instead of the neutral 0.5.
    """

    def __init__(
        self,
        scorer: PlanScorer,
        capabilities: CapabilityLookup | None = None,
        confidence: BayesianConfidenceEngine | None = None,
    ) -> None:
        self._scorer = scorer
        self._capabilities = capabilities
        self._confidence = confidence

    def rank(self, task: RetryTask) -> list[tuple[str, float]]:
        candidates = list(task.candidate_agents)
        if not candidates and self._capabilities is not None:
            candidates = self._capabilities.list_agent_ids()
        if not candidates:
            return []
        scores = self._scorer.score_agents(candidates, task.objective or task.description, task.context)
        ranked = []
        for score in scores:
            value = score.score
            if score.confidence == 0 and self._confidence is not None:
                value = self._confidence.get_agent_prior(score.agent_id)
            ranked.append((score.agent_id, value))
        ranked.sort(key=lambda pair: pair[1], reverse=True)
        return ranked


class RetryOrchestrator:
    """Runs a RetryTask against successive agents until one succeeds.

    Args:
        selector: Ranks candidate agents.
        sync: Optional persistence for failures and successful fallbacks.
        confidence: Optional engine whose agent priors learn from each attempt.
        options: Defaults used when execute_with_retry gets none.
        max_tracked_agents: Bound on agents with remembered fallbacks.
    """

    def __init__(
        self,
        selector: AgentSelector,
        sync: HybridSync | None = None,
        confidence: BayesianConfidenceEngine | None = None,
        options: RetryOptions | None = None,
        max_tracked_agents: int = 256,
    ) -> None:
        self._selector = selector
        self._sync = sync
        self._confidence = confidence
        self.options = options or RetryOptions()
        self.max_tracked_agents = max_tracked_agents
        self._fallbacks: OrderedDict[str, Counter[str]] = OrderedDict()
        self._lock = threading.Lock()

    async def execute_with_retry(
        self,
        task: RetryTask,
        task_executor: TaskExecutor,
        options: RetryOptions | None = None,
    ) -> RetryResult:
        """Try agents in ranked order, never reusing an excluded one.

        Returns:
            RetryResult with every attempt made; ``reason`` explains a failure.
        """
        options = options or self.options
        excluded: set[str] = set()
        attempts: list[RetryAttempt] = []
        last_error: str | None = None

        for attempt_number in range(1, options.max_attempts + 1):
            choice = self._select(task, excluded)
            if choice is None:
                return self._give_up(attempts, excluded, "No suitable agents available after exclusions")
            agent_id, score = choice

            if attempt_number > 1 and score < options.fallback_score_threshold:
                logger.warning(
                    "retry.fallback_below_threshold",
                    task_id=task.task_id,
                    agent_id=agent_id,
                    score=round(score, 3),
                    threshold=options.fallback_score_threshold,
                )
                return self._give_up(
                    attempts,
                    excluded,
                    f"No suitable fallback agent (best {agent_id} scored {score:.2f} "
                    f"< threshold {options.fallback_score_threshold})",
                )

            result = await self._run(task, task_executor, agent_id, options.timeout_seconds)
            attempts.append(
                RetryAttempt(
                    agent_id=agent_id,
                    score=score,
                    success=result.success,
                    error=result.error,
                    duration_ms=result.duration_ms,
                )
            )

            if result.success:
                retry_attempts_total.labels(outcome="success").inc()
                logger.info("retry.succeeded", task_id=task.task_id, agent_id=agent_id, attempt=attempt_number)
                if self._confidence is not None and options.learn_from_failure:
                    self._confidence.update_agent_prior(agent_id, True)
                if attempt_number > 1 and options.learn_from_failure:
                    await self._record_fallback(task, attempts)
                return RetryResult(
                    success=True,
                    agent_id=agent_id,
                    result=result,
                    attempts=attempts,
                    excluded_agents=sorted(excluded),
                )

            retry_attempts_total.labels(outcome="failure").inc()
            last_error = result.error
            logger.warning(
                "retry.attempt_failed",
                task_id=task.task_id,
                agent_id=agent_id,
                attempt=attempt_number,
                error=result.error,
            )
            if options.learn_from_failure:
                if self._confidence is not None:
                    self._confidence.update_agent_prior(agent_id, False)
                await self._record_failure(task, agent_id, result.error, attempt_number)
            if options.exclude_on_failure:
                excluded.add(agent_id)

        return self._give_up(attempts, excluded, last_error or "Max attempts reached")

    def _select(self, task: RetryTask, excluded: set[str]) -> tuple[str, float] | None:
        for agent_id, score in self._selector.rank(task):
            if agent_id not in excluded:
                return agent_id, score
        return None

    async def _run(
        self, task: RetryTask, task_executor: TaskExecutor, agent_id: str, timeout: float | None
    ) -> AgentResult:
        context: dict[str, Any] = {"task_id": task.task_id}
        if task.context is not None:
            context["project_context"] = task.context.model_dump()
        start = time.perf_counter()
        try:
            call = task_executor.execute(agent_id, task.description, context)
            if timeout:
                return await asyncio.wait_for(call, timeout=timeout)
            return await call
        except asyncio.TimeoutError:
            error = f"Task timeout after {timeout}s"
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        return AgentResult(
            agent_id=agent_id,
            success=False,
            error=error,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    def _give_up(self, attempts: list[RetryAttempt], excluded: set[str], reason: str) -> RetryResult:
        retry_attempts_total.labels(outcome="exhausted").inc()
        logger.warning("retry.gave_up", attempts=len(attempts), reason=reason)
        return RetryResult(success=False, attempts=attempts, excluded_agents=sorted(excluded), reason=reason)

    # ── Learning ─────────────────────────────────────────────────────────

    async def _record_failure(self, task: RetryTask, agent_id: str, error: str | None, attempt: int) -> None:
        if self._sync is None:
            return
        await self._sync.sync(
            "task_failure",
            f"{task.task_id}:{agent_id}:{attempt}",
            {
                "agent_id": agent_id,
                "objective": task.objective or task.description,
                "success": False,
                "error_message": error,
                "attempt": attempt,
            },
        )

    async def _record_fallback(self, task: RetryTask, attempts: list[RetryAttempt]) -> None:
        failed = [a.agent_id for a in attempts[:-1]]
        successful = attempts[-1].agent_id
        with self._lock:
            for agent_id in failed:
                counts = self._fallbacks.setdefault(agent_id, Counter())
                counts[successful] += 1
                self._fallbacks.move_to_end(agent_id)
            while len(self._fallbacks) > self.max_tracked_agents:
                self._fallbacks.popitem(last=False)
        logger.info("retry.fallback_recorded", failed_agents=failed, successful_agent=successful)
        if self._sync is None:
            return
        await self._sync.sync(
            "agent_selection_success",
            f"{task.task_id}:{successful}",
            {
                "agent_id": successful,
                "objective": task.objective or task.description,
                "success": True,
                "fallback": True,
                "failed_agents": failed,
                "chain_length": len(attempts),
            },
        )

    def get_fallback_recommendations(self, failed_agent: str) -> list[FallbackRecommendation]:
        """Agents that previously succeeded after ``failed_agent`` failed, most often first."""
        with self._lock:
            counts = self._fallbacks.get(failed_agent)
            if counts is None:
                return []
            ranked = counts.most_common()
        return [
            FallbackRecommendation(failed_agent=failed_agent, fallback_agent=agent, successes=n)
            for agent, n in ranked
        ]
