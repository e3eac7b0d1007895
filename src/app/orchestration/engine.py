"""OrchestrationEngine: the host-facing surface of the adaptive engine.

Wires one instance of every component around a shared PatternStore and
exposes planning, execution, feedback and observability calls. There are no
module-level singletons; build_engine(settings) is the composition root.

Data flow:
    plan()            classifier -> scorer -> conflict detector -> confidence
    start_execution() one AdaptiveExecutor per execution
    process_result()  state machine step; on termination the executor hands
                      its outcome to the FeedbackLoop
    record_feedback() feedback for executions driven outside the engine
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from src.app.config import Settings, get_settings
from src.app.core.monitoring import plan_confidence, plans_total
from src.app.orchestration.confidence import BayesianConfidenceEngine
from src.app.orchestration.config import EngineConfig, RetryOptions
from src.app.orchestration.conflicts import PredictiveConflictDetector
from src.app.orchestration.errors import ExecutionNotFoundError, InvalidPlanError, OrchestrationError
from src.app.orchestration.executor import AdaptationLog, AdaptiveExecutor, RecoveryStrategyCache
from src.app.orchestration.failures import (
    ChainRelatednessStrategy,
    ErrorClassifier,
    FailureAnalyzer,
    FailureChainDetector,
)
from src.app.orchestration.features import KeywordObjectiveClassifier
from src.app.orchestration.feedback import FeedbackLoop
from src.app.orchestration.interfaces import (
    CapabilityLookup,
    InMemoryKnowledgeStore,
    KnowledgeStore,
    ObjectiveClassifier,
    TaskExecutor,
)
from src.app.orchestration.pattern_store import PatternStore
from src.app.orchestration.refiner import AdaptivePlanRefiner
from src.app.orchestration.retry import RetryOrchestrator, ScoredAgentSelector
from src.app.orchestration.schemas import (
    Adaptation,
    AgentResult,
    CalibrationMetrics,
    ConflictPattern,
    ExecutionFeedback,
    ExecutionState,
    FailureChain,
    FallbackRecommendation,
    FeedbackResult,
    PlanConstraints,
    PlanResult,
    PredictiveScore,
    ProjectContext,
    RecoveryStrategy,
    RetryResult,
    RetryTask,
)
from src.app.orchestration.scorer import PredictiveScorer
from src.app.orchestration.sync import HybridSync
from src.app.orchestration.templates import PLAN_TEMPLATES, PlanTemplate, match_template, respects_dependencies

logger = structlog.get_logger(__name__)


class OrchestrationEngine:
    """Adaptive multi-agent orchestration engine.

    Args:
        config: Typed configuration for every component.
        capabilities: Agent capability lookup (e.g. AgentRegistry).
        knowledge_store: External persistence; in-memory if omitted.
        objective_classifier: Objective typing; keyword rules if omitted.
        chain_relatedness: Replacement for the default failure chain rules.
        clock: Returns "now" as an aware datetime; shared by time-aware parts.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        capabilities: CapabilityLookup | None = None,
        knowledge_store: KnowledgeStore | None = None,
        objective_classifier: ObjectiveClassifier | None = None,
        chain_relatedness: ChainRelatednessStrategy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.capabilities = capabilities
        self.knowledge_store = knowledge_store or InMemoryKnowledgeStore()
        self.classifier = objective_classifier or KeywordObjectiveClassifier()

        self.store = PatternStore(self.config.pattern_store, self.classifier, clock)
        self.scorer = PredictiveScorer(self.store, self.config.scorer)
        self.error_classifier = ErrorClassifier()
        self.chain_detector = FailureChainDetector(self.config.chains, chain_relatedness, clock)
        self.failure_analyzer = FailureAnalyzer(self.store, self.error_classifier, self.chain_detector)
        self.refiner = AdaptivePlanRefiner(self.store, self.scorer, self.config.refiner, capabilities)
        self.confidence = BayesianConfidenceEngine(self.store, self.config.confidence, capabilities)
        self.conflicts = PredictiveConflictDetector(self.config.conflicts, capabilities, clock)
        self.sync = HybridSync(self.knowledge_store, self.config.sync)
        self.feedback = FeedbackLoop(
            self.store,
            self.confidence,
            self.conflicts,
            self.classifier,
            self.sync,
            self.error_classifier,
        )
        self.strategy_cache = RecoveryStrategyCache(
            max_keys=self.config.executor.recovery_cache_keys,
            per_key=self.config.executor.strategies_per_key,
        )
        self.adaptation_log = AdaptationLog()
        self.retry = RetryOrchestrator(
            ScoredAgentSelector(self.scorer, capabilities, self.confidence),
            sync=self.sync,
            confidence=self.confidence,
            options=self.config.retry,
        )
        self._executions: dict[str, AdaptiveExecutor] = {}

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> int:
        """Hydrate history from the knowledge store and start the flush loop."""
        loaded = await self.store.hydrate(self.knowledge_store)
        self.sync.start()
        return loaded

    async def stop(self) -> None:
        await self.sync.stop(flush_remaining=True)

    # ── Planning ─────────────────────────────────────────────────────────

    def plan(
        self,
        objective: str,
        context: ProjectContext | None = None,
        constraints: PlanConstraints | None = None,
    ) -> PlanResult:
        """Select, order and score agents for ``objective``.

        Raises:
            InvalidPlanError: If no candidate agent survives the constraints.
        """
        constraints = constraints or PlanConstraints()
        profile = self.classifier.classify(objective, context)

        template = None
        dependencies: dict[str, list[str]] = {}
        if constraints.candidate_agents:
            candidates = list(dict.fromkeys(constraints.candidate_agents))
        else:
            template = match_template(objective)
            if template is not None:
                candidates = template.agent_ids
                dependencies = template.dependencies
            elif self.capabilities is not None:
                candidates = self.capabilities.list_agent_ids()
            else:
                candidates = []
        candidates = _drop_with_dependents(candidates, set(constraints.exclude_agents), dependencies)
        if not candidates:
            raise InvalidPlanError(f"No candidate agents for objective: {objective!r}")

        scores = self.scorer.score_agents(candidates, objective, context, profile)
        by_agent = {s.agent_id: s for s in scores}
        weak = {s.agent_id for s in scores if s.score < constraints.min_agent_score}
        if constraints.max_agents is not None:
            weak |= {s.agent_id for s in scores[constraints.max_agents:]}
        # Templates keep their dependency order; free candidate lists run best-first.
        ordered = candidates if template is not None else [s.agent_id for s in scores]
        agents = _drop_with_dependents(ordered, weak, dependencies)
        if not agents:
            raise InvalidPlanError(f"No candidate agent meets the constraints for: {objective!r}")

        values = {a: by_agent[a].score for a in agents}
        conflicts = self.conflicts.predict_conflicts(agents, context, values)
        if constraints.allow_conflict_removal and conflicts.agents_to_remove:
            agents = _drop_with_dependents(agents, set(conflicts.agents_to_remove), dependencies) or agents
        if constraints.apply_reordering and conflicts.recommended_order:
            order = [a for a in conflicts.recommended_order if a in agents]
            if sorted(order) == sorted(agents) and respects_dependencies(order, dependencies):
                agents = order

        confidence = self.confidence.calculate_confidence(agents, profile, context)
        kept_deps = {a: [d for d in deps if d in agents] for a, deps in dependencies.items() if a in agents}
        estimated_tokens, estimated_duration = self._estimate(agents, template, by_agent)

        plans_total.labels(objective_type=profile.objective_type).inc()
        plan_confidence.observe(confidence.confidence)
        logger.info(
            "engine.planned",
            objective_type=profile.objective_type,
            template=template.name if template else None,
            agents=agents,
            confidence=round(confidence.confidence, 3),
            risk=conflicts.risk_level.value,
        )
        return PlanResult(
            objective=objective,
            objective_type=profile.objective_type,
            tags=list(profile.tags),
            agents=agents,
            dependencies={a: d for a, d in kept_deps.items() if d},
            predictive_scores=[by_agent[a] for a in agents],
            confidence=confidence,
            conflicts=conflicts,
            template=template.name if template else None,
            estimated_tokens=estimated_tokens,
            estimated_duration_ms=estimated_duration,
        )

    def _estimate(
        self,
        agents: list[str],
        template: PlanTemplate | None,
        scores: dict[str, PredictiveScore],
    ) -> tuple[int, float]:
        executor_config = self.config.executor
        if template is not None and set(agents) == set(template.agent_ids):
            return template.estimated_tokens, template.estimated_duration_ms or (
                len(agents) * executor_config.default_duration_ms_per_agent
            )
        tokens = sum(
            scores[a].historical_performance.avg_tokens or executor_config.default_tokens_per_agent for a in agents
        )
        return int(tokens), float(len(agents) * executor_config.default_duration_ms_per_agent)

    # ── Execution ────────────────────────────────────────────────────────

    def start_execution(
        self,
        objective: str,
        plan: PlanResult | list[str],
        context: ProjectContext | None = None,
    ) -> ExecutionState:
        """Begin executing ``plan``; returns the live ExecutionState."""
        executor = AdaptiveExecutor(
            config=self.config.executor,
            strategy_cache=self.strategy_cache,
            adaptation_log=self.adaptation_log,
            failure_analyzer=self.failure_analyzer,
            refiner=self.refiner,
            conflict_detector=self.conflicts,
            capabilities=self.capabilities,
            on_complete=self._on_complete,
            clock=self.store.now,
        )
        if isinstance(plan, PlanResult):
            template = PLAN_TEMPLATES.get(plan.template) if plan.template else None
            tasks = {s.agent_id: s.task_description for s in template.agents} if template else {}
            state = executor.start(
                objective,
                plan.agents,
                context,
                objective_type=plan.objective_type,
                tags=plan.tags,
                dependencies=plan.dependencies,
                tasks=tasks,
                estimated_tokens=plan.estimated_tokens,
                estimated_duration_ms=plan.estimated_duration_ms,
                predicted_confidence=plan.confidence.confidence,
            )
        else:
            profile = self.classifier.classify(objective, context)
            state = executor.start(
                objective,
                list(plan),
                context,
                objective_type=profile.objective_type,
                tags=profile.tags,
                predicted_confidence=self.confidence.calculate_confidence(list(plan), profile, context).confidence,
            )
        self._executions[state.execution_id] = executor
        return state

    def process_result(self, result: AgentResult, execution_id: str | None = None) -> ExecutionState:
        """Advance the execution waiting on ``result.agent_id``.

        Raises:
            ExecutionNotFoundError: No active execution matches.
            OrchestrationError: Several active executions are waiting on the
                agent and no ``execution_id`` was given.
        """
        executor = self._resolve(execution_id, result.agent_id)
        state = executor.process_result(result)
        if state.is_terminal:
            self._executions.pop(state.execution_id, None)
        return state

    async def run_next(self, execution_id: str, task_executor: TaskExecutor) -> ExecutionState:
        executor = self._resolve(execution_id)
        state = await executor.run_next(task_executor)
        if state.is_terminal:
            self._executions.pop(state.execution_id, None)
        return state

    async def run_execution(self, execution_id: str, task_executor: TaskExecutor) -> ExecutionState:
        """Drive an execution to a terminal state through ``task_executor``."""
        executor = self._resolve(execution_id)
        state = await executor.run_to_completion(task_executor)
        self._executions.pop(state.execution_id, None)
        return state

    def abandon(self, execution_id: str, reason: str = "abandoned") -> ExecutionState:
        executor = self._resolve(execution_id)
        state = executor.abandon(reason)
        self._executions.pop(execution_id, None)
        return state

    def get_execution(self, execution_id: str) -> ExecutionState | None:
        executor = self._executions.get(execution_id)
        return executor.state if executor is not None else None

    def active_executions(self) -> list[str]:
        return list(self._executions)

    def _resolve(self, execution_id: str | None, agent_id: str | None = None) -> AdaptiveExecutor:
        if execution_id is not None:
            executor = self._executions.get(execution_id)
            if executor is None:
                raise ExecutionNotFoundError(execution_id)
            return executor
        waiting = [
            e for e in self._executions.values() if e.state is not None and agent_id in e.state.pending_agents
        ]
        if not waiting:
            raise ExecutionNotFoundError(None)
        if len(waiting) > 1:
            raise OrchestrationError(
                f"{len(waiting)} active executions are waiting on {agent_id}; pass execution_id"
            )
        return waiting[0]

    # ── Feedback ─────────────────────────────────────────────────────────

    def record_feedback(self, outcome: ExecutionFeedback) -> FeedbackResult:
        return self.feedback.process(outcome)

    def _on_complete(self, outcome: ExecutionFeedback) -> None:
        try:
            self.feedback.process(outcome)
        except Exception:
            logger.warning("engine.feedback_failed", execution_id=outcome.execution_id, exc_info=True)

    # ── Retry ────────────────────────────────────────────────────────────

    async def execute_with_retry(
        self,
        task: RetryTask,
        task_executor: TaskExecutor,
        options: RetryOptions | None = None,
    ) -> RetryResult:
        return await self.retry.execute_with_retry(task, task_executor, options)

    def get_fallback_recommendations(self, agent_id: str) -> list[FallbackRecommendation]:
        return self.retry.get_fallback_recommendations(agent_id)

    # ── Observability ────────────────────────────────────────────────────

    def get_adaptation_history(self, execution_id: str | None = None) -> list[Adaptation]:
        return self.adaptation_log.entries(execution_id)

    def get_recovery_patterns(self) -> dict[str, list[RecoveryStrategy]]:
        return self.strategy_cache.snapshot()

    def get_conflict_patterns(self) -> list[ConflictPattern]:
        return self.conflicts.get_conflict_patterns()

    def get_unresolved_chains(self) -> list[FailureChain]:
        return self.chain_detector.unresolved_chains()

    def resolve_chain(self, chain_id: str, note: str) -> FailureChain:
        return self.chain_detector.resolve_chain(chain_id, note)

    def get_calibration_metrics(self) -> CalibrationMetrics:
        return self.confidence.calibration_metrics()

    def get_agent_prior(self, agent_id: str) -> float:
        return self.confidence.get_agent_prior(agent_id)

    def get_stats(self) -> dict[str, Any]:
        calibration = self.confidence.calibration_metrics()
        return {
            "patterns": self.store.statistics().model_dump(),
            "active_executions": len(self._executions),
            "adaptations": len(self.adaptation_log),
            "recovery_pattern_keys": len(self.strategy_cache),
            "conflict_patterns": len(self.conflicts.get_conflict_patterns()),
            "unresolved_chains": len(self.chain_detector.unresolved_chains()),
            "calibration": {
                "brier_score": calibration.brier_score,
                "quality": calibration.quality,
                "sample_count": calibration.sample_count,
            },
            "sync": self.sync.stats().model_dump(),
        }


def build_engine(
    settings: Settings | None = None,
    capabilities: CapabilityLookup | None = None,
    knowledge_store: KnowledgeStore | None = None,
) -> OrchestrationEngine:
    """Composition root: an engine configured from environment settings."""
    settings = settings or get_settings()
    engine = OrchestrationEngine(
        config=settings.engine_config(),
        capabilities=capabilities,
        knowledge_store=knowledge_store,
    )
    logger.info("engine.built", environment=settings.ENVIRONMENT.value)
    return engine


# ── Helpers ──────────────────────────────────────────────────────────────────


def _drop_with_dependents(
    agents: list[str], dropped: set[str], dependencies: dict[str, list[str]]
) -> list[str]:
    removed = set(dropped)
    changed = True
    while changed:
        changed = False
        for agent in agents:
            if agent not in removed and removed & set(dependencies.get(agent, [])):
                removed.add(agent)
                changed = True
    return [a for a in agents if a not in removed]
