"""Adaptive executor: drives one execution as a state machine.

States: running -> (adapting | recovering) -> running ... -> completed | failed.

- success: stay running unless cumulative duration or tokens exceed the
  original estimate by the optimization multiplier; then adapt by dropping
  pending agents whose type suffix duplicates one already scheduled
- failure: classify, take a learned strategy for (agent, category) or a
  fixed-rule one, mutate pending_agents, record an Adaptation, return to
  running. A missing-dependency or compilation failure in an agent whose
  dependency already completed rolls that dependency back: it is re-run
  first, at most once per execution. Repeated retries and substitutions
  with no usable alternative escalate to the plan refiner.
- pending empty: completed, or failed if any completed result failed;
  the finished outcome is handed to the feedback callback.

Recovered failures go to ``failed_attempts``; only unrecoverable ones are
appended to ``completed_agents``. After every step ``pending_agents`` and the
completed agent ids partition ``current_plan``. Reordering for predicted
conflicts never moves an agent ahead of its dependencies.
"""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.core.monitoring import active_executions, adaptations_total, executions_total, recoveries_total
from src.app.orchestration.config import ExecutorConfig
from src.app.orchestration.conflicts import PredictiveConflictDetector
from src.app.orchestration.errors import (
    ExecutionFinishedError,
    ExecutionNotFoundError,
    InvalidPlanError,
    UnexpectedResultError,
)
from src.app.orchestration.failures import ErrorClassifier, FailureAnalyzer
from src.app.orchestration.interfaces import CapabilityLookup, TaskExecutor
from src.app.orchestration.refiner import AdaptivePlanRefiner, default_recovery_kind
from src.app.orchestration.templates import respects_dependencies
from src.app.orchestration.schemas import (
    Adaptation,
    AdaptationType,
    AgentResult,
    ErrorCategory,
    ExecutionFeedback,
    ExecutionState,
    ExecutionStatus,
    FailureContext,
    ProjectContext,
    RecoveryKind,
    RecoveryStrategy,
)

logger = structlog.get_logger(__name__)

# Agent id keyword families used to find alternatives when no capability lookup answers.
ALTERNATIVE_FAMILIES: tuple[tuple[str, ...], ...] = (
    ("debug", "analyze"),
    ("implement", "build"),
    ("test",),
)

# Failure signatures that point at a predecessor's output rather than the failing agent.
ROLLBACK_SIGNATURES = frozenset({"missing_dependency", "compilation_error"})

FeedbackCallback = Callable[[ExecutionFeedback], Any]


# ── Shared learning state ───────────────────────────────────────────────────


class RecoveryStrategyCache:
    """Learned recovery strategies keyed by ``agent:category``.

    Each key keeps its top ``per_key`` strategies by confidence; the number
    of keys is bounded with least-recently-used eviction.
    """

    def __init__(self, max_keys: int = 256, per_key: int = 5) -> None:
        self.max_keys = max_keys
        self.per_key = per_key
        self._lock = threading.RLock()
        self._entries: OrderedDict[str, list[RecoveryStrategy]] = OrderedDict()

    @staticmethod
    def key(agent_id: str, category: ErrorCategory) -> str:
        return f"{agent_id}:{category.value}"

    def __len__(self) -> int:
        return len(self._entries)

    def best(self, agent_id: str, category: ErrorCategory) -> RecoveryStrategy | None:
        key = self.key(agent_id, category)
        with self._lock:
            strategies = self._entries.get(key)
            if not strategies:
                return None
            self._entries.move_to_end(key)
            return strategies[0].model_copy(deep=True)

    def learn(self, strategy: RecoveryStrategy) -> None:
        key = self.key(strategy.failed_agent, strategy.error_category)
        with self._lock:
            strategies = [
                s
                for s in self._entries.get(key, [])
                if not (s.kind == strategy.kind and s.replacement_agents == strategy.replacement_agents)
            ]
            strategies.append(strategy.model_copy(deep=True))
            strategies.sort(key=lambda s: s.confidence, reverse=True)
            self._entries[key] = strategies[: self.per_key]
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_keys:
                self._entries.popitem(last=False)

    def reinforce(self, strategy: RecoveryStrategy, succeeded: bool, step: float = 0.1) -> None:
        """Nudge a cached strategy's confidence after seeing how it worked out."""
        key = self.key(strategy.failed_agent, strategy.error_category)
        with self._lock:
            strategies = self._entries.get(key)
            if not strategies:
                return
            for cached in strategies:
                if cached.kind == strategy.kind and cached.replacement_agents == strategy.replacement_agents:
                    delta = step if succeeded else -step
                    cached.confidence = min(max(cached.confidence + delta, 0.05), 0.95)
            strategies.sort(key=lambda s: s.confidence, reverse=True)

    def snapshot(self) -> dict[str, list[RecoveryStrategy]]:
        with self._lock:
            return {k: [s.model_copy(deep=True) for s in v] for k, v in self._entries.items()}


class AdaptationLog:
    """Bounded global history of adaptations across executions."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._lock = threading.Lock()
        self._entries: deque[Adaptation] = deque(maxlen=max_entries)

    def append(self, adaptation: Adaptation) -> None:
        with self._lock:
            self._entries.append(adaptation)

    def entries(self, execution_id: str | None = None) -> list[Adaptation]:
        with self._lock:
            items = list(self._entries)
        if execution_id is not None:
            items = [a for a in items if a.execution_id == execution_id]
        return items

    def __len__(self) -> int:
        return len(self._entries)


# ── Executor ─────────────────────────────────────────────────────────────────


class AdaptiveExecutor:
    """Owns exactly one ExecutionState for the lifetime of one execution.

    Args:
        config: Multiplier, safety bound and cache sizes.
        strategy_cache: Learned recovery strategies shared across executions.
        adaptation_log: Global adaptation history shared across executions.
        failure_analyzer: Builds FailureContexts and records them; optional.
        refiner: Escalation path when fixed-rule recovery has nothing to offer.
        conflict_detector: Re-checks pending agents after recovery inserts agents.
        capabilities: Capability lookup used to find alternative agents.
        on_complete: Called once with the ExecutionFeedback on termination.
        clock: Returns "now" as an aware datetime; stamps start and finish times.
    """

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        strategy_cache: RecoveryStrategyCache | None = None,
        adaptation_log: AdaptationLog | None = None,
        failure_analyzer: FailureAnalyzer | None = None,
        refiner: AdaptivePlanRefiner | None = None,
        conflict_detector: PredictiveConflictDetector | None = None,
        capabilities: CapabilityLookup | None = None,
        on_complete: FeedbackCallback | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or ExecutorConfig()
        if strategy_cache is None:
            strategy_cache = RecoveryStrategyCache(
                max_keys=self.config.recovery_cache_keys, per_key=self.config.strategies_per_key
            )
        self.strategy_cache = strategy_cache
        self.adaptation_log = adaptation_log if adaptation_log is not None else AdaptationLog()
        self._analyzer = failure_analyzer
        self._classifier = failure_analyzer.classifier if failure_analyzer else ErrorClassifier()
        self._refiner = refiner
        self._conflicts = conflict_detector
        self._capabilities = capabilities
        self._on_complete = on_complete
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._open_recoveries: dict[str, RecoveryStrategy] = {}
        self._rolled_back: set[str] = set()
        self._lock = threading.RLock()
        self.state: ExecutionState | None = None

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(
        self,
        objective: str,
        plan: list[str],
        context: ProjectContext | None = None,
        *,
        objective_type: str = "general",
        tags: list[str] | None = None,
        dependencies: dict[str, list[str]] | None = None,
        tasks: dict[str, str] | None = None,
        estimated_tokens: int | None = None,
        estimated_duration_ms: float | None = None,
        predicted_confidence: float = 0.5,
        execution_id: str | None = None,
    ) -> ExecutionState:
        """Create the ExecutionState for ``plan``.

        Raises:
            InvalidPlanError: If the plan is empty or repeats an agent.
            ExecutionFinishedError: If this executor already ran an execution.
        """
        if self.state is not None:
            raise ExecutionFinishedError(self.state.execution_id, self.state.status.value)
        if not plan:
            raise InvalidPlanError("Plan must contain at least one agent")
        if len(set(plan)) != len(plan):
            raise InvalidPlanError(f"Plan references an agent more than once: {plan}")

        state = ExecutionState(
            objective=objective,
            objective_type=objective_type,
            tags=list(tags or []),
            context=context,
            original_plan=list(plan),
            current_plan=list(plan),
            dependencies={k: list(v) for k, v in (dependencies or {}).items()},
            tasks=dict(tasks or {}),
            pending_agents=list(plan),
            predicted_confidence=predicted_confidence,
            started_at=self._clock(),
        )
        if execution_id is not None:
            state.execution_id = execution_id
        state.resource_usage.estimated_tokens = (
            estimated_tokens
            if estimated_tokens is not None
            else len(plan) * self.config.default_tokens_per_agent
        )
        state.resource_usage.estimated_duration_ms = (
            estimated_duration_ms
            if estimated_duration_ms is not None
            else len(plan) * self.config.default_duration_ms_per_agent
        )
        self.state = state
        active_executions.inc()
        logger.info(
            "executor.started",
            execution_id=state.execution_id,
            objective_type=objective_type,
            agents=plan,
        )
        return state

    @property
    def safety_bound(self) -> int:
        if self.state is None:
            raise ExecutionNotFoundError(None)
        return self.config.safety_factor * len(self.state.original_plan)

    def next_agent(self) -> str | None:
        if self.state is None or self.state.is_terminal or not self.state.pending_agents:
            return None
        return self.state.pending_agents[0]

    async def run_next(self, task_executor: TaskExecutor, context: dict[str, Any] | None = None) -> ExecutionState:
        """Run the head of the pending queue through ``task_executor``.

        Exceptions from the task executor become failed AgentResults.
        """
        state = self._require_active()
        agent_id = state.pending_agents[0]
        task = state.tasks.get(agent_id) or state.objective
        try:
            result = await task_executor.execute(agent_id, task, dict(context or {}))
        except Exception as exc:
            logger.warning("executor.task_raised", agent_id=agent_id, error=str(exc), exc_info=True)
            result = AgentResult(agent_id=agent_id, success=False, error=str(exc) or type(exc).__name__)
        return self.process_result(result)

    async def run_to_completion(
        self, task_executor: TaskExecutor, context: dict[str, Any] | None = None
    ) -> ExecutionState:
        state = self._require_active()
        while not state.is_terminal:
            await self.run_next(task_executor, context)
        return state

    def process_result(self, result: AgentResult) -> ExecutionState:
        """Advance the state machine with one agent result.

        Raises:
            ExecutionFinishedError: The execution already terminated.
            UnexpectedResultError: ``result.agent_id`` is not pending.
        """
        with self._lock:
            state = self._require_active()
            if result.agent_id not in state.pending_agents:
                raise UnexpectedResultError(state.execution_id, result.agent_id)

            state.processed_count += 1
            state.resource_usage.tokens_used += result.tokens_used
            state.resource_usage.duration_ms += result.duration_ms
            state.pending_agents.remove(result.agent_id)

            recovery = self._open_recoveries.pop(result.agent_id, None)
            if recovery is not None:
                self.strategy_cache.reinforce(recovery, result.success)

            if result.success:
                state.completed_agents.append(result)
                if self._should_optimize(state):
                    state.status = ExecutionStatus.ADAPTING
                    self._optimize(state)
            else:
                state.status = ExecutionStatus.RECOVERING
                self._handle_failure(state, result)

            state.current_plan = state.completed_ids + state.pending_agents

            if state.pending_agents and state.processed_count >= self.safety_bound:
                reason = f"Safety bound of {self.safety_bound} processed results exceeded"
                self._finalize(state, forced_reason=reason)
            elif not state.pending_agents:
                self._finalize(state)
            else:
                state.status = ExecutionStatus.RUNNING
            return state

    def abandon(self, reason: str = "abandoned") -> ExecutionState:
        with self._lock:
            state = self._require_active()
            self._finalize(state, forced_reason=reason)
            return state

    # ── Optimization ─────────────────────────────────────────────────────

    def _should_optimize(self, state: ExecutionState) -> bool:
        usage = state.resource_usage
        multiplier = self.config.optimization_multiplier
        over_duration = 0 < usage.estimated_duration_ms * multiplier < usage.duration_ms
        over_tokens = 0 < usage.estimated_tokens * multiplier < usage.tokens_used
        return bool(state.pending_agents) and (over_duration or over_tokens)

    def _optimize(self, state: ExecutionState) -> None:
        needed = {dep for agent in state.pending_agents for dep in state.dependencies.get(agent, [])}
        seen: set[str] = set()
        kept: list[str] = []
        removed: list[str] = []
        for agent in state.pending_agents:
            kind = agent.rsplit("_", 1)[-1]
            if kind in seen and agent not in needed:
                removed.append(agent)
                continue
            seen.add(kind)
            kept.append(agent)
        if not removed:
            return

        before = state.completed_ids + state.pending_agents
        state.pending_agents = kept
        self._record(
            state,
            AdaptationType.OPTIMIZATION,
            f"Resource usage exceeded {self.config.optimization_multiplier}x estimate; "
            f"removed redundant agents {removed}",
            before,
            0.75,
        )

    # ── Recovery ─────────────────────────────────────────────────────────

    def _handle_failure(self, state: ExecutionState, result: AgentResult) -> None:
        failed = result.agent_id
        error = result.error or "unknown error"
        failure = self._analyze(state, failed, error)
        non_critical = self._classifier.is_non_critical(error)
        attempts = sum(1 for r in state.failed_attempts if r.agent_id == failed) + 1

        strategy = self.strategy_cache.best(failed, failure.error_category)
        if strategy is not None and strategy.kind == RecoveryKind.ROLLBACK:
            targets = self._rollback_targets(state, failed)
            strategy = strategy.model_copy(update={"replacement_agents": targets}) if targets else None
        if strategy is None:
            strategy = self._generate_strategy(state, failure, non_critical)
        else:
            strategy.reasoning = f"Learned strategy: {strategy.reasoning}"

        escalate = (strategy.kind == RecoveryKind.RETRY and attempts > 1) or (
            strategy.kind in (RecoveryKind.SUBSTITUTE, RecoveryKind.ALTERNATIVE_PATH)
            and not self._usable(state, strategy, failed)
        )
        before = state.completed_ids + [failed] + state.pending_agents

        if escalate and self._refine(state, failure, non_critical, before):
            state.failed_attempts.append(result)
            return

        if self._apply_strategy(state, strategy, failed):
            state.failed_attempts.append(result)
            state.attempted_strategies.append(strategy)
            adaptation_type = (
                AdaptationType.SUBSTITUTION if strategy.kind == RecoveryKind.SUBSTITUTE else AdaptationType.RECOVERY
            )
            self._record(state, adaptation_type, strategy.reasoning, before, strategy.confidence)
            self.strategy_cache.learn(strategy)
            recoveries_total.labels(
                strategy=strategy.kind.value, error_category=failure.error_category.value
            ).inc()
            self._check_conflicts(state, strategy)
            return

        # Nothing usable: the failure stands and will fail the execution.
        state.attempted_strategies.append(strategy)
        state.completed_agents.append(result)
        state.final_error = error
        logger.warning(
            "executor.recovery_exhausted",
            execution_id=state.execution_id,
            agent_id=failed,
            category=failure.error_category.value,
        )

    def _analyze(self, state: ExecutionState, failed: str, error: str) -> FailureContext:
        preceding = state.completed_ids
        if self._analyzer is not None:
            return self._analyzer.analyze_failure(
                failed,
                error,
                objective=state.objective,
                objective_type=state.objective_type,
                tags=state.tags,
                context=state.context,
                preceding_agents=preceding,
            )
        return FailureContext(
            failed_agent=failed,
            error_message=error,
            error_category=self._classifier.classify(error),
            error_signature=self._classifier.signature(error),
            objective=state.objective,
            objective_type=state.objective_type,
            tags=list(state.tags),
            project_type=state.context.project_type if state.context else None,
            preceding_agents=preceding,
        )

    def _generate_strategy(
        self, state: ExecutionState, failure: FailureContext, non_critical: bool
    ) -> RecoveryStrategy:
        failed = failure.failed_agent
        targets = self._rollback_targets(state, failed)
        if not non_critical and failure.error_signature in ROLLBACK_SIGNATURES and targets:
            return RecoveryStrategy(
                kind=RecoveryKind.ROLLBACK,
                failed_agent=failed,
                error_category=failure.error_category,
                replacement_agents=targets,
                confidence=0.55,
                reasoning=f"{failure.error_signature} in {failed}; re-run {targets} before retrying it",
            )
        kind, confidence = default_recovery_kind(failure.error_category, non_critical)
        replacements: list[str] = []
        if kind == RecoveryKind.RETRY:
            reasoning = f"{failure.error_category.value} failure is usually transient; retry {failed}"
        elif kind == RecoveryKind.SKIP:
            reasoning = f"Non-critical failure; skip {failed}"
        else:
            replacements = self._find_alternatives(state, failed)
            verb = "Substitute" if kind == RecoveryKind.SUBSTITUTE else "Take an alternative path around"
            reasoning = f"{verb} {failed} with {replacements or 'no known alternative'}"
        return RecoveryStrategy(
            kind=kind,
            failed_agent=failed,
            error_category=failure.error_category,
            replacement_agents=replacements,
            confidence=confidence,
            reasoning=reasoning,
        )

    def _find_alternatives(self, state: ExecutionState, failed: str) -> list[str]:
        finished = set(state.completed_ids)
        candidates: list[str] = []
        if self._capabilities is not None:
            candidates = list(self._capabilities.find_alternatives(failed))
            if not candidates:
                known = self._capabilities.list_agent_ids()
                family = next((f for f in ALTERNATIVE_FAMILIES if any(w in failed for w in f)), None)
                if family is not None:
                    candidates = [a for a in known if any(w in a for w in family)]
        usable = [a for a in dict.fromkeys(candidates) if a != failed and a not in finished]
        return usable[: self.config.max_alternatives]

    def _rollback_targets(self, state: ExecutionState, failed: str) -> list[str]:
        """Completed, successful dependencies of ``failed`` not yet rolled back once."""
        deps = set(state.dependencies.get(failed, []))
        return [
            r.agent_id
            for r in state.completed_agents
            if r.success and r.agent_id in deps and r.agent_id not in self._rolled_back
        ]

    def _usable(self, state: ExecutionState, strategy: RecoveryStrategy, failed: str) -> list[str]:
        finished = set(state.completed_ids)
        return [a for a in strategy.replacement_agents if a != failed and a not in finished]

    def _apply_strategy(self, state: ExecutionState, strategy: RecoveryStrategy, failed: str) -> bool:
        """Mutate pending_agents for ``strategy``; False if it schedules nothing."""
        pending = [a for a in state.pending_agents if a != failed]

        if strategy.kind == RecoveryKind.RETRY:
            state.pending_agents = [failed] + pending
            self._open_recoveries[failed] = strategy
            return True

        if strategy.kind == RecoveryKind.SKIP:
            state.pending_agents = pending
            return True

        if strategy.kind == RecoveryKind.ROLLBACK:
            targets = [a for a in strategy.replacement_agents if a in self._rollback_targets(state, failed)]
            if not targets:
                return False
            state.completed_agents = [r for r in state.completed_agents if r.agent_id not in targets]
            state.pending_agents = targets + [failed] + [a for a in pending if a not in targets]
            self._rolled_back.update(targets)
            self._open_recoveries[failed] = strategy
            return True

        replacements = self._usable(state, strategy, failed)
        if not replacements:
            return False
        state.pending_agents = replacements + [a for a in pending if a not in replacements]
        primary = replacements[0]
        for agent, deps in state.dependencies.items():
            if failed in deps:
                state.dependencies[agent] = list(dict.fromkeys(primary if d == failed else d for d in deps))
        for agent in replacements:
            state.tasks.setdefault(agent, state.tasks.get(failed, state.objective))
            self._open_recoveries[agent] = strategy
        return True

    def _refine(
        self, state: ExecutionState, failure: FailureContext, non_critical: bool, before: list[str]
    ) -> bool:
        if self._refiner is None:
            return False
        failed = failure.failed_agent
        refinement = self._refiner.refine(
            before,
            failure,
            state.objective,
            state.context,
            completed=state.completed_ids,
            dependencies=state.dependencies,
            non_critical=non_critical,
        )
        finished = set(state.completed_ids)
        new_pending = [a for a in dict.fromkeys(refinement.agents) if a not in finished]
        dropped_without_cover = failed not in new_pending and not refinement.added
        if dropped_without_cover and refinement.strategy != RecoveryKind.SKIP:
            return False
        if failed in new_pending and refinement.strategy == RecoveryKind.RETRY and not refinement.added:
            # Same agent, same plan: another retry would only spin.
            return False

        state.pending_agents = new_pending
        for agent in refinement.added:
            state.tasks.setdefault(agent, state.tasks.get(failed, state.objective))
        strategy = RecoveryStrategy(
            kind=refinement.strategy,
            failed_agent=failed,
            error_category=failure.error_category,
            replacement_agents=list(refinement.added),
            confidence=refinement.confidence,
            reasoning=refinement.reasoning,
        )
        state.attempted_strategies.append(strategy)
        self._record(state, AdaptationType.REFINEMENT, refinement.reasoning, before, refinement.confidence)
        recoveries_total.labels(
            strategy=f"refine_{refinement.tier.value}", error_category=failure.error_category.value
        ).inc()
        self._check_conflicts(state, strategy)
        return True

    def _check_conflicts(self, state: ExecutionState, strategy: RecoveryStrategy) -> None:
        if self._conflicts is None or not strategy.replacement_agents or len(state.pending_agents) < 2:
            return
        prediction = self._conflicts.predict_conflicts(state.pending_agents, state.context)
        order = prediction.recommended_order
        if not order or order == state.pending_agents or sorted(order) != sorted(state.pending_agents):
            return
        if not respects_dependencies(order, state.dependencies):
            logger.info("executor.reorder_rejected", execution_id=state.execution_id, order=order)
            return
        before = state.completed_ids + state.pending_agents
        state.pending_agents = list(order)
        self._record(
            state,
            AdaptationType.REFINEMENT,
            f"Reordered pending agents to avoid predicted conflicts (risk {prediction.risk_level.value})",
            before,
            prediction.conflict_free_probability,
        )

    # ── Bookkeeping ──────────────────────────────────────────────────────

    def _record(
        self,
        state: ExecutionState,
        adaptation_type: AdaptationType,
        reason: str,
        before: list[str],
        confidence: float,
    ) -> Adaptation:
        adaptation = Adaptation(
            execution_id=state.execution_id,
            type=adaptation_type,
            reason=reason,
            before=before,
            after=state.completed_ids + state.pending_agents,
            confidence=min(max(confidence, 0.0), 1.0),
        )
        state.adaptations.append(adaptation)
        self.adaptation_log.append(adaptation)
        adaptations_total.labels(adaptation_type=adaptation_type.value).inc()
        logger.info(
            "executor.adapted",
            execution_id=state.execution_id,
            type=adaptation_type.value,
            reason=reason,
            after=adaptation.after,
        )
        return adaptation

    def _finalize(self, state: ExecutionState, forced_reason: str | None = None) -> None:
        failures = [r for r in state.completed_agents if not r.success]
        success = forced_reason is None and bool(state.completed_agents) and not failures
        state.status = ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED
        state.finished_at = self._clock()
        if forced_reason is not None:
            state.pending_agents = []
            state.current_plan = state.completed_ids
        if not success:
            last = failures[-1] if failures else (state.failed_attempts[-1] if state.failed_attempts else None)
            attempted = ", ".join(
                f"{s.kind.value}({s.failed_agent})" for s in state.attempted_strategies
            ) or "none"
            last_failure = f"{last.agent_id} failed: {last.error}" if last is not None else "no agent succeeded"
            cause = f"{forced_reason}; last failure {last_failure}" if forced_reason else last_failure
            state.final_error = f"{cause}. Recovery strategies attempted: {attempted}"

        active_executions.dec()
        executions_total.labels(status=state.status.value).inc()
        logger.info(
            "executor.finished",
            execution_id=state.execution_id,
            status=state.status.value,
            adaptations=len(state.adaptations),
            processed=state.processed_count,
        )
        if self._on_complete is not None:
            self._on_complete(self.build_feedback())

    def build_feedback(self) -> ExecutionFeedback:
        if self.state is None:
            raise ExecutionNotFoundError(None)
        state = self.state
        results = state.failed_attempts + state.completed_agents
        return ExecutionFeedback(
            execution_id=state.execution_id,
            objective=state.objective,
            objective_type=state.objective_type,
            tags=list(state.tags),
            agents_used=list(dict.fromkeys(r.agent_id for r in state.completed_agents)),
            agent_results=sorted(results, key=lambda r: r.timestamp),
            predicted_confidence=min(max(state.predicted_confidence, 0.0), 1.0),
            actual_success=state.status == ExecutionStatus.COMPLETED,
            duration_ms=state.resource_usage.duration_ms,
            tokens_used=state.resource_usage.tokens_used,
            estimated_duration_ms=state.resource_usage.estimated_duration_ms,
            estimated_tokens=state.resource_usage.estimated_tokens,
            errors=[r.error for r in results if not r.success and r.error],
            context=state.context,
        )

    def _require_active(self) -> ExecutionState:
        if self.state is None:
            raise ExecutionNotFoundError(None)
        if self.state.is_terminal:
            raise ExecutionFinishedError(self.state.execution_id, self.state.status.value)
        return self.state
